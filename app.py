import io
import os
import threading
from datetime import datetime
from functools import wraps

from flask import Flask, request, jsonify, render_template, session, send_file, Response
from flask_session import Session
from flask_cors import CORS
from cachelib import SimpleCache
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

import config_master as config
import utils_generation
import utils_report
import utils_visualization
from utils_logger import get_logger
from utils_risk import chart_reference_point
from utils_session import CaseSession, HistoryLedger, InvalidTransition, HISTORY_DATE_FORMAT
from utils_uploads import UploadStore, register_files

log = get_logger(__name__)


# App Initialization
app = Flask(__name__)
CORS(app, supports_credentials=True)
app.secret_key = config.SECRET_KEY

# Server-side sessions held in process memory; nothing is written to disk.
app.config["SESSION_PERMANENT"] = False
app.config["SESSION_TYPE"] = "cachelib"
app.config["SESSION_CACHELIB"] = SimpleCache(
    threshold=config.SESSION_CACHE_THRESHOLD,
    default_timeout=config.SESSION_LIFETIME_SECONDS,
)
app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
app.config["SESSION_COOKIE_SECURE"] = config.SESSION_COOKIE_SECURE
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_MB * 1024 * 1024

Session(app)

UPLOAD_STORE = UploadStore()

#  Groq API keys
KEY_RING = utils_generation.GroqKeyRing(config.load_groq_api_keys())
if len(KEY_RING):
    log.info(f"Loaded {len(KEY_RING)} Groq API key(s). Model: {config.MODEL_ID}")
else:
    log.warning("No GROQ_API_KEY environment variables found. Every analysis will use demonstration data.")

# Session id -> cancel event of the analysis running for that session
IN_FLIGHT = {}
IN_FLIGHT_LOCK = threading.Lock()


# Session helpers

def _session_id():
    return getattr(session, 'sid', None)


def _is_in_flight() -> bool:
    with IN_FLIGHT_LOCK:
        return _session_id() in IN_FLIGHT


def _load_case() -> CaseSession:
    return CaseSession.from_dict(session.get('case'))


def _save_case(case: CaseSession):
    session['case'] = case.to_dict()


def _load_ledger() -> HistoryLedger:
    return HistoryLedger.from_list(session.get('history'))


def _save_ledger(ledger: HistoryLedger):
    session['history'] = ledger.to_list()


def _release_uploads(upload_ids, keep=None):
    """Drops upload bytes that no history record (and no `keep` id) still points at."""
    referenced = _load_ledger().referenced_uploads()
    for upload_id in upload_ids:
        if upload_id and upload_id != keep and upload_id not in referenced:
            UPLOAD_STORE.discard(upload_id)


def _case_view(case: CaseSession) -> dict:
    view = case.to_dict()
    in_flight = _is_in_flight()
    if in_flight:
        view['status'] = 'processing'
    view['canStartAnalysis'] = case.can_start_analysis() and not in_flight
    view['analysisUnavailable'] = case.is_fallback
    return view


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def reject_while_processing(view_func):
    """Session writes from other requests would be lost when the analysis saves its result."""
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if _is_in_flight():
            return _error("An analysis is already in progress for this session.", 409)
        return view_func(*args, **kwargs)
    return wrapper


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


@app.errorhandler(InvalidTransition)
def handle_invalid_transition(e):
    return _error(str(e), 409)


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    return _error(f"Upload exceeds the {config.MAX_UPLOAD_MB} MB limit.", 413)


# WEB APPLICATION ROUTES

@app.route('/')
def index():
    """Serves the page shell and starts a fresh case unless an analysis is still running."""
    if not _is_in_flight():
        for upload_id in _load_case().upload_ids() | _load_ledger().referenced_uploads():
            UPLOAD_STORE.discard(upload_id)
        session.clear()
    return render_template('index.html')


@app.route('/health')
def health():
    return jsonify({
        "status": "ok",
        "model": config.MODEL_ID,
        "api_keys": len(KEY_RING),
        "time": datetime.now().replace(microsecond=0).isoformat(),
    })


@app.route('/cases', methods=['POST'])
@reject_while_processing
def create_case():
    case = _load_case()
    dropped = case.upload_ids()
    try:
        case.new_case(_json_body().get('caseName', ''))
    except ValueError as e:
        return _error(str(e), 400)
    _release_uploads(dropped)
    _save_case(case)
    return jsonify(_case_view(case)), 201


@app.route('/files', methods=['POST'])
@reject_while_processing
def select_files():
    picked = [f for f in request.files.getlist('files') if f and f.filename]
    if not picked:
        return _error("No files provided.", 400)

    case = _load_case()
    entries = register_files(
        ((os.path.basename(f.filename), f.read()) for f in picked),
        UPLOAD_STORE,
    )
    try:
        case.select_files(entries)
    except InvalidTransition:
        _release_uploads([entry.upload_id for entry in entries])
        raise
    _save_case(case)
    log.info(f"{len(entries)} file(s) selected for case '{case.case_name}'")
    return jsonify(_case_view(case))


@app.route('/files/<file_id>', methods=['DELETE'])
@reject_while_processing
def remove_file(file_id):
    case = _load_case()
    try:
        removed = case.remove_file(file_id)
    except KeyError:
        return _error(f"File '{file_id}' not found.", 404)
    _release_uploads([removed.upload_id])
    _save_case(case)
    return jsonify(_case_view(case))


@app.route('/analyze', methods=['POST'])
def analyze():
    """
    Runs one analysis for the active case and blocks until it settles.
    Without a selected image this is a no-op that returns the unchanged state.
    A failed remote call still completes, with demonstration data flagged as such.
    """
    case = _load_case()
    if not case.can_start_analysis():
        return jsonify(_case_view(case))

    sid = _session_id()
    cancel_event = threading.Event()
    with IN_FLIGHT_LOCK:
        if sid in IN_FLIGHT:
            return _error("An analysis is already in progress for this session.", 409)
        IN_FLIGHT[sid] = cancel_event

    try:
        dropped = [entry.upload_id for entry in case.files]
        upload_id = case.begin_analysis()
        _release_uploads(dropped, keep=upload_id)
        stored = UPLOAD_STORE.get(upload_id)

        log.info(f"Starting analysis for case '{case.case_name}'")
        outcome = utils_generation.run_analysis(
            KEY_RING,
            stored.content if stored else b"",
            stored.mime_type if stored else None,
            language=case.language,
            cancel_event=cancel_event,
        )
    finally:
        with IN_FLIGHT_LOCK:
            IN_FLIGHT.pop(sid, None)

    ledger = _load_ledger()
    record = case.complete_analysis(outcome, ledger)
    _save_case(case)
    _save_ledger(ledger)

    view = _case_view(case)
    view['record'] = record.to_dict()
    return jsonify(view)


@app.route('/analysis/cancel', methods=['POST'])
def cancel_analysis():
    with IN_FLIGHT_LOCK:
        cancel_event = IN_FLIGHT.get(_session_id())
    if cancel_event is None:
        return _error("No analysis in progress.", 409)
    cancel_event.set()
    return jsonify({"cancelled": True})


@app.route('/status')
def status():
    return jsonify(_case_view(_load_case()))


@app.route('/results')
def results():
    case = _load_case()
    if case.results is None:
        return _error("No analysis results. Please analyze an image first.", 404)

    side = request.args.get('side')
    if side:
        if _is_in_flight():
            return _error("An analysis is already in progress for this session.", 409)
        try:
            case.set_active_side(side)
        except ValueError as e:
            return _error(str(e), 400)
        _save_case(case)

    finding = case.current_finding()
    tier = finding.tier
    return jsonify({
        "caseName": case.case_name,
        "side": case.active_side,
        "finding": finding.to_dict(),
        "tier": tier.ledger_label,
        "badge": tier.badge_label,
        "warning": tier.warning_label(case.language),
        "color": tier.color,
        "chartReference": chart_reference_point(finding.risk_score),
        "previewUrl": case.to_dict()['previewUrl'],
        "source": case.source.value if case.source else None,
        "errorKind": case.error_kind.value if case.error_kind else None,
        "analysisUnavailable": case.is_fallback,
    })


@app.route('/language', methods=['POST'])
@reject_while_processing
def set_language():
    case = _load_case()
    try:
        case.set_language(_json_body().get('language'))
    except ValueError as e:
        return _error(str(e), 400)
    _save_case(case)
    return jsonify(_case_view(case))


@app.route('/viewer', methods=['POST'])
@reject_while_processing
def set_viewer():
    case = _load_case()
    try:
        case.set_viewer(**_json_body())
    except ValueError as e:
        return _error(str(e), 400)
    _save_case(case)
    return jsonify(_case_view(case))


@app.route('/history')
def history():
    return jsonify({"records": _load_ledger().to_list()})


@app.route('/history/<record_id>/restore', methods=['POST'])
@reject_while_processing
def restore_history(record_id):
    record = _load_ledger().find(record_id)
    if record is None:
        return _error(f"History record '{record_id}' not found.", 404)
    case = _load_case()
    dropped = case.upload_ids()
    case.restore(record)
    _release_uploads(dropped, keep=record.preview_upload_id)
    _save_case(case)
    return jsonify(_case_view(case))


@app.route('/uploads/<upload_id>')
def uploaded_file(upload_id):
    """Serves an uploaded image from the in-memory store."""
    stored = UPLOAD_STORE.get(upload_id)
    if stored is None:
        return _error("Image not found.", 404)
    return send_file(io.BytesIO(stored.content), mimetype=stored.mime_type,
                     download_name=stored.name)


def _chart_score():
    case = _load_case()
    if case.results is None:
        return None
    side = request.args.get('side', case.active_side)
    try:
        return case.current_finding(side).risk_score
    except ValueError:
        return None


@app.route('/chart.png')
def chart_png():
    return Response(utils_visualization.render_risk_chart(_chart_score()), mimetype='image/png')


@app.route('/chart_data')
def chart_data():
    return jsonify(utils_visualization.build_chart_data(_chart_score()))


@app.route('/download_pdf')
def download_pdf():
    """Builds the PDF report of the active case."""
    case = _load_case()
    if case.results is None:
        return _error("Report data not found in session. Please analyze an image first.", 404)

    stored = UPLOAD_STORE.get(case.preview_upload_id) if case.preview_upload_id else None
    pdf_bytes = utils_report.create_report_pdf(
        case_name=case.case_name or config.DEFAULT_CASE_NAME,
        date=datetime.now().strftime(HISTORY_DATE_FORMAT),
        results=case.results,
        image_bytes=stored.content if stored else None,
        language=case.language,
        is_fallback=case.is_fallback,
    )
    filename = secure_filename(case.case_name) or "case"
    return send_file(io.BytesIO(pdf_bytes), mimetype='application/pdf',
                     as_attachment=True, download_name=f"{filename}_report.pdf")


# APP RUNNER

if __name__ == '__main__':
    log.info(f"Open http://127.0.0.1:{config.PORT} in your browser.")
    app.run(host="0.0.0.0", port=config.PORT, debug=False, threaded=True)
