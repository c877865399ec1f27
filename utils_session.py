import uuid
from datetime import datetime
from typing import Optional

import config_master as config
from schemas import (
    SIDES, AnalysisSource, AnalysisStatus, ErrorKind, FileEntry, FileStatus,
    HistoryRecord, PairedResult,
)
from utils_risk import classify_score

VIEWER_TOGGLES = ('mask', 'heatmap', 'zoom', 'contrast', 'grayscale')
HISTORY_DATE_FORMAT = "%Y.%m.%d %H:%M"


class InvalidTransition(Exception):
    """Raised when an action is not allowed in the case's current status."""


def preview_url(upload_id: Optional[str]) -> Optional[str]:
    return f"/uploads/{upload_id}" if upload_id else None


class HistoryLedger:
    """Past analyses, most recent first. Records are never edited or removed."""

    def __init__(self, records=None):
        self._records = list(records or [])

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def __getitem__(self, index):
        return self._records[index]

    def referenced_uploads(self) -> set:
        return {record.preview_upload_id for record in self._records if record.preview_upload_id}

    def record_analysis(self, case_name: str, preview_upload_id: str, outcome,
                        now: Optional[datetime] = None) -> HistoryRecord:
        now = now or datetime.now()
        result = outcome.result
        record = HistoryRecord(
            id=str(uuid.uuid4()),
            case_name=case_name.strip() or config.DEFAULT_CASE_NAME,
            preview_url=preview_url(preview_upload_id) or "",
            preview_upload_id=preview_upload_id,
            date=now.strftime(HISTORY_DATE_FORMAT),
            left_risk=classify_score(result.left.risk_score),
            right_risk=classify_score(result.right.risk_score),
            results=result,
            source=outcome.source,
            error_kind=outcome.error_kind,
        )
        self._records.insert(0, record)
        return record

    def find(self, record_id: str) -> Optional[HistoryRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def to_list(self) -> list:
        return [record.to_dict() for record in self._records]

    @classmethod
    def from_list(cls, items) -> "HistoryLedger":
        return cls(HistoryRecord.model_validate(item) for item in (items or []))


class CaseSession:
    """
    The active case as the page sees it. Lives in the Flask session as a plain dict.

    idle -> uploading -> processing -> completed
    uploading <-> error (no readable image selected yet)
    """

    def __init__(self, case_name: str = "", status: AnalysisStatus = AnalysisStatus.IDLE,
                 language: str = config.DEFAULT_LANGUAGE, files=None,
                 preview_upload_id: Optional[str] = None, results: Optional[PairedResult] = None,
                 source: Optional[AnalysisSource] = None, error_kind: Optional[ErrorKind] = None,
                 active_side: str = 'left', viewer=None):
        self.case_name = case_name
        self.status = AnalysisStatus(status)
        self.language = language
        self.files = list(files or [])
        self.preview_upload_id = preview_upload_id
        self.results = results
        self.source = source
        self.error_kind = error_kind
        self.active_side = active_side
        self.viewer = {name: False for name in VIEWER_TOGGLES}
        self.viewer.update(viewer or {})

    # serialization

    def to_dict(self) -> dict:
        return {
            'caseName': self.case_name,
            'status': self.status.value,
            'language': self.language,
            'files': [f.to_dict() for f in self.files],
            'previewUploadId': self.preview_upload_id,
            'previewUrl': preview_url(self.preview_upload_id),
            'results': self.results.to_dict() if self.results else None,
            'source': self.source.value if self.source else None,
            'errorKind': self.error_kind.value if self.error_kind else None,
            'activeSide': self.active_side,
            'viewer': dict(self.viewer),
        }

    @classmethod
    def from_dict(cls, data) -> "CaseSession":
        if not data:
            return cls()
        return cls(
            case_name=data.get('caseName', ""),
            status=data.get('status', AnalysisStatus.IDLE.value),
            language=data.get('language', config.DEFAULT_LANGUAGE),
            files=[FileEntry.model_validate(f) for f in data.get('files', [])],
            preview_upload_id=data.get('previewUploadId'),
            results=PairedResult.model_validate(data['results']) if data.get('results') else None,
            source=AnalysisSource(data['source']) if data.get('source') else None,
            error_kind=ErrorKind(data['errorKind']) if data.get('errorKind') else None,
            active_side=data.get('activeSide', 'left'),
            viewer=data.get('viewer'),
        )

    # transitions

    def _require(self, *allowed, action: str):
        if self.status not in allowed:
            raise InvalidTransition(f"Cannot {action} while status is '{self.status.value}'.")

    def new_case(self, case_name: str):
        case_name = (case_name or "").strip()
        if not case_name:
            raise ValueError("Case name must not be empty.")
        self._require(AnalysisStatus.IDLE, AnalysisStatus.UPLOADING, AnalysisStatus.ERROR,
                      AnalysisStatus.COMPLETED, action="start a new case")
        self.case_name = case_name
        self.status = AnalysisStatus.IDLE
        self.files = []
        self.preview_upload_id = None
        self.results = None
        self.source = None
        self.error_kind = None
        self.active_side = 'left'

    def select_files(self, entries):
        self._require(AnalysisStatus.IDLE, AnalysisStatus.UPLOADING, AnalysisStatus.ERROR,
                      action="add files")
        self.files.extend(entries)
        if self.preview_upload_id is None:
            self.preview_upload_id = self._first_ready_upload()
        self._settle_upload_status()

    def remove_file(self, file_id: str) -> FileEntry:
        self._require(AnalysisStatus.UPLOADING, AnalysisStatus.ERROR, action="remove files")
        for index, entry in enumerate(self.files):
            if entry.id == file_id:
                break
        else:
            raise KeyError(file_id)
        removed = self.files.pop(index)
        if removed.upload_id is not None and removed.upload_id == self.preview_upload_id:
            self.preview_upload_id = self._first_ready_upload()
        self._settle_upload_status()
        return removed

    def upload_ids(self) -> set:
        """Uploads this case points at: its file entries and the preview."""
        ids = {entry.upload_id for entry in self.files if entry.upload_id}
        if self.preview_upload_id:
            ids.add(self.preview_upload_id)
        return ids

    def _first_ready_upload(self) -> Optional[str]:
        for entry in self.files:
            if entry.status is FileStatus.READY and entry.upload_id:
                return entry.upload_id
        return None

    def _settle_upload_status(self):
        if not self.files:
            self.preview_upload_id = None
            self.status = AnalysisStatus.IDLE
        elif self.preview_upload_id is None:
            self.status = AnalysisStatus.ERROR
        else:
            self.status = AnalysisStatus.UPLOADING

    def can_start_analysis(self) -> bool:
        return (bool(self.files) and self.preview_upload_id is not None
                and self.status is not AnalysisStatus.PROCESSING)

    def begin_analysis(self) -> str:
        """Moves to processing and discards the upload list. Returns the upload to analyse."""
        self._require(AnalysisStatus.UPLOADING, action="start an analysis")
        if not self.can_start_analysis():
            raise InvalidTransition("No readable image has been selected.")
        self.status = AnalysisStatus.PROCESSING
        self.files = []
        self.results = None
        self.source = None
        self.error_kind = None
        return self.preview_upload_id

    def complete_analysis(self, outcome, ledger: HistoryLedger,
                          now: Optional[datetime] = None) -> HistoryRecord:
        self._require(AnalysisStatus.PROCESSING, action="complete an analysis")
        self.status = AnalysisStatus.COMPLETED
        self.results = outcome.result
        self.source = outcome.source
        self.error_kind = outcome.error_kind
        return ledger.record_analysis(self.case_name, self.preview_upload_id, outcome, now=now)

    def restore(self, record: HistoryRecord):
        self._require(AnalysisStatus.IDLE, AnalysisStatus.UPLOADING, AnalysisStatus.ERROR,
                      AnalysisStatus.COMPLETED, action="open a past case")
        if record.results is None:
            raise InvalidTransition(f"Case '{record.case_name}' has no stored results.")
        self.results = record.results
        self.preview_upload_id = record.preview_upload_id
        self.case_name = record.case_name
        self.source = record.source
        self.error_kind = record.error_kind
        self.files = []
        self.status = AnalysisStatus.COMPLETED

    # view settings

    def set_language(self, language: Optional[str] = None):
        if language is None:
            index = config.LANGUAGES.index(self.language) if self.language in config.LANGUAGES else -1
            language = config.LANGUAGES[(index + 1) % len(config.LANGUAGES)]
        if language not in config.LANGUAGES:
            raise ValueError(f"Unsupported language '{language}'.")
        self.language = language

    def set_active_side(self, side: str):
        if side not in SIDES:
            raise ValueError(f"Unknown side '{side}'.")
        self.active_side = side

    def set_viewer(self, **toggles):
        unknown = set(toggles) - set(VIEWER_TOGGLES)
        if unknown:
            raise ValueError(f"Unknown viewer option(s): {', '.join(sorted(unknown))}")
        for name, value in toggles.items():
            self.viewer[name] = bool(value)

    def current_finding(self, side: Optional[str] = None):
        if self.results is None:
            return None
        return self.results.side(side or self.active_side)

    @property
    def is_fallback(self) -> bool:
        return self.source is AnalysisSource.FALLBACK
