import io
import threading

import pytest

import app as app_module
from utils_uploads import UploadStore


def _new_case(client, name="Patient Li - pre-op"):
    response = client.post("/cases", json={"caseName": name})
    assert response.status_code == 201
    return response.get_json()


def _run_case(client, upload, png_bytes, name):
    _new_case(client, name)
    assert upload(("pano.png", png_bytes)).status_code == 200
    response = client.post("/analyze")
    assert response.status_code == 200
    return response.get_json()


def _session_id(client):
    return client.get_cookie("session").value


@pytest.fixture
def store(monkeypatch):
    fresh = UploadStore()
    monkeypatch.setattr(app_module, "UPLOAD_STORE", fresh)
    return fresh


def test_health(client):
    body = client.get("/health").get_json()
    assert body["status"] == "ok"
    assert "model" in body


def test_index_serves_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert b"Start analysis" in response.data


def test_new_case_rejects_blank_name(client):
    response = client.post("/cases", json={"caseName": "  "})
    assert response.status_code == 400
    assert "error" in response.get_json()


def test_file_selection(client, upload, png_bytes):
    _new_case(client)
    body = upload(("pano.png", png_bytes), ("report.txt", b"plain text")).get_json()

    assert body["status"] == "uploading"
    assert body["canStartAnalysis"] is True
    assert [f["status"] for f in body["files"]] == ["ready", "error"]
    assert body["files"][1]["errorMessage"] == "Unreadable image"
    assert body["previewUrl"].startswith("/uploads/")

    image = client.get(body["previewUrl"])
    assert image.status_code == 200
    assert image.mimetype == "image/png"
    assert image.data == png_bytes


def test_file_selection_requires_files(client):
    assert client.post("/files", data={}, content_type="multipart/form-data").status_code == 400


def test_remove_file(client, upload, png_bytes):
    _new_case(client)
    body = upload(("pano.png", png_bytes)).get_json()
    file_id = body["files"][0]["id"]

    body = client.delete(f"/files/{file_id}").get_json()
    assert body["files"] == []
    assert body["status"] == "idle"
    assert client.delete("/files/nope").status_code == 409


def test_analyze_without_files_is_a_no_op(client, stub_remote):
    _new_case(client)
    before = client.get("/status").get_json()

    response = client.post("/analyze")
    assert response.status_code == 200
    assert response.get_json()["status"] == "idle"
    assert client.get("/status").get_json() == before
    assert client.get("/history").get_json()["records"] == []
    assert stub_remote == []


def test_analyze_success(client, upload, png_bytes, stub_remote):
    body = _run_case(client, upload, png_bytes, "Patient Li - pre-op")

    assert body["status"] == "completed"
    assert body["source"] == "model"
    assert body["errorKind"] is None
    assert body["analysisUnavailable"] is False
    assert body["files"] == []
    assert body["results"]["left"]["riskScore"] == "8.5/10"
    assert body["record"]["leftRisk"] == "High"
    assert body["record"]["rightRisk"] == "Low"
    assert body["record"]["caseName"] == "Patient Li - pre-op"
    assert len(stub_remote) == 1
    assert stub_remote[0]["encoded"].mime_type == "image/png"


@pytest.mark.usefixtures("no_api_keys")
def test_analyze_failure_falls_back(client, upload, png_bytes):
    body = _run_case(client, upload, png_bytes, "Case #10294")

    assert body["status"] == "completed"
    assert body["source"] == "fallback"
    assert body["errorKind"] == "unconfigured"
    assert body["analysisUnavailable"] is True
    assert body["results"]["left"]["riskScore"] == "8.5/10"
    assert body["results"]["right"]["riskScore"] == "2.1/10"
    assert body["record"]["source"] == "fallback"

    status = client.get("/status").get_json()
    assert status["status"] == "completed"
    assert status["canStartAnalysis"] is False


@pytest.mark.usefixtures("no_api_keys")
def test_ledger_counts_every_attempt(client, upload, png_bytes):
    for n in range(3):
        _run_case(client, upload, png_bytes, f"Case {n}")
    records = client.get("/history").get_json()["records"]
    assert [r["caseName"] for r in records] == ["Case 2", "Case 1", "Case 0"]


def test_restore_from_history(client, upload, png_bytes, stub_remote):
    first = _run_case(client, upload, png_bytes, "First")
    _new_case(client, "Second")

    response = client.post(f"/history/{first['record']['id']}/restore")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "completed"
    assert body["caseName"] == "First"
    assert body["results"] == first["record"]["results"]
    assert body["previewUrl"] == first["record"]["previewUrl"]
    assert len(stub_remote) == 1
    assert client.post("/history/unknown/restore").status_code == 404


def test_results_by_side(client, upload, png_bytes, stub_remote):
    assert client.get("/results").status_code == 404
    _run_case(client, upload, png_bytes, "Sides")

    left = client.get("/results").get_json()
    assert left["side"] == "left"
    assert left["badge"] == "HIGH"
    assert left["warning"] == "高风险警告"
    assert left["chartReference"] == pytest.approx(0.85)

    right = client.get("/results?side=right").get_json()
    assert right["tier"] == "Low"
    assert right["badge"] == "LOW"
    assert client.get("/status").get_json()["activeSide"] == "right"
    assert client.get("/results?side=middle").status_code == 400


def test_language_and_viewer(client):
    assert client.post("/language").get_json()["language"] == "EN"
    assert client.post("/language", json={"language": "JP"}).get_json()["language"] == "JP"
    assert client.post("/language", json={"language": "FR"}).status_code == 400

    viewer = client.post("/viewer", json={"mask": True}).get_json()["viewer"]
    assert viewer["mask"] is True and viewer["heatmap"] is False
    assert client.post("/viewer", json={"blur": True}).status_code == 400


def test_chart_and_pdf(client, upload, png_bytes, stub_remote):
    assert client.get("/download_pdf").status_code == 404
    _run_case(client, upload, png_bytes, "Export me")

    chart = client.get("/chart.png?side=left")
    assert chart.mimetype == "image/png"
    assert chart.data.startswith(b"\x89PNG")

    data = client.get("/chart_data?side=right").get_json()
    assert data["patientRisk"] == pytest.approx(0.21)
    assert data["tier"] == "Low"

    pdf = client.get("/download_pdf")
    assert pdf.status_code == 200
    assert pdf.mimetype == "application/pdf"
    assert pdf.data.startswith(b"%PDF")
    assert "Export_me_report.pdf" in pdf.headers["Content-Disposition"]


def test_cancel_without_analysis(client):
    assert client.post("/analysis/cancel").status_code == 409


def test_requests_are_rejected_while_processing(client, upload, png_bytes, stub_remote, monkeypatch):
    _new_case(client)
    upload(("pano.png", png_bytes))
    running = threading.Event()
    monkeypatch.setitem(app_module.IN_FLIGHT, _session_id(client), running)

    assert client.post("/analyze").status_code == 409
    assert client.post("/cases", json={"caseName": "x"}).status_code == 409
    assert client.get("/status").get_json()["status"] == "processing"
    assert app_module.IN_FLIGHT[_session_id(client)] is running
    assert stub_remote == []


def test_reload_during_analysis_keeps_the_session(client, monkeypatch):
    _new_case(client, "Still running")
    monkeypatch.setitem(app_module.IN_FLIGHT, _session_id(client), threading.Event())

    assert client.get("/").status_code == 200
    assert client.get("/status").get_json()["caseName"] == "Still running"


def test_removed_files_release_their_bytes(client, upload, png_bytes, store):
    _new_case(client)
    for _ in range(5):
        file_id = upload(("pano.png", png_bytes)).get_json()["files"][0]["id"]
        assert client.delete(f"/files/{file_id}").status_code == 200
    assert len(store) == 0


def test_new_case_releases_pending_uploads_but_keeps_history(client, upload, png_bytes, stub_remote, store):
    first = _run_case(client, upload, png_bytes, "First")
    assert len(store) == 1

    _new_case(client, "Second")
    upload(("a.png", png_bytes), ("b.png", png_bytes))
    assert len(store) == 3

    _new_case(client, "Third")
    assert len(store) == 1
    assert client.get(first["record"]["previewUrl"]).status_code == 200


def test_analysis_keeps_only_the_analysed_upload(client, upload, png_bytes, stub_remote, store):
    _new_case(client)
    upload(("a.png", png_bytes), ("b.png", png_bytes))
    body = client.post("/analyze").get_json()

    assert len(store) == 1
    assert body["previewUploadId"] in store


def test_rejected_selection_does_not_keep_bytes(client, upload, png_bytes, stub_remote, store):
    _run_case(client, upload, png_bytes, "Done")
    assert upload(("late.png", png_bytes)).status_code == 409
    assert len(store) == 1


def test_reload_releases_the_session_uploads(client, upload, png_bytes, stub_remote, store):
    _run_case(client, upload, png_bytes, "Done")
    _new_case(client, "Pending")
    upload_id = upload(("b.png", png_bytes)).get_json()["files"][0]["uploadId"]
    assert upload_id in store

    client.get("/")
    assert len(store) == 0


def test_upload_size_limit(client, monkeypatch):
    monkeypatch.setitem(app_module.app.config, "MAX_CONTENT_LENGTH", 1024)
    response = client.post("/files", data={"files": [(io.BytesIO(b"x" * 4096), "big.png")]},
                           content_type="multipart/form-data")
    assert response.status_code == 413
