import io
import json

import pytest
from PIL import Image

import app as app_module
import utils_generation
from utils_generation import GroqKeyRing, parse_paired_result


def make_finding(position, fdi, score, signs, recommendation):
    return {
        "toothPosition": position,
        "fdiCode": fdi,
        "minDistance": "0.5mm",
        "contactRelationship": "Invasion",
        "relativePosition": "Buccal to the apex",
        "riskScore": score,
        "injuryProbability": "28.0%",
        "highRiskSigns": signs,
        "recommendation": recommendation,
    }


@pytest.fixture
def model_reply():
    return {
        "left": make_finding(
            "Left mandibular third molar", "38", "8.5/10", ["Darkening of the root"],
            "The root of #38 overlaps the canal.\nCBCT is advised before a coronectomy is considered.",
        ),
        "right": make_finding(
            "Right mandibular third molar", "48", "2.1/10", [],
            "The root of #48 is clear of the canal.\nRoutine extraction is appropriate.",
        ),
    }


@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (96, 48), color=(40, 40, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def no_api_keys(monkeypatch):
    monkeypatch.setattr(app_module, "KEY_RING", GroqKeyRing([]))


@pytest.fixture
def stub_remote(monkeypatch, model_reply):
    """Configured key ring whose single remote call returns `model_reply`."""
    calls = []

    def fake_request(client, encoded, language="CN"):
        calls.append({"encoded": encoded, "language": language})
        return parse_paired_result(json.dumps(model_reply))

    monkeypatch.setattr(app_module, "KEY_RING", GroqKeyRing(["gsk_test_key_0001"]))
    monkeypatch.setattr(utils_generation, "request_paired_result", fake_request)
    return calls


@pytest.fixture
def upload(client):
    def _upload(*files):
        data = {"files": [(io.BytesIO(content), name) for name, content in files]}
        return client.post("/files", data=data, content_type="multipart/form-data")
    return _upload
