import json

import pytest
import requests

from backend.services.errors import OracleUnavailable
from backend.services.oracle import GeminiOracle
from backend.services.photos import Photo

LIVE = Photo(mime_type="image/jpeg", data=b"live-bytes")
ENROLLED = Photo(mime_type="image/png", data=b"enrolled-bytes")


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttp:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def _model_reply(verdict: dict) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": json.dumps(verdict)}]}}]}


def _oracle(http, api_key="test-key"):
    return GeminiOracle(
        api_key=api_key,
        model="gemini-test",
        base_url="https://example.invalid/v1beta",
        timeout=5,
        http=http,
    )


def test_verify_face_parses_verdict_and_sends_both_images():
    http = FakeHttp(FakeResponse(_model_reply({"isMatch": True, "confidence": 0.93, "reason": "Same jawline."})))
    verdict = _oracle(http).verify_face(LIVE, ENROLLED, "Sam Student")

    assert verdict.is_match is True
    assert verdict.confidence == pytest.approx(0.93)
    assert verdict.reason == "Same jawline."

    sent = http.requests[0]
    assert sent["url"] == "https://example.invalid/v1beta/models/gemini-test:generateContent"
    assert sent["headers"] == {"x-goog-api-key": "test-key"}
    assert sent["timeout"] == 5
    parts = sent["json"]["contents"][0]["parts"]
    assert "Sam Student" in parts[0]["text"]
    assert parts[1]["inline_data"] == {"mime_type": "image/jpeg", "data": LIVE.base64}
    assert parts[2]["inline_data"] == {"mime_type": "image/png", "data": ENROLLED.base64}
    assert sent["json"]["generationConfig"]["responseMimeType"] == "application/json"


def test_confidence_is_clamped_to_unit_interval():
    http = FakeHttp(FakeResponse(_model_reply({"isMatch": True, "confidence": 1.7, "reason": ""})))
    assert _oracle(http).verify_face(LIVE, ENROLLED, "x").confidence == 1.0


def test_validate_name_and_enroll_face():
    http = FakeHttp(FakeResponse(_model_reply({"isValid": False, "reason": "Contains emoji."})))
    name = _oracle(http).validate_name("Sam 😀")
    assert name.is_valid is False
    assert name.reason == "Contains emoji."

    http = FakeHttp(FakeResponse(_model_reply({"success": True, "message": "Clear single face."})))
    enrolled = _oracle(http).enroll_face(LIVE, "42")
    assert enrolled.success is True
    assert enrolled.message == "Clear single face."
    assert "42" in http.requests[0]["json"]["contents"][0]["parts"][0]["text"]


def test_missing_api_key_is_unavailable():
    http = FakeHttp(FakeResponse(_model_reply({"isValid": True})))
    with pytest.raises(OracleUnavailable):
        _oracle(http, api_key="").validate_name("Sam")
    assert http.requests == []


@pytest.mark.parametrize(
    "http",
    [
        FakeHttp(exc=requests.Timeout("read timed out")),
        FakeHttp(exc=requests.ConnectionError("refused")),
        FakeHttp(FakeResponse({"error": {"code": 500}}, status_code=500)),
        FakeHttp(FakeResponse(None)),
        FakeHttp(FakeResponse({"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})),
        FakeHttp(FakeResponse({"candidates": [{"content": {"parts": [{"text": "not json"}]}}]})),
        FakeHttp(FakeResponse(_model_reply({"confidence": 0.9}))),
    ],
    ids=["timeout", "connection", "http-500", "non-json", "blocked", "free-text", "missing-field"],
)
def test_failures_surface_as_unavailable(http):
    with pytest.raises(OracleUnavailable):
        _oracle(http).verify_face(LIVE, ENROLLED, "Sam")
