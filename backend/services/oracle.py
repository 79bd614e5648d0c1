import json
import logging
from typing import Any, Protocol

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from backend import config
from backend.services.errors import OracleUnavailable
from backend.services.photos import Photo

logger = logging.getLogger(__name__)


# -----------------------------
# Verdicts
# -----------------------------
class FaceVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_match: bool = Field(alias="isMatch")
    confidence: float
    reason: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return min(1.0, max(0.0, float(value)))


class NameVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    reason: str | None = None


class EnrollmentVerdict(BaseModel):
    success: bool
    message: str = ""


class JudgmentOracle(Protocol):
    def verify_face(self, live_photo: Photo, enrolled_photo: Photo, student_name: str) -> FaceVerdict: ...

    def validate_name(self, name: str) -> NameVerdict: ...

    def enroll_face(self, photo: Photo, student_id: str) -> EnrollmentVerdict: ...


# -----------------------------
# Prompts
# -----------------------------
VERIFY_FACE_PROMPT = """You are an AI assistant specializing in face recognition.

You are provided with two images: a live photo of a student and an enrolled photo of the same student.
Your task is to determine if the two images belong to the same person.

Student Name: {student_name}
The first image is the live photo, the second image is the enrolled photo.

Analyze the two images and determine if they match. Provide a confidence score between 0 and 1
and a short reason for your decision."""

VALIDATE_NAME_PROMPT = """You are a helpful assistant that validates user names to ensure they contain
only allowed characters and scripts.

Analyze the following name:
{name}

A name is invalid if it contains disallowed characters (special symbols, emojis) or non-standard
scripts (e.g. Cyrillic, Chinese). Latin characters and common diacritics are allowed.
Be brief in your reasoning."""

ENROLL_FACE_PROMPT = """You are an AI assistant that helps to enroll a student's face for attendance verification.

Student ID: {student_id}
The attached image is the student's photo.

Determine if the photo contains a clear, single, human face. If it does, the enrollment is successful.
If no face is detected or the image is blurry, enrollment should fail.
Indicate whether the enrollment was successful and provide a short message."""

FACE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "isMatch": {"type": "BOOLEAN"},
        "confidence": {"type": "NUMBER"},
        "reason": {"type": "STRING"},
    },
    "required": ["isMatch", "confidence", "reason"],
}
NAME_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "isValid": {"type": "BOOLEAN"},
        "reason": {"type": "STRING"},
    },
    "required": ["isValid"],
}
ENROLL_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "success": {"type": "BOOLEAN"},
        "message": {"type": "STRING"},
    },
    "required": ["success", "message"],
}

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


def _image_part(photo: Photo) -> dict[str, Any]:
    return {"inline_data": {"mime_type": photo.mime_type, "data": photo.base64}}


class GeminiOracle:
    """
    Judgment oracle backed by the hosted Gemini generateContent REST endpoint.
    Every failure (network, HTTP status, blocked output, malformed JSON) surfaces
    as OracleUnavailable; nothing is retried here.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http: requests.Session | None = None,
    ):
        self.api_key = config.ORACLE_API_KEY if api_key is None else api_key
        self.model = model or config.ORACLE_MODEL
        self.base_url = (base_url or config.ORACLE_BASE_URL).rstrip("/")
        self.timeout = timeout or config.ORACLE_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def verify_face(self, live_photo: Photo, enrolled_photo: Photo, student_name: str) -> FaceVerdict:
        parts = [
            {"text": VERIFY_FACE_PROMPT.format(student_name=student_name)},
            _image_part(live_photo),
            _image_part(enrolled_photo),
        ]
        return self._judge("verify_face", parts, FACE_SCHEMA, FaceVerdict)

    def validate_name(self, name: str) -> NameVerdict:
        parts = [{"text": VALIDATE_NAME_PROMPT.format(name=name)}]
        return self._judge("validate_name", parts, NAME_SCHEMA, NameVerdict)

    def enroll_face(self, photo: Photo, student_id: str) -> EnrollmentVerdict:
        parts = [
            {"text": ENROLL_FACE_PROMPT.format(student_id=student_id)},
            _image_part(photo),
        ]
        return self._judge("enroll_face", parts, ENROLL_SCHEMA, EnrollmentVerdict)

    def _judge(self, flow: str, parts: list[dict], schema: dict, verdict_type):
        if not self.api_key:
            raise OracleUnavailable("Verification service is not configured.")

        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": schema,
                "temperature": 0,
            },
            "safetySettings": SAFETY_SETTINGS,
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            res = self.http.post(
                url,
                json=body,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
            res.raise_for_status()
            payload = res.json()
        except requests.Timeout as e:
            logger.warning("Oracle %s timed out: %s", flow, e)
            raise OracleUnavailable("Verification service timed out. Please retry.") from e
        except (requests.RequestException, ValueError) as e:
            logger.warning("Oracle %s request failed: %s", flow, e)
            raise OracleUnavailable() from e

        text = _candidate_text(payload)
        if text is None:
            block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
            logger.warning("Oracle %s returned no output (block_reason=%s)", flow, block_reason)
            raise OracleUnavailable("Verification service returned no verdict. Please retry.")

        try:
            return verdict_type.model_validate(json.loads(text))
        except (ValueError, ValidationError) as e:
            logger.warning("Oracle %s returned a malformed verdict: %r", flow, text[:200])
            raise OracleUnavailable("Verification service returned an unreadable verdict.") from e


def _candidate_text(payload: dict[str, Any]) -> str | None:
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    content = candidates[0].get("content") or {}
    texts = [p.get("text", "") for p in content.get("parts") or [] if isinstance(p, dict)]
    joined = "".join(texts).strip()
    return joined or None


_ORACLE: JudgmentOracle | None = None


def get_oracle() -> JudgmentOracle:
    global _ORACLE
    if _ORACLE is None:
        _ORACLE = GeminiOracle()
    return _ORACLE
