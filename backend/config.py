import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ATTENDABYTE_DB_PATH", BASE_DIR / "database" / "attendabyte.db"))
SIGNING_KEY = os.getenv("ATTENDABYTE_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ATTENDABYTE_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("ATTENDABYTE_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_unit_interval(value: str | None, fallback: float) -> float:
    try:
        parsed = float(value) if value is not None else fallback
    except ValueError:
        return fallback
    return min(1.0, max(0.0, parsed))


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ATTENDABYTE_CORS_ALLOW_ORIGINS"),
    ["http://localhost:9002", "http://127.0.0.1:9002"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ATTENDABYTE_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ATTENDABYTE_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ATTENDABYTE_CORS_ALLOW_CREDENTIALS"), True)

# Sessions / QR tokens
TOKEN_ROTATION_INTERVAL_SECONDS = max(
    1.0,
    float(os.getenv("ATTENDABYTE_TOKEN_ROTATION_INTERVAL_SECONDS", "20")),
)
PUBLIC_BASE_URL = os.getenv("ATTENDABYTE_PUBLIC_BASE_URL", "http://localhost:9002").strip().rstrip("/")
DEFAULT_TOTAL_STUDENTS = int(os.getenv("ATTENDABYTE_DEFAULT_TOTAL_STUDENTS", "60"))
LIVE_QUEUE_SIZE = int(os.getenv("ATTENDABYTE_LIVE_QUEUE_SIZE", "32"))

# Face verification (accept iff is_match and confidence >= threshold)
FACE_MATCH_THRESHOLD = _parse_unit_interval(os.getenv("ATTENDABYTE_FACE_MATCH_THRESHOLD"), 0.8)

# Judgment oracle (hosted Gemini model)
ORACLE_API_KEY = (
    os.getenv("ATTENDABYTE_ORACLE_API_KEY", "").strip()
    or os.getenv("GEMINI_API_KEY", "").strip()
    or os.getenv("GOOGLE_API_KEY", "").strip()
)
ORACLE_MODEL = os.getenv("ATTENDABYTE_ORACLE_MODEL", "gemini-2.0-flash").strip()
ORACLE_BASE_URL = os.getenv(
    "ATTENDABYTE_ORACLE_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta",
).strip().rstrip("/")
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ATTENDABYTE_ORACLE_TIMEOUT_SECONDS", "30"))

# Photo gates (local preconditions before the oracle is asked)
MAX_PHOTO_BYTES = int(os.getenv("ATTENDABYTE_MAX_PHOTO_BYTES", str(4 * 1024 * 1024)))
BLUR_THRESHOLD = float(os.getenv("ATTENDABYTE_BLUR_THRESHOLD", "40"))
BRIGHTNESS_MIN = float(os.getenv("ATTENDABYTE_BRIGHTNESS_MIN", "40"))
BRIGHTNESS_MAX = float(os.getenv("ATTENDABYTE_BRIGHTNESS_MAX", "220"))
MIN_FACE_SIZE = int(os.getenv("ATTENDABYTE_MIN_FACE_SIZE", "80"))
ENROLL_LOCAL_FACE_CHECK = _parse_bool(os.getenv("ATTENDABYTE_ENROLL_LOCAL_FACE_CHECK"), True)
