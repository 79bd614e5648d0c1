from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend import config
from backend.services.oracle import JudgmentOracle, get_oracle

router = APIRouter()


class NameCheck(BaseModel):
    name: str


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "token_rotation_interval_seconds": config.TOKEN_ROTATION_INTERVAL_SECONDS,
        "face_match_threshold": config.FACE_MATCH_THRESHOLD,
        "default_total_students": config.DEFAULT_TOTAL_STUDENTS,
        "max_photo_bytes": config.MAX_PHOTO_BYTES,
        "blur_threshold": config.BLUR_THRESHOLD,
        "brightness_min": config.BRIGHTNESS_MIN,
        "brightness_max": config.BRIGHTNESS_MAX,
        "enroll_local_face_check": config.ENROLL_LOCAL_FACE_CHECK,
        "oracle_model": config.ORACLE_MODEL,
    }


@router.post("/names/validate")
def validate_name(payload: NameCheck, oracle: JudgmentOracle = Depends(get_oracle)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    verdict = oracle.validate_name(name)
    return {"is_valid": verdict.is_valid, "reason": verdict.reason}
