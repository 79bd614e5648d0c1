import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend import config
from backend.security import require_student, session_user_id
from backend.services.errors import OracleRejected
from backend.services.oracle import JudgmentOracle, get_oracle
from backend.services.photos import inspect_photo
from database.db import get_user_by_id, set_user_face

logger = logging.getLogger(__name__)

router = APIRouter()


class FaceEnrollment(BaseModel):
    photo: str


@router.get("/students/me/face")
def face_status(session: dict = Depends(require_student)):
    user = get_user_by_id(session_user_id(session))
    if not user:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return {"user_id": user["id"], "enrolled": bool(user["face_data_uri"])}


@router.put("/students/me/face")
def enroll_face(
    payload: FaceEnrollment,
    session: dict = Depends(require_student),
    oracle: JudgmentOracle = Depends(get_oracle),
):
    user_id = session_user_id(session)
    if not get_user_by_id(user_id):
        raise HTTPException(status_code=401, detail="Account no longer exists.")

    photo = inspect_photo(payload.photo, require_single_face=config.ENROLL_LOCAL_FACE_CHECK)

    verdict = oracle.enroll_face(photo, str(user_id))
    if not verdict.success:
        raise OracleRejected(verdict.message or "Face enrollment failed. Please retake the photo.")

    set_user_face(user_id, photo.to_data_uri())
    logger.info("Enrolled face for user %s", user_id)
    return {"user_id": user_id, "enrolled": True, "message": verdict.message or "Face enrolled."}
