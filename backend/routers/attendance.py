from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from backend.security import require_student, session_user_id
from backend.services.oracle import JudgmentOracle, get_oracle
from backend.services.sessions import publish_session
from backend.services.verification import TokenVerifier, verify_token
from database.db import get_attendance_history, get_user_by_id

router = APIRouter()


class TokenScan(BaseModel):
    session_id: str
    token: str


class CheckIn(TokenScan):
    photo: str


def get_verifier(oracle: JudgmentOracle = Depends(get_oracle)) -> TokenVerifier:
    return TokenVerifier(oracle)


def _current_student(session: dict) -> dict:
    user = get_user_by_id(session_user_id(session))
    if not user:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return user


@router.post("/attendance/validate")
def validate_scan(payload: TokenScan, _session: dict = Depends(require_student)):
    session = verify_token(payload.session_id.strip(), payload.token.strip())
    return {
        "valid": True,
        "session_id": session["id"],
        "subject": session["subject"],
        "lecture_date": session["lecture_date"],
        "lecture_time": session["lecture_time"],
    }


@router.post("/attendance/check-in")
async def check_in(
    payload: CheckIn,
    session: dict = Depends(require_student),
    verifier: TokenVerifier = Depends(get_verifier),
):
    user = await run_in_threadpool(_current_student, session)
    result = await run_in_threadpool(
        lambda: verifier.check_in(
            session_id=payload.session_id.strip(),
            presented_token=payload.token.strip(),
            user=user,
            live_photo=payload.photo,
        )
    )

    if result.created:
        publish_session(result.record["session_id"])

    body = {
        "checked_in": True,
        "already_checked_in": not result.created,
        "session_id": result.record["session_id"],
        "name": result.record["name"],
        "roll_no": result.record["roll_no"],
        "check_in_time": result.record["check_in_time"],
        "confidence": result.record["confidence"],
    }
    if result.verdict is not None:
        body["reason"] = result.verdict.reason
    return body


@router.get("/attendance/history")
def attendance_history(session: dict = Depends(require_student)):
    return get_attendance_history(session_user_id(session))
