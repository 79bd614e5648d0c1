import asyncio
from datetime import date

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from backend import config
from backend.security import decode_session_token, require_professor, session_user_id
from backend.services.errors import SessionEnded, SessionNotFound
from backend.services.session_events import broker
from backend.services.sessions import (
    attend_url,
    close_session,
    get_owned_session,
    open_session,
    refresh_in,
    rotations,
    session_snapshot,
)
from database.db import list_sessions_for_professor

router = APIRouter()


class LectureCreate(BaseModel):
    department: str = Field(min_length=2)
    year: str = Field(min_length=1)
    division: str = Field(min_length=1, max_length=1)
    subject: str = Field(min_length=3)
    lecture_date: date
    lecture_time: str = Field(pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    total_students: int | None = Field(default=None, ge=1)


@router.post("/sessions")
async def create_session(payload: LectureCreate, session: dict = Depends(require_professor)):
    details = payload.model_dump()
    details["lecture_date"] = payload.lecture_date.isoformat()
    for key in ("department", "year", "division", "subject"):
        details[key] = details[key].strip()

    created = open_session(session_user_id(session), details)
    return session_snapshot(created)


@router.get("/sessions")
def my_sessions(session: dict = Depends(require_professor)):
    rows = list_sessions_for_professor(session_user_id(session))
    return [
        {
            "id": r["id"],
            "subject": r["subject"],
            "department": r["department"],
            "year": r["year"],
            "division": r["division"],
            "lecture_date": r["lecture_date"],
            "lecture_time": r["lecture_time"],
            "active": r["active"],
            "attended_count": r["attended_count"],
            "total_students": r["total_students"],
            "created_at": r["created_at"],
            "ended_at": r["ended_at"],
        }
        for r in rows
    ]


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, session: dict = Depends(require_professor)):
    owned = get_owned_session(session_id, session_user_id(session))
    return session_snapshot(owned)


@router.get("/sessions/{session_id}/qr")
def session_qr(session_id: str, session: dict = Depends(require_professor)):
    owned = get_owned_session(session_id, session_user_id(session))
    return {
        "session_id": owned["id"],
        "token": owned["qr_token"],
        "active": owned["active"],
        "attend_url": attend_url(owned["id"], owned["qr_token"]),
        "refresh_in": refresh_in(owned),
        "rotation_interval_seconds": config.TOKEN_ROTATION_INTERVAL_SECONDS,
    }


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, session: dict = Depends(require_professor)):
    owned = get_owned_session(session_id, session_user_id(session))
    ended = close_session(owned)
    return session_snapshot(ended)


@router.post("/sessions/{session_id}/rotation/start")
async def start_rotation(session_id: str, session: dict = Depends(require_professor)):
    owned = get_owned_session(session_id, session_user_id(session))
    if not owned["active"]:
        raise SessionEnded()
    started = rotations.start(session_id)
    return {"session_id": session_id, "rotating": True, "started": started}


@router.delete("/sessions/{session_id}/rotation")
async def stop_rotation(session_id: str, session: dict = Depends(require_professor)):
    get_owned_session(session_id, session_user_id(session))
    stopped = rotations.stop(session_id)
    return {"session_id": session_id, "rotating": False, "stopped": stopped}


@router.websocket("/sessions/{session_id}/live")
async def live_session(websocket: WebSocket, session_id: str, access_token: str | None = None):
    claims = decode_session_token(access_token or "")
    if not claims or claims.get("role") != "professor":
        await websocket.close(code=4401)
        return
    try:
        owned = get_owned_session(session_id, session_user_id(claims))
    except SessionNotFound:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    queue = broker.subscribe(session_id)
    if owned["active"]:
        rotations.start(session_id)
    await websocket.send_json(session_snapshot(owned))

    async def _forward():
        while True:
            snapshot = await queue.get()
            await websocket.send_json(snapshot)

    forward = asyncio.create_task(_forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        forward.cancel()
        await asyncio.gather(forward, return_exceptions=True)
        broker.unsubscribe(session_id, queue)
        # the rotator lives as long as the owner's view
        if broker.subscriber_count(session_id) == 0:
            rotations.stop(session_id)
