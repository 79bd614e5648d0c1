import logging
import math
import time
from typing import Any
from urllib.parse import urlencode

from backend import config
from backend.services.errors import SessionNotFound
from backend.services.session_events import broker
from backend.services.token_rotation import RotationRegistry, next_token
from database import db
from database.db import SessionRecord

logger = logging.getLogger(__name__)


def attend_url(session_id: str, token: str) -> str:
    query = urlencode({"sessionId": session_id, "token": token})
    return f"{config.PUBLIC_BASE_URL}/attend?{query}"


def refresh_in(session: SessionRecord, *, now: float | None = None) -> int | None:
    """Whole seconds until the token is next replaced. None once the session has ended."""
    if not session["active"]:
        return None
    elapsed = (time.time() if now is None else now) - session["token_rotated_at"]
    return max(0, math.ceil(config.TOKEN_ROTATION_INTERVAL_SECONDS - elapsed))


def session_snapshot(session: SessionRecord, *, include_photos: bool = True) -> dict[str, Any]:
    attendees = db.list_checkins(session["id"])
    return {
        **session,
        "attend_url": attend_url(session["id"], session["qr_token"]),
        "refresh_in": refresh_in(session),
        "rotation_interval_seconds": config.TOKEN_ROTATION_INTERVAL_SECONDS,
        "rotating": rotations.is_running(session["id"]),
        "attended_count": len(attendees),
        "attended_students": [
            {
                "user_id": a["user_id"],
                "name": a["name"],
                "roll_no": a["roll_no"],
                "email": a["email"],
                "check_in_time": a["check_in_time"],
                "verification_photo": a["verification_photo"] if include_photos else None,
            }
            for a in attendees
        ],
    }


def publish_session(session_id: str) -> None:
    if broker.subscriber_count(session_id) == 0:
        return
    session = db.get_session(session_id)
    if session is None:
        return
    broker.publish(session_id, session_snapshot(session))


rotations = RotationRegistry(on_rotate=publish_session)


def get_owned_session(session_id: str, professor_id: int) -> SessionRecord:
    session = db.get_session(session_id)
    # other professors' sessions are reported as missing
    if session is None or session["professor_id"] != professor_id:
        raise SessionNotFound()
    return session


def open_session(professor_id: int, details: dict[str, Any]) -> SessionRecord:
    """Create an active session with an initial token and start rotating it. Needs a running loop."""
    session = db.create_session(
        professor_id=professor_id,
        initial_token=next_token(),
        **details,
    )
    logger.info("Session %s opened by professor %s (%s)", session["id"], professor_id, session["subject"])
    rotations.start(session["id"])
    return session


def close_session(session: SessionRecord) -> SessionRecord:
    ended = db.end_session(session["id"])
    rotations.stop(session["id"])
    if ended:
        logger.info("Session %s ended", session["id"])
        publish_session(session["id"])
    refreshed = db.get_session(session["id"])
    if refreshed is None:
        raise SessionNotFound()
    return refreshed
