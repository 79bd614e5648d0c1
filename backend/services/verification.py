import logging
from dataclasses import dataclass
from typing import Any

from backend import config
from backend.services.errors import (
    FaceNotEnrolled,
    OracleRejected,
    SessionEnded,
    SessionNotFound,
    TokenExpired,
)
from backend.services.oracle import FaceVerdict, JudgmentOracle
from backend.services.photos import inspect_photo, parse_data_uri
from database import db
from database.db import CheckInRecord, SessionRecord

logger = logging.getLogger(__name__)


def verify_token(session_id: str, presented_token: str | None) -> SessionRecord:
    """
    Fresh read of the session; succeeds iff it is active and the presented
    token equals the stored one exactly.
    """
    session = db.get_session(session_id)
    if session is None:
        raise SessionNotFound()
    if not session["active"]:
        raise SessionEnded()
    if not presented_token or presented_token != session["qr_token"]:
        raise TokenExpired()
    return session


@dataclass
class CheckInResult:
    record: CheckInRecord
    created: bool
    verdict: FaceVerdict | None = None


class TokenVerifier:
    def __init__(self, oracle: JudgmentOracle, threshold: float | None = None):
        self.oracle = oracle
        self.threshold = config.FACE_MATCH_THRESHOLD if threshold is None else threshold

    def accepts(self, verdict: FaceVerdict) -> bool:
        """
        Inclusive: confidence equal to the threshold passes, unlike a strict
        `confidence > threshold` check. Only confidence below it fails.
        """
        return verdict.is_match and verdict.confidence >= self.threshold

    def check_in(
        self,
        *,
        session_id: str,
        presented_token: str,
        user: dict[str, Any],
        live_photo: str,
    ) -> CheckInResult:
        verify_token(session_id, presented_token)

        existing = db.get_checkin(session_id, user["id"])
        if existing:
            return CheckInResult(record=existing, created=False)

        if not user.get("face_data_uri"):
            raise FaceNotEnrolled()

        live = inspect_photo(live_photo)
        enrolled = parse_data_uri(user["face_data_uri"])
        display_name = user.get("name") or user["email"].split("@")[0]

        verdict = self.oracle.verify_face(live, enrolled, display_name)
        if not self.accepts(verdict):
            logger.info(
                "Face check rejected for user %s in session %s (match=%s confidence=%.2f)",
                user["id"],
                session_id,
                verdict.is_match,
                verdict.confidence,
            )
            if verdict.is_match:
                raise OracleRejected(
                    f"Face match confidence too low ({verdict.confidence * 100:.0f}%). Please retake."
                )
            raise OracleRejected(verdict.reason or None)

        record, inserted = db.add_checkin(
            session_id=session_id,
            user_id=user["id"],
            name=display_name,
            roll_no=user.get("roll_no") or "N/A",
            email=user["email"],
            verification_photo=live.to_data_uri(),
            confidence=verdict.confidence,
        )
        if record is None:
            # session ended while the oracle was deciding
            if db.get_session(session_id) is None:
                raise SessionNotFound()
            raise SessionEnded()

        if inserted:
            logger.info("User %s checked in to session %s", user["id"], session_id)
        return CheckInResult(record=record, created=inserted, verdict=verdict)
