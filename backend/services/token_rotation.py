import asyncio
import logging
import time
from typing import Callable, Literal

from backend import config
from backend.services.errors import StoreUnavailable, StoreWriteFailed
from database import db

logger = logging.getLogger(__name__)

TickResult = Literal["rotated", "failed", "stopped"]


def next_token(previous: str | None = None, *, now_ms: int | None = None) -> str:
    """
    Millisecond timestamp token, strictly greater than a numeric previous token.
    Tokens are freshness nonces, not secrets.
    """
    candidate = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    if previous and previous.isdigit() and int(previous) >= candidate:
        candidate = int(previous) + 1
    return str(candidate)


class TokenRotator:
    def __init__(
        self,
        session_id: str,
        interval: float | None = None,
        on_rotate: Callable[[str], None] | None = None,
    ):
        self.session_id = session_id
        self.interval = interval or config.TOKEN_ROTATION_INTERVAL_SECONDS
        self.on_rotate = on_rotate
        self.rotations = 0

    def tick(self) -> TickResult:
        try:
            session = db.get_session(self.session_id)
        except StoreUnavailable as e:
            logger.warning("Rotation read failed for session %s: %s", self.session_id, e)
            return "failed"

        if session is None or not session["active"]:
            return "stopped"

        token = next_token(session["qr_token"])
        try:
            rotated = db.rotate_session_token(self.session_id, token)
        except StoreWriteFailed as e:
            # next tick overwrites again
            logger.warning("Rotation write failed for session %s: %s", self.session_id, e)
            return "failed"

        if not rotated:
            # ended between the read and the write
            return "stopped"

        self.rotations += 1
        logger.debug("Rotated token for session %s", self.session_id)
        return "rotated"

    def _notify(self) -> None:
        # a failed push must not end rotation; the next tick publishes again
        try:
            self.on_rotate(self.session_id)
        except Exception as e:
            logger.warning("Publishing rotation for session %s failed: %s", self.session_id, e)

    async def run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                result = self.tick()
                if result == "stopped":
                    logger.info("Session %s is no longer active; rotation stopped", self.session_id)
                    return
                if result == "rotated" and self.on_rotate is not None:
                    self._notify()
        except asyncio.CancelledError:
            logger.debug("Rotation for session %s cancelled", self.session_id)
            raise


class RotationRegistry:
    """At most one running rotator per session."""

    def __init__(
        self,
        interval: float | None = None,
        on_rotate: Callable[[str], None] | None = None,
    ):
        self.interval = interval
        self.on_rotate = on_rotate
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def start(self, session_id: str) -> bool:
        """Returns False when a rotator is already running for the session."""
        if self.is_running(session_id):
            return False

        rotator = TokenRotator(session_id, interval=self.interval, on_rotate=self.on_rotate)
        task = asyncio.get_running_loop().create_task(rotator.run(), name=f"rotate-{session_id}")
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))
        self._tasks[session_id] = task
        logger.info("Started token rotation for session %s", session_id)
        return True

    def stop(self, session_id: str) -> bool:
        task = self._tasks.pop(session_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Stopped token rotation for session %s", session_id)
        return True

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            self._tasks.pop(session_id, None)
