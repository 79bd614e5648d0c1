import asyncio
import logging
from collections import defaultdict
from typing import Any

from backend import config

logger = logging.getLogger(__name__)


class SessionEventBroker:
    """
    In-process fan-out of session snapshots to live viewers.
    Must be used from the event loop thread.
    """

    def __init__(self, queue_size: int | None = None):
        self.queue_size = queue_size or config.LIVE_QUEUE_SIZE
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[session_id].add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def publish(self, session_id: str, snapshot: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(session_id, ())):
            if queue.full():
                # slow viewer: keep only the newest snapshots
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(snapshot)
            delivered += 1
        if delivered:
            logger.debug("Published %s snapshot to %d viewer(s)", session_id, delivered)
        return delivered


broker = SessionEventBroker()
