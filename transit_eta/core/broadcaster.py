"""In-process fan-out of predicted vehicle snapshots to WebSocket subscribers."""

import asyncio
import logging

import orjson

logger = logging.getLogger(__name__)


class Broadcaster:
    """Keeps the latest snapshot and pushes every update to subscriber queues."""

    def __init__(self, queue_size: int = 10) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self._state: bytes | None = None

    async def publish(self, vehicles_data: list[dict]) -> None:
        """Store the snapshot and fan it out; subscribers with a full queue are dropped."""
        payload = orjson.dumps({"type": "update", "vehicles": vehicles_data})
        self._state = payload

        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        if dead:
            logger.warning("Dropping %d slow WebSocket subscribers", len(dead))
        self._subscribers -= dead

    def get_current_state(self) -> bytes | None:
        return self._state

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
