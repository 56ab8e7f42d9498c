import asyncio
import logging

logger = logging.getLogger(__name__)


class SessionEventBus:
    """In-memory pub/sub for intake session updates (turns, agent changes)."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._global_subscribers: set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size

    def subscribe_all(self) -> asyncio.Queue:
        """Subscribe to every session's events."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._global_subscribers.add(queue)
        return queue

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._global_subscribers.discard(queue)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(session_id, set()).add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        if session_id in self._subscribers:
            self._subscribers[session_id].discard(queue)
            if not self._subscribers[session_id]:
                del self._subscribers[session_id]

    async def publish(self, session_id: str, event: dict) -> None:
        """Deliver an event to the session's subscribers and global listeners.

        Slow subscribers drop events instead of blocking the turn.
        """
        event = {**event, "session_id": session_id}

        for queue in self._subscribers.get(session_id, set()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full for session %s subscriber", session_id)

        for queue in self._global_subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Global event queue full")


event_bus = SessionEventBus()
