"""
Server-Sent Events (SSE) for transfer lifecycle updates
"""
import asyncio
import itertools
import json
from typing import AsyncGenerator, Optional
from datetime import datetime, timezone


class EventBroadcaster:
    """Fan-out of SSE messages to every connected client.

    The most recent message is replayed to new subscribers, so a client that
    connects in the middle of a run still learns that it started. Slow
    subscribers lose their oldest pending messages rather than blocking.
    """

    def __init__(self, max_pending: int = 100):
        self._subscribers: list[asyncio.Queue] = []
        self._max_pending = max_pending
        self._ids = itertools.count(1)
        self._last: Optional[str] = None

    async def subscribe(self, replay: bool = True) -> AsyncGenerator[str, None]:
        """Subscribe to events"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_pending)
        if replay and self._last is not None:
            queue.put_nowait(self._last)
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    async def broadcast(self, event_type: str, data: dict = None):
        """Broadcast an event to all subscribers"""
        event = {
            "type": event_type,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        message = f"id: {next(self._ids)}\ndata: {json.dumps(event, default=str)}\n\n"
        self._last = message

        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


transfer_events = EventBroadcaster()


class TransferEventType:
    STARTED = "transfer_started"
    COMPLETED = "transfer_completed"
    ERROR = "transfer_error"
