import asyncio
import json
import logging
import threading
from typing import AsyncIterator, Set, Tuple

class EventBroadcaster:
    """Fan-out of server-sent events to connected admin dashboards.

    Publishers may run on worker threads (queue scheduler, thread pool), so each
    subscriber queue is fed through its own event loop.
    """

    def __init__(self):
        self._subscribers: Set[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = set()
        self._lock = threading.Lock()

    async def subscribe(self) -> AsyncIterator[str]:  # pragma: no cover (async generator)
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        entry = (asyncio.get_running_loop(), q)
        with self._lock:
            self._subscribers.add(entry)
        try:
            while True:
                msg = await q.get()
                yield msg
        finally:
            with self._lock:
                self._subscribers.discard(entry)

    def publish(self, event: str, data: dict | str):
        if not isinstance(data, str):
            data = json.dumps(data, default=str)
        payload = f"event: {event}\ndata: {data}\n\n"
        with self._lock:
            subscribers = list(self._subscribers)
        for loop, q in subscribers:
            try:
                loop.call_soon_threadsafe(_offer, q, payload)
            except RuntimeError:
                # loop already closed; subscriber is going away
                logging.getLogger(__name__).debug("event_subscriber_closed")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


def _offer(q: asyncio.Queue, payload: str):
    if not q.full():
        q.put_nowait(payload)


broadcaster = EventBroadcaster()
