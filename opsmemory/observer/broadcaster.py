"""
Connection registry and best-effort fan-out.

Every connected client of a meeting owns a bounded queue. Broadcasting puts
the event on each queue without waiting; a full queue drops the event for
that listener only. A sender task per connection drains its queue.
"""

import asyncio
import logging
import threading
from typing import Dict, List, Set

from ..common.schemas import OutboundEvent

logger = logging.getLogger("opsmemory.observer.broadcaster")


class Listener:
    """One connected client of one meeting"""

    def __init__(self, meeting_id: str, maxsize: int = 100):
        self.meeting_id = meeting_id
        self.queue: "asyncio.Queue[OutboundEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: OutboundEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def next(self) -> OutboundEvent:
        return await self.queue.get()


class ConnectionRegistry:
    """meeting id -> set of listeners"""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._listeners: Dict[str, Set[Listener]] = {}
        self._lock = threading.Lock()

    def register(self, meeting_id: str) -> Listener:
        listener = Listener(meeting_id, self._queue_size)
        with self._lock:
            self._listeners.setdefault(meeting_id, set()).add(listener)
        logger.debug("Listener registered for meeting %s", meeting_id)
        return listener

    def unregister(self, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(listener.meeting_id)
            if not listeners:
                return
            listeners.discard(listener)
            if not listeners:
                del self._listeners[listener.meeting_id]

    def count(self, meeting_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(meeting_id, ()))

    def total(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._listeners.values())

    def broadcast(self, meeting_id: str, event: OutboundEvent) -> int:
        """
        Offer ``event`` to every listener of a meeting. Never blocks.

        Returns:
            Number of listeners that accepted the event
        """
        with self._lock:
            listeners: List[Listener] = list(self._listeners.get(meeting_id, ()))

        delivered = 0
        for listener in listeners:
            if listener.offer(event):
                delivered += 1
            else:
                logger.warning(
                    "Dropped %s event for a slow listener of meeting %s (%d dropped so far)",
                    event.kind.value, meeting_id, listener.dropped,
                )
        return delivered
