"""
Dashboard fan-out.

Publishing is synchronous: each observer owns a bounded queue that its
WebSocket sender drains, so a slow dashboard never stalls call handling.
Delivery is best effort; a full queue drops the message for that observer.
"""

import asyncio
from collections import deque
from typing import Any, Dict, List, Set

import structlog

logger = structlog.get_logger()


class HistoryLog:
    """Newest-first log capped at ``limit`` entries; the oldest entry is evicted."""

    def __init__(self, limit: int = 50):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._entries: deque = deque(maxlen=limit)

    def add(self, entry: Dict[str, Any]):
        # Stored entries are private copies; the caller's dict may already be queued for observers
        self._entries.appendleft(dict(entry))

    def upsert(self, key: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Merge into the newest entry whose ``key`` matches, or add at the front.

        Returns a copy of the merged entry.
        """
        for existing in self._entries:
            if existing.get(key) == entry.get(key):
                existing.update(entry)
                return dict(existing)
        self.add(entry)
        return dict(entry)

    def clear(self):
        self._entries.clear()

    def to_list(self) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self._entries]

    def __len__(self):
        return len(self._entries)


class Observer:
    """One connected dashboard client."""

    def __init__(self, observer_id: int, max_pending: int = 256):
        self.observer_id = observer_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def next_message(self) -> Dict[str, Any]:
        return await self.queue.get()


class BroadcastSink:
    """Fans events out to every connected observer."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self.observers: Set[Observer] = set()
        self._next_id = 0

    def subscribe(self, snapshot: Dict[str, Any]) -> Observer:
        """Register an observer and queue the ``init`` snapshot as its first message."""
        self._next_id += 1
        observer = Observer(self._next_id, self.max_pending)
        observer.offer({"event": "init", "data": snapshot})
        self.observers.add(observer)
        logger.info("broadcast.observer_connected",
                    observer_id=observer.observer_id, observers=len(self.observers))
        return observer

    def unsubscribe(self, observer: Observer):
        if observer in self.observers:
            self.observers.discard(observer)
            logger.info("broadcast.observer_disconnected",
                        observer_id=observer.observer_id,
                        observers=len(self.observers),
                        dropped=observer.dropped)

    def publish(self, event: str, data: Dict[str, Any]):
        message = {"event": event, "data": data}
        for observer in list(self.observers):
            if not observer.offer(message):
                logger.warning("broadcast.observer_lagging",
                               observer_id=observer.observer_id, event=event)

    def close(self):
        self.observers.clear()
