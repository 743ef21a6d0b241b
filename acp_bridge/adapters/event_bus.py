"""Fan-out of store changes to connected SSE clients.

Every client owns a bounded queue. ``publish`` serialises the envelope
once and hands the same frame to every queue without blocking; a client
whose queue is full has fallen behind and is dropped, the rest carry on.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_UPDATED = "message.updated"
PART_UPDATED = "message.part.updated"
PERMISSION_ASKED = "permission.asked"
PERMISSION_REPLIED = "permission.replied"

_CLOSE = None


def sse_frame(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class Subscription:
    """One connected client's view of the hub."""

    def __init__(self, sub_id: int, maxsize: int) -> None:
        self.id = sub_id
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, frame: bytes) -> bool:
        """Queue *frame*; False when the client has fallen too far behind."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake a waiting reader; if the queue is full it will see ``closed``
        # after draining.
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            pass

    async def next_frame(self, timeout: float | None = None) -> bytes | None:
        """Next queued frame, or None once closed.

        Raises ``asyncio.TimeoutError`` when nothing arrives within *timeout*.
        """
        if self.closed and self._queue.empty():
            return None
        frame = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if frame is _CLOSE:
            return None
        return frame

    @property
    def backlog(self) -> int:
        return self._queue.qsize()


class BroadcastHub:
    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subs: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subs)

    def subscribe(self) -> Subscription:
        sub = Subscription(next(self._ids), self._queue_size)
        self._subs[sub.id] = sub
        logger.info("SSE client subscribed id=%d active_clients=%d", sub.id, len(self._subs))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        if self._subs.pop(sub.id, None) is not None:
            logger.info("SSE client unsubscribed id=%d active_clients=%d", sub.id, len(self._subs))

    def publish(self, event_type: str, properties: dict[str, Any]) -> int:
        """Send one event to every subscriber. Returns the number reached."""
        frame = sse_frame({"payload": {"type": event_type, "properties": properties}})
        delivered = 0
        for sub in list(self._subs.values()):
            if sub.offer(frame):
                delivered += 1
                continue
            if not sub.closed:
                logger.warning(
                    "SSE client id=%d fell behind (backlog=%d), dropping",
                    sub.id, sub.backlog,
                )
            self.unsubscribe(sub)
        logger.debug("Published %s to %d client(s)", event_type, delivered)
        return delivered

    def close_all(self) -> None:
        for sub in list(self._subs.values()):
            self.unsubscribe(sub)
