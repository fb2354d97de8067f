"""
BroadcastHub: fan-out of SSE events to every connected viewer.

Each viewer owns a bounded queue of pre-encoded frames. publish() never
awaits: it snapshots the subscriber set and enqueues with put_nowait, so
subscribe/unsubscribe during a publish cannot disturb the iteration. A viewer
whose queue is full is dropped; the rest are unaffected. Late subscribers
get only future events.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = None  # queue sentinel: subscription was dropped


def format_sse(event: str, data: Any) -> str:
    """One server-sent-event frame."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class Subscription:
    """One viewer connection's handle."""

    _ids = itertools.count(1)

    def __init__(self, maxsize: int) -> None:
        self.id = next(self._ids)
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake the reader; make room for the sentinel if the queue is full
        while True:
            try:
                self.queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def next_frame(self, timeout: float | None = None) -> str | None:
        """Next frame, or None once closed. Raises asyncio.TimeoutError after `timeout` idle seconds."""
        if timeout:
            frame = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        else:
            frame = await self.queue.get()
        if frame is _CLOSED:
            self.closed = True
        return frame


class BroadcastHub:
    """Set of viewer subscriptions, shared by all audio sessions and the simulation."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    def subscribe(self) -> Subscription:
        sub = Subscription(self._queue_size)
        self._subscribers.add(sub)
        logger.info("Viewer %d subscribed (%d connected)", sub.id, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            logger.info("Viewer %d unsubscribed (%d connected)", sub.id, len(self._subscribers))
        sub.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, payload: Any) -> int:
        """Enqueue one event for every current subscriber. Returns the number reached."""
        frame = format_sse(event, payload)
        delivered = 0
        for sub in tuple(self._subscribers):
            try:
                sub.queue.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Viewer %d is not keeping up; dropping it", sub.id)
                self.unsubscribe(sub)
        return delivered

    def close(self) -> None:
        for sub in tuple(self._subscribers):
            self.unsubscribe(sub)
