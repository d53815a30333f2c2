"""In-process event broadcaster for Server-Sent Events (SSE).

Usage:
  from server.events import Broadcaster
  await broadcaster.publish(BroadcastMessage(MessageKind.INFO, "hello"))

Viewers connect to /events and receive one SSE frame per line:
  data: [BRS] hello world\n\n
No persistence: a viewer only sees lines published while it is connected.
A viewer whose queue overflows is dropped rather than slowing the others.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import AsyncIterator, Optional

import structlog

from harness.bootstrap import BROADCAST_LINES_TOTAL, SSE_SUBSCRIBERS, SUBSCRIBERS_DROPPED_TOTAL
from harness.models import BroadcastMessage

logger = structlog.get_logger(__name__)

_subscriber_ids = itertools.count(1)


class Subscriber:
    """One live viewer: an identity plus a bounded queue of pending lines."""

    __slots__ = ("id", "_queue", "_closed")

    def __init__(self, queue_size: int):
        self.id = next(_subscriber_ids)
        self._queue: asyncio.Queue[Optional[BroadcastMessage]] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: BroadcastMessage) -> bool:
        """Enqueue without waiting; False means the viewer cannot keep up."""
        if self._closed:
            return True
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a reader blocked in get(); drop a pending line if needed to fit the sentinel
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def get(self) -> Optional[BroadcastMessage]:
        """Next line, or None once the subscriber is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    async def messages(self) -> AsyncIterator[BroadcastMessage]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item

    def __repr__(self) -> str:  # pragma: no cover
        return f"Subscriber(id={self.id}, closed={self._closed})"


class Broadcaster:
    """Fan-out hub owning the set of connected subscribers.

    Mutations of the set go through an asyncio.Lock; publish works on a
    snapshot so a concurrent unsubscribe never disturbs an in-flight delivery.
    """

    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        self._subscribers: dict[int, Subscriber] = {}
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self) -> Subscriber:
        sub = Subscriber(self._queue_size)
        async with self._lock:
            self._subscribers[sub.id] = sub
            SSE_SUBSCRIBERS.set(len(self._subscribers))
        logger.debug("subscriber_added", subscriber=sub.id, total=self.subscriber_count)
        return sub

    async def unsubscribe(self, sub: Subscriber) -> None:
        async with self._lock:
            removed = self._subscribers.pop(sub.id, None)
            SSE_SUBSCRIBERS.set(len(self._subscribers))
        sub.close()
        if removed is not None:
            logger.debug("subscriber_removed", subscriber=sub.id, total=self.subscriber_count)

    async def publish(self, message: BroadcastMessage) -> None:
        lines = message.lines()
        for line in lines:
            logger.debug("broadcast", kind=line.kind.value, text=line.text, source=line.source)
        BROADCAST_LINES_TOTAL.labels(kind=message.kind.value).inc(len(lines))

        dead: list[Subscriber] = []
        for sub in list(self._subscribers.values()):
            for line in lines:
                if not sub.offer(line):
                    dead.append(sub)
                    break
        if dead:
            async with self._lock:
                for sub in dead:
                    if self._subscribers.pop(sub.id, None) is not None:
                        SUBSCRIBERS_DROPPED_TOTAL.inc()
                        logger.warning("subscriber_dropped_slow", subscriber=sub.id)
                SSE_SUBSCRIBERS.set(len(self._subscribers))
            for sub in dead:
                sub.close()

    async def close(self) -> None:
        """Disconnect every viewer (server shutdown)."""
        async with self._lock:
            subs = list(self._subscribers.values())
            self._subscribers.clear()
            SSE_SUBSCRIBERS.set(0)
        for sub in subs:
            sub.close()


def format_sse(message: BroadcastMessage) -> str:
    """Frame one message for the wire; embedded newlines get their own data: prefix."""
    body = message.render().replace("\n", "\ndata: ")
    return f"data: {body}\n\n"


async def sse_event_iter(broadcaster: Broadcaster) -> AsyncIterator[bytes]:
    sub = await broadcaster.subscribe()
    try:
        async for message in sub.messages():
            yield format_sse(message).encode("utf-8")
    finally:  # client went away or server shutting down
        await broadcaster.unsubscribe(sub)
