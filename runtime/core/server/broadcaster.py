"""Fan-out of stream events to live subscribers.

Every subscriber owns a bounded queue. `publish` never awaits: it offers the
event to each queue with `put_nowait`. A subscriber whose queue is full
(stalled reader) or closed is dropped on the spot and never retried, so one
slow channel cannot hold up delivery to the others. Events published from a
single task reach every subscriber in publication order.

The subscriber set is only touched from the event loop thread.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import AsyncIterator

from server.events import StreamEvent

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class Subscriber:
    def __init__(self, *, queue_size: int = 256):
        self.id = next(_ids)
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: StreamEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Make room for the end-of-stream marker; a reader that fell behind loses the backlog.
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def get(self) -> StreamEvent | None:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class Broadcaster:
    def __init__(self, *, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: dict[int, Subscriber] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscriber:
        sub = Subscriber(queue_size=self._queue_size)
        sub.offer(StreamEvent.connected())
        self._subscribers[sub.id] = sub
        logger.info("subscriber_connected", extra={"event": "subscriber_connected", "details": {"subscriber": sub.id}})
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        if self._subscribers.pop(sub.id, None) is not None:
            logger.info("subscriber_disconnected", extra={"event": "subscriber_disconnected", "details": {"subscriber": sub.id}})
        sub.close()

    def publish(self, event: StreamEvent) -> int:
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.offer(event):
                delivered += 1
                continue
            logger.warning(
                "subscriber_dropped",
                extra={"event": "subscriber_dropped", "details": {"subscriber": sub.id, "type": event.type}},
            )
            self.unsubscribe(sub)
        return delivered

    def close_all(self) -> int:
        subs = list(self._subscribers.values())
        for sub in subs:
            self.unsubscribe(sub)
        return len(subs)
