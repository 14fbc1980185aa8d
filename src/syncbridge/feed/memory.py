"""In-process notification source."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator

from ..events.types import ChangeEvent
from .base import DeliveryCounter


_CLOSED = object()


class InMemorySource:
    """Queue-backed source. `publish()` stands in for the engine."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._redeliver: deque[ChangeEvent] = deque()
        self._counter = DeliveryCounter()
        self._closed = False
        self.acked: list[ChangeEvent] = []
        self.nacked: list[ChangeEvent] = []

    def publish(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            if self._redeliver:
                event = self._redeliver.popleft()
            else:
                item = await self._queue.get()
                if item is _CLOSED:
                    return
                event = item
            yield self._counter.stamp(event)

    async def ack(self, event: ChangeEvent) -> None:
        self.acked.append(event)
        self._counter.forget(event.event_id)

    async def nack(self, event: ChangeEvent) -> None:
        self.nacked.append(event)
        self._redeliver.append(event)

    async def close(self) -> None:
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._redeliver)
