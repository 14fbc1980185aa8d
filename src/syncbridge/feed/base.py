"""Notification source interface."""

from __future__ import annotations

from collections import OrderedDict
from typing import AsyncIterator, Protocol, runtime_checkable

from ..events.types import ChangeEvent


@runtime_checkable
class NotificationSource(Protocol):
    """
    At-least-once feed of change events for one subscription.

    `events()` yields one event at a time in transport order. The consumer
    calls `ack()` once the event is durably handled, or `nack()` to have the
    same event delivered again before anything after it.
    """

    def events(self) -> AsyncIterator[ChangeEvent]: ...

    async def ack(self, event: ChangeEvent) -> None: ...

    async def nack(self, event: ChangeEvent) -> None: ...

    async def close(self) -> None: ...


class DeliveryCounter:
    """Counts deliveries per event id so redeliveries get a higher attempt number."""

    def __init__(self, max_tracked: int = 10000):
        self._counts: OrderedDict[str, int] = OrderedDict()
        self._max_tracked = max_tracked

    def stamp(self, event: ChangeEvent) -> ChangeEvent:
        count = self._counts.pop(event.event_id, 0) + 1
        self._counts[event.event_id] = count
        while len(self._counts) > self._max_tracked:
            self._counts.popitem(last=False)
        return event.with_delivery_attempt(max(count, event.delivery_attempt))

    def forget(self, event_id: str) -> None:
        self._counts.pop(event_id, None)
