"""Base sink interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..events import TelemetryEvent


class TelemetrySink(ABC):
    """Destination for batches of telemetry events."""

    @abstractmethod
    async def send(self, events: list[TelemetryEvent]) -> None:
        ...

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass
