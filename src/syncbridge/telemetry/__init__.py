"""Telemetry - non-blocking outcome events for sync dispatch and request routing."""

from .events import Channel, Outcome, TelemetryEvent
from .emitter import TelemetryEmitter
from .batcher import TelemetryBatcher, create_batched_consumer

__all__ = [
    "Channel",
    "Outcome",
    "TelemetryEvent",
    "TelemetryEmitter",
    "TelemetryBatcher",
    "create_batched_consumer",
]
