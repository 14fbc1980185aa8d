"""Telemetry event types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Channel(str, Enum):
    """Which half of the bridge produced the event."""
    SYNC = "sync"
    ROUTE = "route"


class Outcome(str, Enum):
    """Terminal outcome of one sync dispatch or one routed request."""
    # Sync path
    ACKNOWLEDGED = "acknowledged"
    DEAD_LETTERED = "dead_lettered"
    REPLAYED = "replayed"
    # Routing path
    QUERY = "query"
    ENGINE_WRITE = "engine_write"
    CACHE_HIT = "cache_hit"
    PASS_THROUGH = "pass_through"
    FALLBACK = "fallback"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class TelemetryEvent:
    """
    One telemetry record.

    Sync events carry the change event identity and attempt count; routing
    events carry the request method, path and matched operation.
    """
    telemetry_id: str
    timestamp: datetime
    channel: Channel
    outcome: Outcome

    entity_type: str | None = None
    entity_id: str | None = None
    operation: str | None = None

    # Sync path
    event_id: str | None = None
    attempts: int = 0

    # Routing path
    method: str | None = None
    path: str | None = None

    latency_ms: float = 0.0
    error_class: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, channel: Channel, outcome: Outcome, **kwargs) -> TelemetryEvent:
        """Factory method with id and timestamp filled in."""
        return cls(
            telemetry_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            channel=channel,
            outcome=outcome,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "telemetry_id": self.telemetry_id,
            "timestamp": self.timestamp.isoformat(),
            "channel": self.channel.value,
            "outcome": self.outcome.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "event_id": self.event_id,
            "attempts": self.attempts,
            "method": self.method,
            "path": self.path,
            "latency_ms": self.latency_ms,
            "error_class": self.error_class,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }
