"""Change event types delivered by the source engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    """Entity types kept in sync with the legacy platform."""
    DEVICE = "device"
    TENANT = "tenant"


class ChangeOperation(str, Enum):
    """Kind of committed mutation."""
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    ASSIGNED = "Assigned"
    UNASSIGNED = "Unassigned"
    CREDENTIALS_ROTATED = "CredentialsRotated"
    CLAIMED = "Claimed"
    RECLAIMED = "Reclaimed"


class InvalidEventError(ValueError):
    """Raised when a raw message cannot be read as a change event."""
    pass


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Engine clocks report epoch milliseconds
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise InvalidEventError(f"Unreadable timestamp: {value!r}")


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    One committed mutation in the source engine.

    Read-only to the bridge. The consumer stamps `delivery_attempt` on each
    (re)delivery; everything else is producer-owned.
    """
    event_id: str
    entity_type: EntityType
    entity_id: str
    operation: ChangeOperation
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_attempt: int = 1

    # Transport position used for the sync cursor (stream sequence id)
    position: str | None = None

    def with_delivery_attempt(self, attempt: int) -> ChangeEvent:
        return replace(self, delivery_attempt=attempt)

    def with_position(self, position: str | None) -> ChangeEvent:
        return replace(self, position=position)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        """Build from a JSON object. Accepts camelCase and snake_case keys."""
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        event_id = pick("eventId", "event_id")
        entity_id = pick("entityId", "entity_id")
        if not event_id or not entity_id:
            raise InvalidEventError("Change event requires eventId and entityId")

        try:
            entity_type = EntityType(str(pick("entityType", "entity_type", default="")).lower())
            operation = ChangeOperation(pick("operation"))
        except ValueError as e:
            raise InvalidEventError(str(e)) from e

        payload = pick("payload", default={})
        if not isinstance(payload, dict):
            raise InvalidEventError("Change event payload must be an object")

        occurred = pick("occurredAt", "occurred_at")
        return cls(
            event_id=str(event_id),
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation=operation,
            payload=payload,
            occurred_at=parse_timestamp(occurred) if occurred is not None else datetime.now(timezone.utc),
            delivery_attempt=int(pick("deliveryAttempt", "delivery_attempt", default=1)),
            position=pick("position"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire shape."""
        return {
            "eventId": self.event_id,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "occurredAt": self.occurred_at.isoformat(),
            "deliveryAttempt": self.delivery_attempt,
            "position": self.position,
        }
