"""Legacy operation types and mapping helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..events.types import EntityType


class MappingError(Exception):
    """Raised when a change event cannot be mapped to a legacy operation.

    Always permanent: a structurally invalid event never maps on retry.
    """
    pass


class LegacyOperationKind(str, Enum):
    """Legacy platform operations the bridge performs."""
    UPSERT = "upsert"
    DELETE = "delete"
    SET_ASSIGNMENT = "set_assignment"
    CLEAR_ASSIGNMENT = "clear_assignment"
    ROTATE_CREDENTIALS = "rotate_credentials"


@dataclass(frozen=True)
class LegacyOperation:
    """
    A mapped, ready-to-apply legacy platform operation.

    `body` is in legacy shape with authority-only fields already removed.
    `synced_fields` names the body keys the bridge owns; the legacy client
    compares only these when deciding whether the target is already in the
    desired state.
    """
    kind: LegacyOperationKind
    entity_type: EntityType
    entity_id: str
    body: dict[str, Any] = field(default_factory=dict)
    synced_fields: tuple[str, ...] = ()
    customer_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "body": self.body,
            "customer_id": self.customer_id,
        }


# Fields that never leave the source engine
AUTHORITY_ONLY_FIELDS = frozenset({
    "credentials",
    "credentialsValue",
    "secretKey",
    "privateKey",
    "password",
    "deviceData",
})


def strip_authority_only(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in AUTHORITY_ONLY_FIELDS}


def require(payload: dict[str, Any], *names: str, context: str) -> None:
    """Reject payloads missing any of `names` (None and blank strings count as missing)."""
    missing = [
        name for name in names
        if payload.get(name) is None or (isinstance(payload.get(name), str) and not payload[name].strip())
    ]
    if missing:
        raise MappingError(f"{context}: missing required field(s) {', '.join(missing)}")


def plain_id(value: Any, name: str) -> str | None:
    """Unwrap an id that may arrive plain or as {"id": ...}."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
        if value is None:
            raise MappingError(f"{name}: id object has no 'id'")
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise MappingError(f"{name}: expected string id, got {type(value).__name__}")
    return str(value)


def entity_ref(value: Any, entity_type: str, name: str) -> dict[str, str] | None:
    """Wrap an id in the legacy {"id", "entityType"} shape."""
    ident = plain_id(value, name)
    if ident is None:
        return None
    return {"id": ident, "entityType": entity_type}


def coerce_int(value: Any, name: str) -> int | None:
    """Accept integers and integral numeric strings; reject anything else."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise MappingError(f"{name}: expected integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise MappingError(f"{name}: expected integer, got {value!r}")


def coerce_str(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise MappingError(f"{name}: expected string, got {type(value).__name__}")


def parse_additional_info(value: Any) -> dict[str, Any] | None:
    """The engine stores additionalInfo as a JSON string; the legacy platform wants an object."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            raise MappingError(f"additionalInfo: invalid JSON ({e.msg})") from e
        if not isinstance(parsed, dict):
            raise MappingError("additionalInfo: expected a JSON object")
        return parsed
    raise MappingError(f"additionalInfo: expected object or JSON string, got {type(value).__name__}")


def drop_none(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}
