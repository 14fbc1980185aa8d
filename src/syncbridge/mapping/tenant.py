"""Tenant mapping: engine tenant representation -> legacy tenant operations."""

from __future__ import annotations

from typing import Any, Callable

from ..events.types import ChangeEvent, ChangeOperation, EntityType
from .types import (
    LegacyOperation,
    LegacyOperationKind,
    MappingError,
    coerce_int,
    coerce_str,
    drop_none,
    entity_ref,
    parse_additional_info,
    plain_id,
    require,
    strip_authority_only,
)


TENANT_SYNCED_FIELDS = (
    "title",
    "name",
    "region",
    "country",
    "state",
    "city",
    "address",
    "address2",
    "zip",
    "phone",
    "email",
    "additionalInfo",
    "tenantProfileId",
)

_ADDRESS_FIELDS = ("region", "country", "city", "address", "address2", "zip", "phone", "email")

# Profile tiers by user limit, highest first
PROFILE_TIERS: tuple[tuple[int, str], ...] = (
    (200, "premium-profile-id"),
    (100, "standard-profile-id"),
)
DEFAULT_PROFILE_ID = "default-profile-id"


def profile_for_limits(limits: Any) -> str:
    """Pick the legacy tenant profile matching the engine's tenant limits."""
    if limits is None:
        return DEFAULT_PROFILE_ID
    if not isinstance(limits, dict):
        raise MappingError(f"limits: expected object, got {type(limits).__name__}")
    max_users = coerce_int(limits.get("maxUsers"), "limits.maxUsers") or 0
    for threshold, profile_id in PROFILE_TIERS:
        if max_users >= threshold:
            return profile_id
    return DEFAULT_PROFILE_ID


def to_legacy_tenant(entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    payload = strip_authority_only(payload)
    require(payload, "title", context=f"tenant {entity_id}")

    profile = payload.get("tenantProfileId")
    if profile is not None:
        profile_id = plain_id(profile, "tenantProfileId")
    else:
        profile_id = profile_for_limits(payload.get("limits"))

    body: dict[str, Any] = {
        "id": entity_ref(entity_id, "TENANT", "id"),
        "title": coerce_str(payload["title"], "title"),
        "name": coerce_str(payload.get("name"), "name"),
        "state": coerce_str(payload.get("stateName", payload.get("state")), "stateName"),
        "additionalInfo": parse_additional_info(payload.get("additionalInfo")),
        "tenantProfileId": entity_ref(profile_id, "TENANT_PROFILE", "tenantProfileId"),
    }
    for name in _ADDRESS_FIELDS:
        body[name] = coerce_str(payload.get(name), name)
    return drop_none(body)


def _check_identity(event: ChangeEvent) -> None:
    payload_id = plain_id(event.payload.get("id"), "id")
    if payload_id is not None and payload_id != event.entity_id:
        raise MappingError(
            f"tenant {event.entity_id}: payload id {payload_id!r} does not match entity id"
        )


def _upsert(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event)
    body = to_legacy_tenant(event.entity_id, event.payload)
    return LegacyOperation(
        kind=LegacyOperationKind.UPSERT,
        entity_type=EntityType.TENANT,
        entity_id=event.entity_id,
        body=body,
        synced_fields=tuple(f for f in TENANT_SYNCED_FIELDS if f in body),
    )


def _delete(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event)
    return LegacyOperation(
        kind=LegacyOperationKind.DELETE,
        entity_type=EntityType.TENANT,
        entity_id=event.entity_id,
    )


TENANT_MAPPERS: dict[ChangeOperation, Callable[[ChangeEvent], LegacyOperation]] = {
    ChangeOperation.CREATED: _upsert,
    ChangeOperation.UPDATED: _upsert,
    ChangeOperation.DELETED: _delete,
}
