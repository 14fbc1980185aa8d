"""Device mapping: engine device representation -> legacy device operations."""

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


# Body keys the bridge owns on a legacy device
DEVICE_SYNCED_FIELDS = (
    "name",
    "type",
    "label",
    "tenantId",
    "customerId",
    "deviceProfileId",
    "firmwareId",
    "softwareId",
    "externalId",
    "additionalInfo",
)


def _check_identity(event: ChangeEvent, payload: dict[str, Any]) -> None:
    payload_id = plain_id(payload.get("id"), "id")
    if payload_id is not None and payload_id != event.entity_id:
        raise MappingError(
            f"device {event.entity_id}: payload id {payload_id!r} does not match entity id"
        )


def to_legacy_device(entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Build the legacy device body. Authority-only fields never reach the result."""
    payload = strip_authority_only(payload)
    require(payload, "name", "type", context=f"device {entity_id}")

    # version is the legacy platform's optimistic lock and is not pushed
    coerce_int(payload.get("version"), "version")

    return drop_none({
        "id": entity_ref(entity_id, "DEVICE", "id"),
        "name": coerce_str(payload["name"], "name"),
        "type": coerce_str(payload["type"], "type"),
        "label": coerce_str(payload.get("label"), "label"),
        "tenantId": entity_ref(payload.get("tenantId"), "TENANT", "tenantId"),
        "customerId": entity_ref(payload.get("customerId"), "CUSTOMER", "customerId"),
        "deviceProfileId": entity_ref(payload.get("deviceProfileId"), "DEVICE_PROFILE", "deviceProfileId"),
        "firmwareId": entity_ref(payload.get("firmwareId"), "OTA_PACKAGE", "firmwareId"),
        "softwareId": entity_ref(payload.get("softwareId"), "OTA_PACKAGE", "softwareId"),
        "externalId": entity_ref(payload.get("externalId"), "DEVICE", "externalId"),
        "createdTime": coerce_int(payload.get("createdTime"), "createdTime"),
        "additionalInfo": parse_additional_info(payload.get("additionalInfo")),
    })


def _upsert(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event, event.payload)
    body = to_legacy_device(event.entity_id, event.payload)
    return LegacyOperation(
        kind=LegacyOperationKind.UPSERT,
        entity_type=EntityType.DEVICE,
        entity_id=event.entity_id,
        body=body,
        synced_fields=tuple(f for f in DEVICE_SYNCED_FIELDS if f in body),
    )


def _delete(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event, event.payload)
    return LegacyOperation(
        kind=LegacyOperationKind.DELETE,
        entity_type=EntityType.DEVICE,
        entity_id=event.entity_id,
    )


def _assign(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event, event.payload)
    require(event.payload, "customerId", context=f"device {event.entity_id} assignment")
    return LegacyOperation(
        kind=LegacyOperationKind.SET_ASSIGNMENT,
        entity_type=EntityType.DEVICE,
        entity_id=event.entity_id,
        customer_id=plain_id(event.payload["customerId"], "customerId"),
    )


def _unassign(event: ChangeEvent) -> LegacyOperation:
    _check_identity(event, event.payload)
    return LegacyOperation(
        kind=LegacyOperationKind.CLEAR_ASSIGNMENT,
        entity_type=EntityType.DEVICE,
        entity_id=event.entity_id,
    )


def _rotate_credentials(event: ChangeEvent) -> LegacyOperation:
    payload = strip_authority_only(event.payload)
    device_id = plain_id(payload.get("deviceId"), "deviceId")
    if device_id is not None and device_id != event.entity_id:
        raise MappingError(
            f"device {event.entity_id}: credentials belong to device {device_id!r}"
        )
    require(payload, "credentialsType", "credentialsId", context=f"device {event.entity_id} credentials")
    body = {
        "deviceId": entity_ref(event.entity_id, "DEVICE", "deviceId"),
        "credentialsType": coerce_str(payload["credentialsType"], "credentialsType"),
        "credentialsId": coerce_str(payload["credentialsId"], "credentialsId"),
    }
    return LegacyOperation(
        kind=LegacyOperationKind.ROTATE_CREDENTIALS,
        entity_type=EntityType.DEVICE,
        entity_id=event.entity_id,
        body=body,
        synced_fields=("credentialsType", "credentialsId"),
    )


DEVICE_MAPPERS: dict[ChangeOperation, Callable[[ChangeEvent], LegacyOperation]] = {
    ChangeOperation.CREATED: _upsert,
    ChangeOperation.UPDATED: _upsert,
    ChangeOperation.DELETED: _delete,
    ChangeOperation.ASSIGNED: _assign,
    # A claim moves the device to the claiming customer
    ChangeOperation.CLAIMED: _assign,
    ChangeOperation.UNASSIGNED: _unassign,
    ChangeOperation.RECLAIMED: _unassign,
    ChangeOperation.CREDENTIALS_ROTATED: _rotate_credentials,
}
