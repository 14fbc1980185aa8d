"""Translate raw engine stream messages into change events.

The engine stream carries two message kinds:

    {"type": "notify", "name": "deviceSaved", "arguments": [{"value": {...}}], ...}
    {"type": "command", "command": "saveDevice", "parameters": {...}, ...}

plus system chatter (open/close/keep-alive) that is not a business event.
Messages already in change-event shape are accepted as-is.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .types import ChangeEvent, ChangeOperation, EntityType, InvalidEventError, parse_timestamp


logger = logging.getLogger(__name__)


Extractor = Callable[[list[Any]], tuple[str, dict[str, Any]]]


def _first(args: list[Any]) -> Any:
    if not args:
        raise InvalidEventError("Notification has no arguments")
    return args[0]


def _entity_arg(args: list[Any]) -> tuple[str, dict[str, Any]]:
    value = _first(args)
    if isinstance(value, dict):
        entity_id = value.get("id")
        if not entity_id:
            raise InvalidEventError("Entity argument has no id")
        return str(entity_id), dict(value)
    if not value:
        raise InvalidEventError("Notification argument is empty")
    # Deletions may carry only the id
    return str(value), {"id": str(value)}


def _id_arg(args: list[Any]) -> tuple[str, dict[str, Any]]:
    value = _first(args)
    entity_id = value.get("id") if isinstance(value, dict) else value
    if not entity_id:
        raise InvalidEventError("Notification argument has no id")
    return str(entity_id), {"id": str(entity_id)}


def _assignment_args(args: list[Any]) -> tuple[str, dict[str, Any]]:
    value = _first(args)
    if not value:
        raise InvalidEventError("Assignment notification has no device id")
    device_id = str(value)
    payload: dict[str, Any] = {"id": device_id}
    if len(args) > 1 and args[1] is not None:
        payload["customerId"] = str(args[1])
    return device_id, payload


def _credentials_args(args: list[Any]) -> tuple[str, dict[str, Any]]:
    value = _first(args)
    if not isinstance(value, dict):
        raise InvalidEventError("Credentials argument must be an object")
    device_id = value.get("deviceId") or value.get("id")
    if not device_id:
        raise InvalidEventError("Credentials argument has no deviceId")
    return str(device_id), dict(value)


@dataclass(frozen=True)
class NotificationRoute:
    entity_type: EntityType
    operation: ChangeOperation
    extract: Extractor


NOTIFICATION_ROUTES: dict[str, NotificationRoute] = {
    "deviceCreated": NotificationRoute(EntityType.DEVICE, ChangeOperation.CREATED, _entity_arg),
    "deviceSaved": NotificationRoute(EntityType.DEVICE, ChangeOperation.UPDATED, _entity_arg),
    "deviceDeleted": NotificationRoute(EntityType.DEVICE, ChangeOperation.DELETED, _id_arg),
    "deviceAssigned": NotificationRoute(EntityType.DEVICE, ChangeOperation.ASSIGNED, _assignment_args),
    "deviceUnassigned": NotificationRoute(EntityType.DEVICE, ChangeOperation.UNASSIGNED, _assignment_args),
    "deviceCredentialsSaved": NotificationRoute(
        EntityType.DEVICE, ChangeOperation.CREDENTIALS_ROTATED, _credentials_args,
    ),
    "deviceCredentialsRotated": NotificationRoute(
        EntityType.DEVICE, ChangeOperation.CREDENTIALS_ROTATED, _credentials_args,
    ),
    "deviceClaimed": NotificationRoute(EntityType.DEVICE, ChangeOperation.CLAIMED, _assignment_args),
    "deviceReclaimed": NotificationRoute(EntityType.DEVICE, ChangeOperation.RECLAIMED, _assignment_args),
    "tenantCreated": NotificationRoute(EntityType.TENANT, ChangeOperation.CREATED, _entity_arg),
    "tenantUpdated": NotificationRoute(EntityType.TENANT, ChangeOperation.UPDATED, _entity_arg),
    "tenantDeleted": NotificationRoute(EntityType.TENANT, ChangeOperation.DELETED, _id_arg),
}


def _command_device(params: dict[str, Any]) -> list[Any]:
    return [params.get("device")]


def _command_device_id(params: dict[str, Any]) -> list[Any]:
    return [params.get("deviceId") or params.get("id")]


def _command_assignment(params: dict[str, Any]) -> list[Any]:
    return [params.get("deviceId"), params.get("customerId")]


# Command echoes map onto the equivalent notification
COMMAND_ROUTES: dict[str, tuple[str, Callable[[dict[str, Any]], list[Any]]]] = {
    "saveDevice": ("deviceSaved", _command_device),
    "deleteDevice": ("deviceDeleted", _command_device_id),
    "assignDeviceToCustomer": ("deviceAssigned", _command_assignment),
    "unassignDeviceFromCustomer": ("deviceUnassigned", _command_assignment),
}


def _derive_event_id(message: dict[str, Any]) -> str:
    digest = hashlib.sha1(json.dumps(message, sort_keys=True, default=str).encode("utf-8"))
    return f"derived-{digest.hexdigest()}"


def _argument_values(raw_args: Any) -> list[Any]:
    values = []
    for arg in raw_args or []:
        values.append(arg.get("value") if isinstance(arg, dict) and "value" in arg else arg)
    return values


def translate_message(message: dict[str, Any], position: str | None = None) -> ChangeEvent | None:
    """
    Translate one stream message into a change event.

    Returns None for messages that are not business events. Raises
    InvalidEventError for business events that cannot be read.
    """
    if "eventId" in message and "operation" in message:
        return ChangeEvent.from_dict(message).with_position(position)

    kind = message.get("type")
    if kind == "notify":
        name = message.get("name")
        args = _argument_values(message.get("arguments"))
    elif kind == "command":
        command = COMMAND_ROUTES.get(message.get("command", ""))
        if command is None:
            logger.debug(f"Ignoring command {message.get('command')!r}")
            return None
        name, build_args = command
        args = build_args(message.get("parameters") or {})
    else:
        logger.debug(f"Ignoring stream message of type {kind!r}")
        return None

    route = NOTIFICATION_ROUTES.get(name or "")
    if route is None:
        logger.debug(f"No sync route for notification {name!r}")
        return None

    entity_id, payload = route.extract(args)
    event_id = message.get("eventId") or message.get("id") or _derive_event_id(message)
    timestamp = message.get("timestamp")

    return ChangeEvent(
        event_id=str(event_id),
        entity_type=route.entity_type,
        entity_id=entity_id,
        operation=route.operation,
        payload=payload,
        occurred_at=parse_timestamp(timestamp) if timestamp is not None else datetime.now(timezone.utc),
        position=position,
    )
