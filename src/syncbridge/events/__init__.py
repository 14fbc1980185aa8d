"""Change events emitted by the source engine."""

from .types import ChangeEvent, ChangeOperation, EntityType, InvalidEventError
from .notifications import translate_message

__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "EntityType",
    "InvalidEventError",
    "translate_message",
]
