"""Notification sources delivering change events from the source engine."""

from .base import NotificationSource
from .memory import InMemorySource
from .stream import HttpStreamSource, StreamError

__all__ = [
    "NotificationSource",
    "InMemorySource",
    "HttpStreamSource",
    "StreamError",
]
