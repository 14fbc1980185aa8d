"""Legacy platform REST client."""

from .client import (
    ConflictLegacyError,
    LegacyError,
    LegacyPlatformClient,
    PermanentLegacyError,
    TransientLegacyError,
)

__all__ = [
    "ConflictLegacyError",
    "LegacyError",
    "LegacyPlatformClient",
    "PermanentLegacyError",
    "TransientLegacyError",
]
