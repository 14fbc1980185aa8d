"""Entity mapping from source-engine shape to legacy platform operations."""

from .types import (
    AUTHORITY_ONLY_FIELDS,
    LegacyOperation,
    LegacyOperationKind,
    MappingError,
)
from .registry import MapperRegistry, default_registry, map_to_legacy

__all__ = [
    "AUTHORITY_ONLY_FIELDS",
    "LegacyOperation",
    "LegacyOperationKind",
    "MappingError",
    "MapperRegistry",
    "default_registry",
    "map_to_legacy",
]
