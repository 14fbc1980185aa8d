"""Mapper lookup by entity type."""

from __future__ import annotations

from typing import Callable

from ..events.types import ChangeEvent, ChangeOperation, EntityType
from .device import DEVICE_MAPPERS
from .tenant import TENANT_MAPPERS
from .types import LegacyOperation, MappingError


OperationMappers = dict[ChangeOperation, Callable[[ChangeEvent], LegacyOperation]]


class MapperRegistry:
    """
    Selects the mapping function for an event by (entity type, operation).

    Mapping is pure: the same event always yields an equal operation.
    """

    def __init__(self, mappers: dict[EntityType, OperationMappers] | None = None):
        self._mappers: dict[EntityType, OperationMappers] = dict(mappers or {})

    def register(self, entity_type: EntityType, mappers: OperationMappers) -> None:
        self._mappers[entity_type] = dict(mappers)

    def supports(self, entity_type: EntityType, operation: ChangeOperation) -> bool:
        return operation in self._mappers.get(entity_type, {})

    def map(self, event: ChangeEvent) -> LegacyOperation:
        """Map an event, raising MappingError when it cannot be represented."""
        by_operation = self._mappers.get(event.entity_type)
        if by_operation is None:
            raise MappingError(f"No mapper for entity type {event.entity_type.value!r}")
        mapper = by_operation.get(event.operation)
        if mapper is None:
            raise MappingError(
                f"Operation {event.operation.value} is not supported for {event.entity_type.value}"
            )
        if not isinstance(event.payload, dict):
            raise MappingError("Event payload must be an object")
        return mapper(event)


default_registry = MapperRegistry({
    EntityType.DEVICE: DEVICE_MAPPERS,
    EntityType.TENANT: TENANT_MAPPERS,
})


def map_to_legacy(event: ChangeEvent) -> LegacyOperation:
    """Map a change event to its legacy platform operation."""
    return default_registry.map(event)
