"""Per-entity-kind response shapes.

Query-service nodes and engine results arrive in authority shape; callers
expect the legacy platform's shapes. Each entity kind has one shape entry,
selected by lookup, that knows the fields to request and how to build the
legacy entity and page envelopes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from ..mapping.device import to_legacy_device
from ..mapping.tenant import to_legacy_tenant
from ..mapping.types import MappingError, coerce_int, plain_id


class TransformError(Exception):
    """Raised when a request or response cannot be transformed with confidence."""
    pass


@dataclass(frozen=True)
class EntityShape:
    kind: str
    # Selection set requested from the query service
    fields: str
    # Extra fields carried only by the "info" variants
    info_fields: tuple[str, ...]
    convert: Callable[[str, dict[str, Any]], dict[str, Any]]

    def to_legacy(self, node: dict[str, Any], info: bool = False) -> dict[str, Any]:
        if not isinstance(node, dict):
            raise TransformError(f"{self.kind}: expected object, got {type(node).__name__}")
        try:
            entity_id = plain_id(node.get("id"), "id")
            if entity_id is None:
                raise TransformError(f"{self.kind}: node has no id")
            body = self.convert(entity_id, node)
            if "createdTime" in node:
                body["createdTime"] = coerce_int(node["createdTime"], "createdTime")
        except MappingError as e:
            raise TransformError(f"{self.kind}: {e}") from e
        if info:
            for name in self.info_fields:
                if name in node:
                    body[name] = node[name]
        return body

    def to_page(
        self,
        nodes: list[dict[str, Any]],
        total_count: int,
        page_size: int,
        has_next: bool,
        info: bool = False,
    ) -> dict[str, Any]:
        """Legacy page envelope: data, totalPages, totalElements, hasNext."""
        return {
            "data": [self.to_legacy(n, info) for n in nodes],
            "totalPages": math.ceil(total_count / page_size) if page_size else 0,
            "totalElements": total_count,
            "hasNext": has_next,
        }


DEVICE_SHAPE = EntityShape(
    kind="device",
    fields=(
        "id name type label tenantId customerId deviceProfileId firmwareId softwareId "
        "externalId createdTime additionalInfo customerTitle customerIsPublic deviceProfileName active"
    ),
    info_fields=("customerTitle", "customerIsPublic", "deviceProfileName", "active"),
    convert=to_legacy_device,
)

TENANT_SHAPE = EntityShape(
    kind="tenant",
    fields=(
        "id name title region country stateName city address address2 zip phone email "
        "limits { maxUsers maxDevices maxAssets maxCustomers } tenantProfileName createdTime additionalInfo"
    ),
    info_fields=("tenantProfileName",),
    convert=to_legacy_tenant,
)

SHAPES: dict[str, EntityShape] = {
    DEVICE_SHAPE.kind: DEVICE_SHAPE,
    TENANT_SHAPE.kind: TENANT_SHAPE,
}


def shape_for(kind: str) -> EntityShape:
    shape = SHAPES.get(kind)
    if shape is None:
        raise TransformError(f"No response shape for entity kind {kind!r}")
    return shape
