"""Operator-triggered full resync of one entity type."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ..auth import TokenProvider
from ..events.types import ChangeEvent, ChangeOperation, EntityType
from ..legacy.client import LegacyPlatformClient
from ..mapping.types import MappingError, plain_id
from ..query.client import QueryServiceClient, QueryServiceError, QueryServiceRequest
from ..routing.shapes import shape_for
from .dispatcher import SyncDispatcher


logger = logging.getLogger(__name__)

# Read-model list field per entity type
_LIST_FIELDS = {
    EntityType.DEVICE: "devices",
    EntityType.TENANT: "tenants",
}


class ResyncRefusedError(Exception):
    """Raised when a resync would delete every legacy entity of a type."""
    pass


class FullResync:
    """
    Reconciles the legacy platform with the read model for one entity type.

    Every authority entity is pushed as a synthetic Updated event and every
    id that only the legacy platform has is removed with a synthetic Deleted
    event. Events go through the dispatcher, so idempotent application,
    retry and dead-lettering all apply.

    A read-model answer that is not a well-formed page aborts the run before
    anything is pushed. An empty authority set against a non-empty legacy
    set is refused unless the caller passes `allow_empty`.
    """

    def __init__(
        self,
        query_client: QueryServiceClient,
        legacy: LegacyPlatformClient,
        dispatcher: SyncDispatcher,
        tokens: TokenProvider | None = None,
        page_size: int = 100,
    ):
        self.query_client = query_client
        self.legacy = legacy
        self.dispatcher = dispatcher
        self._tokens = tokens
        self.page_size = page_size

    async def fetch_authority(self, entity_type: EntityType) -> list[dict[str, Any]]:
        """All entity nodes of a type from the read model."""
        shape = shape_for(entity_type.value)
        field = _LIST_FIELDS[entity_type]
        token = await self._tokens.get_token() if self._tokens else None

        nodes: list[dict[str, Any]] = []
        offset = 0
        while True:
            request = QueryServiceRequest(
                query=(
                    f"query Resync($first: Int!, $offset: Int!) {{ {field}(first: $first, offset: $offset) {{ "
                    f"edges {{ node {{ {shape.fields} }} }} totalCount pageInfo {{ hasNextPage }} }} }}"
                ),
                variables={"first": self.page_size, "offset": offset},
                entity_kind=entity_type.value,
                result_field=field,
            )
            data = await self.query_client.execute(request, token)
            page, has_next = _page_nodes(field, data)
            nodes.extend(page)
            if not page or not has_next:
                return nodes
            offset += len(page)

    async def reconcile(self, entity_type: EntityType, allow_empty: bool = False) -> dict[str, Any]:
        run_id = uuid.uuid4().hex[:12]
        started = datetime.now(timezone.utc)
        logger.info(f"Resync {run_id} of {entity_type.value} started")

        nodes = await self.fetch_authority(entity_type)
        legacy_ids = await self.legacy.list_entity_ids(entity_type)

        summary = {
            "run_id": run_id,
            "entity_type": entity_type.value,
            "authority": len(nodes),
            "legacy": len(legacy_ids),
            "updated": 0,
            "deleted": 0,
            "acknowledged": 0,
            "dead_lettered": 0,
            "skipped": 0,
        }

        authority: dict[str, dict[str, Any]] = {}
        for node in nodes:
            try:
                entity_id = plain_id(node.get("id"), "id")
            except MappingError as e:
                logger.error(f"Resync {run_id}: skipping node without usable id: {e}")
                summary["skipped"] += 1
                continue
            if entity_id is None:
                summary["skipped"] += 1
                continue
            authority[entity_id] = node

        if not authority and legacy_ids and not allow_empty:
            logger.error(
                f"Resync {run_id} of {entity_type.value} refused: read model has no usable entities "
                f"but legacy has {len(legacy_ids)}"
            )
            raise ResyncRefusedError(
                f"Read model returned no {entity_type.value} entities while legacy has {len(legacy_ids)}; "
                f"rerun with allow_empty to delete them all"
            )

        for entity_id, node in authority.items():
            await self._push(run_id, entity_type, entity_id, ChangeOperation.UPDATED, node, summary)
            summary["updated"] += 1

        for entity_id in sorted(legacy_ids - set(authority)):
            await self._push(run_id, entity_type, entity_id, ChangeOperation.DELETED, {}, summary)
            summary["deleted"] += 1

        summary["started_at"] = started.isoformat()
        summary["finished_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Resync {run_id} of {entity_type.value} finished: {summary['updated']} updated, "
            f"{summary['deleted']} deleted, {summary['dead_lettered']} dead-lettered"
        )
        return summary

    async def _push(
        self,
        run_id: str,
        entity_type: EntityType,
        entity_id: str,
        operation: ChangeOperation,
        payload: dict[str, Any],
        summary: dict[str, Any],
    ) -> None:
        event = ChangeEvent(
            event_id=f"resync-{run_id}-{entity_id}",
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=payload,
            occurred_at=datetime.now(timezone.utc),
        )
        result = await self.dispatcher.dispatch(event)
        if result.acknowledged:
            summary["acknowledged"] += 1
        else:
            summary["dead_lettered"] += 1


def _page_nodes(field: str, data: dict[str, Any]) -> tuple[list[dict[str, Any]], bool]:
    """Nodes and hasNextPage of one page, or QueryServiceError if it is not a well-formed page."""
    result = data.get(field)
    if not isinstance(result, dict) or not isinstance(result.get("edges"), list):
        raise QueryServiceError(f"{field}: expected a page with an edges list, got {type(result).__name__}", transient=False)
    total = result.get("totalCount")
    if not isinstance(total, int) or isinstance(total, bool):
        raise QueryServiceError(f"{field}: totalCount missing", transient=False)
    nodes = []
    for edge in result["edges"]:
        if not isinstance(edge, dict) or not isinstance(edge.get("node"), dict):
            raise QueryServiceError(f"{field}: malformed edge", transient=False)
        nodes.append(edge["node"])
    return nodes, bool((result.get("pageInfo") or {}).get("hasNextPage", False))
