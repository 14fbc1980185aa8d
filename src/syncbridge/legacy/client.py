"""HTTP client for the legacy platform REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from ..auth import StaticTokenProvider, TokenError, TokenProvider
from ..events.types import EntityType
from ..mapping.types import LegacyOperation, LegacyOperationKind


logger = logging.getLogger(__name__)

# The legacy platform's "no customer" sentinel
NULL_UUID = "13814000-1dd2-11b2-8080-808080808080"

TRANSIENT_STATUS = frozenset({408, 425, 429})


class LegacyError(Exception):
    """Base exception for legacy platform errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientLegacyError(LegacyError):
    """Network failure, timeout or 5xx. Safe to retry."""
    pass


class ConflictLegacyError(LegacyError):
    """Target is already in the desired state. Treated as success."""
    pass


class PermanentLegacyError(LegacyError):
    """Validation or other 4xx failure. Retrying cannot help."""
    pass


@dataclass(frozen=True)
class EntityPaths:
    collection: str
    item: str
    page: str


ENTITY_PATHS: dict[EntityType, EntityPaths] = {
    EntityType.DEVICE: EntityPaths(
        collection="/api/device",
        item="/api/device/{id}",
        page="/api/tenant/devices",
    ),
    EntityType.TENANT: EntityPaths(
        collection="/api/tenant",
        item="/api/tenant/{id}",
        page="/api/tenants",
    ),
}


def _ref_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _in_desired_state(current: dict[str, Any], body: dict[str, Any], fields: tuple[str, ...]) -> bool:
    for name in fields:
        want = body.get(name)
        have = current.get(name)
        if isinstance(want, dict) and "entityType" in want:
            if _ref_id(want) != _ref_id(have):
                return False
        elif want != have:
            return False
    return True


class LegacyPlatformClient:
    """
    Thin client over the legacy REST API.

    Every mutating call is idempotent by target state: the client reads the
    current entity first and raises ConflictLegacyError when nothing needs to
    change, so a redelivered event is absorbed instead of re-applied.

    Errors are classified into TransientLegacyError, ConflictLegacyError and
    PermanentLegacyError. A 401 invalidates the token and retries once.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        tokens: TokenProvider | None = None,
    ):
        self._client = client
        self._tokens = tokens or StaticTokenProvider()
        self._appliers: dict[LegacyOperationKind, Callable[[LegacyOperation], Awaitable[Any]]] = {
            LegacyOperationKind.UPSERT: self.upsert_entity,
            LegacyOperationKind.DELETE: lambda op: self.delete_entity(op.entity_type, op.entity_id),
            LegacyOperationKind.SET_ASSIGNMENT: lambda op: self.set_assignment(op.entity_id, op.customer_id),
            LegacyOperationKind.CLEAR_ASSIGNMENT: lambda op: self.clear_assignment(op.entity_id),
            LegacyOperationKind.ROTATE_CREDENTIALS: lambda op: self.rotate_credentials(op.entity_id, op.body),
        }

    @classmethod
    def create(
        cls,
        base_url: str,
        tokens: TokenProvider | None = None,
        timeout_seconds: float = 10.0,
        connect_timeout_seconds: float = 5.0,
        max_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> LegacyPlatformClient:
        """Build a client with its own pooled connection and bounded timeouts."""
        client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            limits=httpx.Limits(max_connections=max_connections),
            transport=transport,
        )
        return cls(client, tokens)

    async def close(self) -> None:
        await self._client.aclose()

    async def apply(self, operation: LegacyOperation) -> Any:
        """Apply a mapped operation, dispatching on its kind."""
        return await self._appliers[operation.kind](operation)

    # -- Reads -------------------------------------------------------------

    async def get_entity(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Fetch one entity, or None if the platform does not have it."""
        path = ENTITY_PATHS[entity_type].item.format(id=entity_id)
        response = await self._request("GET", path, allow_404=True)
        if response.status_code == 404:
            return None
        return response.json()

    async def list_entity_ids(self, entity_type: EntityType, page_size: int = 100) -> set[str]:
        """Collect every entity id of `entity_type` by walking the paged listing."""
        path = ENTITY_PATHS[entity_type].page
        ids: set[str] = set()
        page = 0
        while True:
            response = await self._request("GET", path, params={"pageSize": page_size, "page": page})
            data = response.json()
            for item in data.get("data", []):
                ident = _ref_id(item.get("id"))
                if ident:
                    ids.add(str(ident))
            if not data.get("hasNext"):
                return ids
            page += 1

    # -- Mutations ---------------------------------------------------------

    async def upsert_entity(self, operation: LegacyOperation) -> dict[str, Any] | None:
        paths = ENTITY_PATHS[operation.entity_type]
        current = await self.get_entity(operation.entity_type, operation.entity_id)

        if current is None:
            response = await self._request("POST", paths.collection, json=operation.body)
            logger.debug(f"Created {operation.entity_type.value} {operation.entity_id}")
            return self._json_or_none(response)

        if _in_desired_state(current, operation.body, operation.synced_fields):
            raise ConflictLegacyError(
                f"{operation.entity_type.value} {operation.entity_id} already up to date"
            )

        # Keep fields the bridge does not own
        merged = {**current, **operation.body}
        response = await self._request(
            "PUT", paths.item.format(id=operation.entity_id), json=merged,
        )
        logger.debug(f"Updated {operation.entity_type.value} {operation.entity_id}")
        return self._json_or_none(response)

    async def delete_entity(self, entity_type: EntityType, entity_id: str) -> None:
        path = ENTITY_PATHS[entity_type].item.format(id=entity_id)
        response = await self._request("DELETE", path, allow_404=True)
        if response.status_code == 404:
            raise ConflictLegacyError(f"{entity_type.value} {entity_id} already absent", 404)

    async def set_assignment(self, device_id: str, customer_id: str | None) -> dict[str, Any] | None:
        if not customer_id:
            raise PermanentLegacyError(f"Assignment of device {device_id} has no customer")
        current = await self.get_entity(EntityType.DEVICE, device_id)
        if current is None:
            raise PermanentLegacyError(f"Device {device_id} not found for assignment", 404)
        if _ref_id(current.get("customerId")) == customer_id:
            raise ConflictLegacyError(f"Device {device_id} already assigned to {customer_id}")
        response = await self._request("POST", f"/api/customer/{customer_id}/device/{device_id}")
        return self._json_or_none(response)

    async def clear_assignment(self, device_id: str) -> None:
        current = await self.get_entity(EntityType.DEVICE, device_id)
        if current is None or _ref_id(current.get("customerId")) in (None, NULL_UUID):
            raise ConflictLegacyError(f"Device {device_id} already unassigned")
        await self._request("DELETE", f"/api/customer/device/{device_id}")

    async def rotate_credentials(self, device_id: str, body: dict[str, Any]) -> dict[str, Any] | None:
        response = await self._request("GET", f"/api/device/{device_id}/credentials", allow_404=True)
        current = response.json() if response.status_code != 404 else None
        fields = ("credentialsType", "credentialsId")
        if current is not None and all(current.get(f) == body.get(f) for f in fields):
            raise ConflictLegacyError(f"Device {device_id} credentials already current")

        payload = dict(body)
        if current is not None and current.get("id") is not None:
            payload["id"] = current["id"]
        response = await self._request("POST", "/api/device/credentials", json=payload)
        return self._json_or_none(response)

    # -- Transport ---------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        try:
            token = await self._tokens.get_token()
        except TokenError as e:
            if e.transient:
                raise TransientLegacyError(f"Authentication failed: {e}") from e
            raise PermanentLegacyError(f"Authentication rejected: {e}") from e
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, headers=await self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientLegacyError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientLegacyError(f"{method} {path} failed: {e}") from e

    async def _request(self, method: str, path: str, allow_404: bool = False, **kwargs) -> httpx.Response:
        response = await self._send(method, path, **kwargs)
        if response.status_code == 401:
            self._tokens.invalidate()
            response = await self._send(method, path, **kwargs)
            if response.status_code == 401:
                raise TransientLegacyError(f"{method} {path} unauthorized after token refresh", 401)

        status = response.status_code
        if status < 400 or (status == 404 and allow_404):
            return response

        detail = f"{method} {path} returned {status}: {response.text[:200]}"
        if status >= 500 or status in TRANSIENT_STATUS:
            raise TransientLegacyError(detail, status)
        if status == 409:
            raise ConflictLegacyError(detail, status)
        raise PermanentLegacyError(detail, status)

    @staticmethod
    def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None
