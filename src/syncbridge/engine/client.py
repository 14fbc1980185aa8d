"""Client for the source engine's protocol write API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import ProtocolRef


logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Raised when the engine rejects or fails a call."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None, transient: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.transient = transient


@dataclass(frozen=True)
class EngineWriteRequest:
    """
    A protocol operation to invoke on behalf of a caller.

    `bearer_token` is the caller's own token, passed through untouched.
    """
    operation: str
    entity_kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    bearer_token: str | None = None
    # Entity the write targets; None for creates with engine-assigned ids
    entity_id: str | None = None
    # Result is the absence of the entity (deletes, unassignments that remove it)
    removes_entity: bool = False
    # Whether the result is a read-model entity worth caching (credentials are not)
    caches_result: bool = True


class SourceEngineClient:
    """
    Invokes `POST <engine><prefix>/<package>/<Protocol>/<instanceId>/<operation>`.

    The protocol instance id is taken from configuration or discovered once
    per entity kind (`GET .../<package>/<Protocol>/`, first item's `@id`).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        protocols: dict[str, ProtocolRef],
        api_prefix: str = "/npl",
    ):
        self._client = client
        self._protocols = protocols
        self._prefix = api_prefix.rstrip("/")
        self._instances: dict[str, str] = {
            kind: ref.instance_id for kind, ref in protocols.items() if ref.instance_id
        }
        self._discovery_lock = asyncio.Lock()

    def _protocol_path(self, entity_kind: str) -> str:
        ref = self._protocols.get(entity_kind)
        if ref is None:
            raise EngineError(f"No protocol configured for {entity_kind!r}", transient=False)
        return f"{self._prefix}/{ref.package}/{ref.protocol}"

    @staticmethod
    def _auth(token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def instance_id(self, entity_kind: str, bearer_token: str | None) -> str:
        cached = self._instances.get(entity_kind)
        if cached:
            return cached
        async with self._discovery_lock:
            if entity_kind in self._instances:
                return self._instances[entity_kind]
            response = await self._send("GET", f"{self._protocol_path(entity_kind)}/", headers=self._auth(bearer_token))
            items = response.json().get("items") or []
            if not items or not items[0].get("@id"):
                # No status, so routed writes fall back to legacy
                raise EngineError(f"No {entity_kind} protocol instance found", transient=False)
            self._instances[entity_kind] = items[0]["@id"]
            logger.info(f"Discovered {entity_kind} protocol instance {self._instances[entity_kind]}")
            return self._instances[entity_kind]

    async def call(self, write: EngineWriteRequest) -> Any:
        """
        Invoke the operation and return the decoded response.

        Empty bodies give None. A successful answer that is not JSON is still
        an applied write, so its text is returned rather than raised.
        """
        instance = await self.instance_id(write.entity_kind, write.bearer_token)
        path = f"{self._protocol_path(write.entity_kind)}/{instance}/{write.operation}"
        response = await self._send(
            "POST", path, json=write.payload, headers=self._auth(write.bearer_token),
        )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"{write.operation} returned a non-JSON body; passing it on as text")
            return response.text

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise EngineError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise EngineError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            transient = response.status_code >= 500 or response.status_code in (408, 429)
            raise EngineError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
                transient=transient,
            )
        return response
