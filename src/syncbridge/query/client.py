"""Client for the read-model query service (GraphQL over HTTP)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx


logger = logging.getLogger(__name__)


class QueryServiceError(Exception):
    """Raised when the query service fails or returns errors."""

    def __init__(self, message: str, status_code: int | None = None, transient: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


@dataclass(frozen=True)
class QueryServiceRequest:
    """
    One structured query.

    `result_field` names the top-level field of `data` holding the result;
    `single` distinguishes a by-id lookup from a paged edge/node listing.
    """
    query: str
    variables: dict[str, Any] = field(default_factory=dict)
    entity_kind: str = ""
    result_field: str = ""
    single: bool = False
    entity_id: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {"query": self.query, "variables": self.variables}


class QueryServiceClient:
    """Posts queries to the single query endpoint and returns `data`."""

    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self._url = url
        self.calls = 0

    async def execute(self, request: QueryServiceRequest, bearer_token: str | None = None) -> dict[str, Any]:
        self.calls += 1
        headers = {"Content-Type": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"

        try:
            response = await self._client.post(self._url, json=request.to_json(), headers=headers)
        except httpx.TimeoutException as e:
            raise QueryServiceError(f"Query service timed out: {e}") from e
        except httpx.TransportError as e:
            raise QueryServiceError(f"Query service unreachable: {e}") from e

        if response.status_code != 200:
            raise QueryServiceError(
                f"Query service returned {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500 or response.status_code == 429,
            )

        body = response.json()
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
            raise QueryServiceError(f"Query errors: {messages}", status_code=200, transient=False)

        data = body.get("data")
        if not isinstance(data, dict):
            raise QueryServiceError("Query response has no data", status_code=200, transient=False)
        return data
