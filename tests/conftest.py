"""Shared test fixtures for sync bridge tests.

HTTP collaborators are in-process fakes served through httpx.MockTransport:

- FakeLegacyPlatform: dict-backed legacy REST API (devices, tenants,
  assignments, credentials, paging, login)
- FakeEngine: protocol write API with instance discovery
- FakeQueryService: GraphQL endpoint answering from canned data
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from syncbridge.events.types import ChangeEvent, ChangeOperation, EntityType
from syncbridge.legacy.client import NULL_UUID, LegacyPlatformClient
from syncbridge.sync.deadletter import DeadLetterRecorder, InMemoryDeadLetterStore
from syncbridge.sync.dispatcher import SyncDispatcher
from syncbridge.sync.retry import RetryPolicy


LEGACY_URL = "http://legacy.test"
ENGINE_URL = "http://engine.test"
QUERY_URL = "http://query.test/graphql"


def _json(request: httpx.Request) -> Any:
    return json.loads(request.content) if request.content else None


def _ref(value: Any) -> str | None:
    return value.get("id") if isinstance(value, dict) else value


# =============================================================================
# Legacy platform
# =============================================================================

class FakeLegacyPlatform:
    """In-memory legacy REST API. `failures` are status codes returned before handling."""

    def __init__(self):
        self.entities: dict[str, dict[str, dict[str, Any]]] = {"device": {}, "tenant": {}}
        self.credentials: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.failures: list[int] = []
        self.reject_with: int | None = None
        self._routes: list[tuple[str, re.Pattern, Callable]] = [
            ("POST", re.compile(r"^/api/auth/login$"), self._login),
            ("GET", re.compile(r"^/api/device/(?P<id>[^/]+)/credentials$"), self._get_credentials),
            ("POST", re.compile(r"^/api/device/credentials$"), self._save_credentials),
            ("GET", re.compile(r"^/api/tenant/devices$"), lambda r: self._page(r, "device")),
            ("GET", re.compile(r"^/api/tenants$"), lambda r: self._page(r, "tenant")),
            ("POST", re.compile(r"^/api/customer/(?P<cid>[^/]+)/device/(?P<id>[^/]+)$"), self._assign),
            ("DELETE", re.compile(r"^/api/customer/device/(?P<id>[^/]+)$"), self._unassign),
            ("POST", re.compile(r"^/api/(?P<kind>device|tenant)$"), self._create),
            ("GET", re.compile(r"^/api/(?P<kind>device|tenant)/(?P<id>[^/]+)$"), self._get),
            ("PUT", re.compile(r"^/api/(?P<kind>device|tenant)/(?P<id>[^/]+)$"), self._put),
            ("DELETE", re.compile(r"^/api/(?P<kind>device|tenant)/(?P<id>[^/]+)$"), self._delete),
        ]

    @property
    def devices(self) -> dict[str, dict[str, Any]]:
        return self.entities["device"]

    @property
    def tenants(self) -> dict[str, dict[str, Any]]:
        return self.entities["tenant"]

    @property
    def mutations(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method != "GET" and r.url.path != "/api/auth/login"]

    def seed_device(self, device_id: str, **fields) -> dict[str, Any]:
        device = {"id": {"id": device_id, "entityType": "DEVICE"}, "name": device_id, "type": "default", **fields}
        self.devices[device_id] = device
        return device

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"message": "injected failure"})
        if self.reject_with is not None and request.method != "GET":
            return httpx.Response(self.reject_with, json={"message": "rejected"})
        for method, pattern, handler in self._routes:
            m = pattern.match(request.url.path)
            if m and request.method == method:
                request.extensions["params"] = m.groupdict()
                return handler(request)
        return httpx.Response(404, json={"status": 404, "message": "no route"})

    def _login(self, request):
        return httpx.Response(200, json={"token": "legacy-jwt", "expiresIn": 3600})

    def _get(self, request):
        p = request.extensions["params"]
        entity = self.entities[p["kind"]].get(p["id"])
        if entity is None:
            return httpx.Response(404, json={"status": 404, "message": "Requested item wasn't found!", "errorCode": 32})
        return httpx.Response(200, json=entity)

    def _create(self, request):
        kind = request.extensions["params"]["kind"]
        body = _json(request)
        entity_id = _ref(body.get("id")) or f"{kind}-{len(self.entities[kind]) + 1}"
        body["id"] = {"id": entity_id, "entityType": kind.upper()}
        self.entities[kind][entity_id] = body
        return httpx.Response(200, json=body)

    def _put(self, request):
        p = request.extensions["params"]
        self.entities[p["kind"]][p["id"]] = _json(request)
        return httpx.Response(200, json=_json(request))

    def _delete(self, request):
        p = request.extensions["params"]
        if self.entities[p["kind"]].pop(p["id"], None) is None:
            return httpx.Response(404, json={"status": 404, "message": "Requested item wasn't found!"})
        return httpx.Response(200)

    def _assign(self, request):
        p = request.extensions["params"]
        device = self.devices.get(p["id"])
        if device is None:
            return httpx.Response(404)
        device["customerId"] = {"id": p["cid"], "entityType": "CUSTOMER"}
        return httpx.Response(200, json=device)

    def _unassign(self, request):
        device = self.devices.get(request.extensions["params"]["id"])
        if device is None:
            return httpx.Response(404)
        device["customerId"] = {"id": NULL_UUID, "entityType": "CUSTOMER"}
        return httpx.Response(200, json=device)

    def _get_credentials(self, request):
        creds = self.credentials.get(request.extensions["params"]["id"])
        if creds is None:
            return httpx.Response(404)
        return httpx.Response(200, json=creds)

    def _save_credentials(self, request):
        body = _json(request)
        self.credentials[_ref(body["deviceId"])] = body
        return httpx.Response(200, json=body)

    def _page(self, request, kind):
        size = int(request.url.params.get("pageSize", 10))
        page = int(request.url.params.get("page", 0))
        items = list(self.entities[kind].values())
        chunk = items[page * size:(page + 1) * size]
        return httpx.Response(200, json={
            "data": chunk,
            "totalPages": -(-len(items) // size),
            "totalElements": len(items),
            "hasNext": (page + 1) * size < len(items),
        })


# =============================================================================
# Source engine
# =============================================================================

class FakeEngine:
    """
    Protocol write API. Operations answer via `handlers[operation]`; the
    default echoes the submitted entity with an engine-assigned id, and a
    handler may return an `httpx.Response` to answer verbatim.
    `failures` are (status, body) pairs returned before handling.
    `discovery_items` replaces the instance list discovery answers with.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, Any, str | None]] = []
        self.failures: list[tuple[int, Any]] = []
        self.handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self.discoveries = 0
        self.discovery_items: list[dict[str, Any]] | None = None
        self._next_id = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        # npl/<package>/<Protocol>/ or npl/<package>/<Protocol>/<instance>/<operation>
        if request.method == "GET" and len(parts) == 3:
            self.discoveries += 1
            items = self.discovery_items
            if items is None:
                items = [{"@id": f"{parts[1]}-instance"}]
            return httpx.Response(200, json={"items": items})

        operation = parts[-1]
        body = _json(request) or {}
        self.calls.append((operation, parts[-2], body, request.headers.get("authorization")))
        if self.failures:
            status, error_body = self.failures.pop(0)
            return httpx.Response(status, json=error_body)

        handler = self.handlers.get(operation, self._default)
        result = handler(body)
        if isinstance(result, httpx.Response):
            return result
        if result is None:
            return httpx.Response(200)
        return httpx.Response(200, json=result)

    def _default(self, body: dict[str, Any]) -> Any:
        for kind in ("device", "tenant"):
            if isinstance(body.get(kind), dict):
                entity = dict(body[kind])
                if not entity.get("id"):
                    self._next_id += 1
                    entity["id"] = f"{kind}-new-{self._next_id}"
                return entity
        return None


# =============================================================================
# Query service
# =============================================================================

class FakeQueryService:
    """GraphQL endpoint. Answers with `data[result_field]` chosen by the query text."""

    def __init__(self):
        self.data: dict[str, Any] = {}
        self.errors: list[dict[str, Any]] | None = None
        self.status_code = 200
        self.requests: list[dict[str, Any]] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = _json(request)
        self.requests.append(body)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="unavailable")
        if self.errors:
            return httpx.Response(200, json={"errors": self.errors})
        # The root field follows the first "{" of the operation
        field = re.search(r"\{\s*(\w+)", body["query"]).group(1)
        return httpx.Response(200, json={"data": {field: self.data.get(field)}})

    def set_page(self, field: str, nodes: list[dict[str, Any]], total: int | None = None, has_next: bool = False):
        self.data[field] = {
            "edges": [{"node": n} for n in nodes],
            "totalCount": len(nodes) if total is None else total,
            "pageInfo": {"hasNextPage": has_next},
        }


# =============================================================================
# Helpers and fixtures
# =============================================================================

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


def make_event(
    event_id: str = "evt-1",
    entity_id: str = "dev-1",
    operation: ChangeOperation = ChangeOperation.UPDATED,
    entity_type: EntityType = EntityType.DEVICE,
    payload: dict[str, Any] | None = None,
    position: str | None = None,
) -> ChangeEvent:
    if payload is None:
        payload = {"id": entity_id, "name": f"{entity_id}-name", "type": "thermostat"}
    return ChangeEvent(
        event_id=event_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload,
        occurred_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        position=position,
    )


@pytest.fixture
def legacy_platform() -> FakeLegacyPlatform:
    return FakeLegacyPlatform()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def query_service() -> FakeQueryService:
    return FakeQueryService()


@pytest.fixture
def legacy_client(legacy_platform) -> LegacyPlatformClient:
    return LegacyPlatformClient.create(LEGACY_URL, transport=legacy_platform.transport())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def recorder() -> DeadLetterRecorder:
    return DeadLetterRecorder(InMemoryDeadLetterStore())


@pytest.fixture
def dispatcher(legacy_client, recorder, sleep, clock) -> SyncDispatcher:
    policy = RetryPolicy(rng=lambda: 1.0)
    return SyncDispatcher(legacy_client, recorder, policy=policy, sleep=sleep, clock=clock)
