"""Routing transport with fallback to the legacy platform.

`BridgeTransport` sits where a legacy API client's transport would. Requests
the router classifies as reads are answered from the read-model query
service, writes go to the source engine, and everything else goes to the
legacy platform untouched. If classification, transformation or a backend
call fails for any reason, the original request is forwarded to the legacy
platform and its response is returned as-is. The one exception is an engine
rejection (non-transient 4xx) of a write: that answer is returned to the
caller, since sending the write to the legacy platform would bypass the
authority.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from ..engine.client import EngineError, EngineWriteRequest, SourceEngineClient
from ..query.client import QueryServiceClient, QueryServiceRequest
from ..telemetry.emitter import TelemetryEmitter
from ..telemetry.events import Channel, Outcome, TelemetryEvent
from .cache import ReadYourWritesCache
from .router import QueryRouter, RouteMatch
from .rules import Classification
from .transformer import QueryTransformer, TransformError, bearer_token


logger = logging.getLogger(__name__)

# Legacy platform's "item not found" error code
NOT_FOUND_ERROR_CODE = 32


def not_found_response() -> httpx.Response:
    """A 404 in the legacy platform's error shape."""
    return httpx.Response(
        404,
        json={
            "status": 404,
            "message": "Requested item wasn't found!",
            "errorCode": NOT_FOUND_ERROR_CODE,
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
        },
    )


def caller_identity(token: str | None) -> str | None:
    """Stable, non-reversible key for the credentials a request carries."""
    if not token:
        return None
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def _reply(body: Any) -> httpx.Response:
    if body is None:
        return httpx.Response(200)
    if isinstance(body, str):
        return httpx.Response(200, text=body)
    return httpx.Response(200, json=body)


def _entity_id(entity: dict[str, Any]) -> str | None:
    ident = entity.get("id")
    if isinstance(ident, dict):
        ident = ident.get("id")
    return str(ident) if ident is not None else None


def _ref_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value is not None else None


class BridgeTransport(httpx.AsyncBaseTransport):
    """httpx transport routing legacy API calls to the authority, with fallback."""

    def __init__(
        self,
        legacy: httpx.AsyncBaseTransport,
        router: QueryRouter,
        query_client: QueryServiceClient,
        engine: SourceEngineClient,
        cache: ReadYourWritesCache | None = None,
        transformer: QueryTransformer | None = None,
        telemetry: TelemetryEmitter | None = None,
        write_max_attempts: int = 2,
        retry_delay_seconds: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if write_max_attempts < 1:
            raise ValueError("write_max_attempts must be >= 1")
        self._legacy = legacy
        self._router = router
        self._query = query_client
        self._engine = engine
        self._cache = cache or ReadYourWritesCache()
        self._transformer = transformer or QueryTransformer()
        self._telemetry = telemetry
        self._write_max_attempts = write_max_attempts
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep
        self._stats = {
            "reads": 0,
            "writes": 0,
            "cache_hits": 0,
            "pass_through": 0,
            "fallbacks": 0,
            "rejected": 0,
        }

    @property
    def cache(self) -> ReadYourWritesCache:
        return self._cache

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        started = time.perf_counter()
        # Buffer the body so the original request can still be replayed to legacy
        await request.aread()

        try:
            match = self._router.classify(request.method, str(request.url))
        except Exception as e:
            return await self._fallback(request, None, e, started)

        if match.classification == Classification.PASS_THROUGH:
            self._stats["pass_through"] += 1
            self._emit(Outcome.PASS_THROUGH, match, started)
            return await self._legacy.handle_async_request(request)

        try:
            if match.classification == Classification.READ:
                return await self._read(match, request, started)
            return await self._write(match, request, started)
        except EngineError as e:
            if match.classification == Classification.WRITE and not e.transient and e.status_code and 400 <= e.status_code < 500:
                return self._reject(match, e, started)
            return await self._fallback(request, match, e, started)
        except Exception as e:
            return await self._fallback(request, match, e, started)

    async def aclose(self) -> None:
        await self._legacy.aclose()

    # Reads

    async def _read(self, match: RouteMatch, request: httpx.Request, started: float) -> httpx.Response:
        self._stats["reads"] += 1
        query = self._transformer.to_query(match)
        info = self._transformer.is_info(match)
        kind = query.entity_kind

        token = bearer_token(request)
        caller = caller_identity(token)

        if query.single:
            entry = self._cache.get(kind, query.entity_id, caller)
            # Cached payloads carry no info fields, so info reads still query
            if entry is not None and (entry.tombstone or not info):
                self._stats["cache_hits"] += 1
                self._emit(Outcome.CACHE_HIT, match, started, entity_id=query.entity_id)
                if entry.tombstone:
                    return not_found_response()
                return httpx.Response(200, json=entry.payload)

            data = await self._query.execute(query, token)
            body = self._transformer.from_query_response(data, query, info)
            if entry is not None:
                body = {**body, **entry.payload}
            self._emit(Outcome.QUERY, match, started, entity_id=query.entity_id)
            return httpx.Response(200, json=body)

        list_key = self._list_key(match, caller)
        cached = self._cache.get_list(kind, list_key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            self._emit(Outcome.CACHE_HIT, match, started)
            return httpx.Response(200, json=cached)

        data = await self._query.execute(query, token)
        page = self._transformer.from_query_response(data, query, info)
        page = self._overlay(kind, page, match, query, caller)
        self._cache.put_list(kind, list_key, page)
        self._emit(Outcome.QUERY, match, started)
        return httpx.Response(200, json=page)

    @staticmethod
    def _list_key(match: RouteMatch, caller: str | None) -> str:
        scope = ",".join(f"{k}={v}" for k, v in sorted(match.path_params.items()))
        params = "&".join(f"{k}={v}" for k, v in sorted(match.query_params.items()))
        return f"{caller or 'anonymous'}/{match.target_operation}:{scope}?{params}"

    def _overlay(
        self,
        kind: str,
        page: dict[str, Any],
        match: RouteMatch,
        query: QueryServiceRequest,
        caller: str | None,
    ) -> dict[str, Any]:
        """Apply the caller's own recent writes on top of a read-model page."""
        entries = self._cache.fresh_entries(kind, caller)
        if not entries:
            return page

        by_id = {e.entity_id: e for e in entries}
        data = []
        total = page["totalElements"]
        seen = set()
        for item in page["data"]:
            item_id = _entity_id(item)
            seen.add(item_id)
            entry = by_id.get(item_id)
            if entry is None:
                data.append(item)
            elif entry.tombstone:
                total -= 1
            else:
                data.append({**item, **entry.payload})

        # Creates the read model has not seen yet go at the head of the first page
        if query.variables.get("offset") == 0 and "textSearch" not in query.variables:
            created = [
                e.payload for e in reversed(entries)
                if e.created and not e.tombstone and e.entity_id not in seen and self._in_scope(e.payload, match)
            ]
            if created:
                data = created + data
                total += len(created)
                data = data[:query.variables["first"]]

        page_size = query.variables["first"]
        return {
            **page,
            "data": data,
            "totalElements": max(total, 0),
            "totalPages": -(-max(total, 0) // page_size),
        }

    @staticmethod
    def _in_scope(payload: dict[str, Any], match: RouteMatch) -> bool:
        customer = match.path_params.get("customerId")
        if customer and _ref_id(payload.get("customerId")) != customer:
            return False
        wanted_type = match.query_params.get("type")
        if wanted_type and payload.get("type") != wanted_type:
            return False
        return True

    # Writes

    async def _write(self, match: RouteMatch, request: httpx.Request, started: float) -> httpx.Response:
        self._stats["writes"] += 1
        write = self._transformer.to_engine_write(match, request)
        raw = await self._call_engine(write)
        kind = write.entity_kind

        try:
            entity = self._transformer.from_engine_response(raw, write)
        except TransformError as e:
            # The write is already applied; never fall back from here
            logger.warning(f"{write.operation}: engine result not reshaped ({e}); returning it as-is")
            if write.entity_id:
                self._cache.invalidate(kind, write.entity_id)
            else:
                self._cache.invalidate_lists(kind)
            self._emit(Outcome.ENGINE_WRITE, match, started, entity_id=write.entity_id, error_message=str(e))
            return _reply(raw)

        entity_id = (_entity_id(entity) if entity else None) or write.entity_id
        writer = caller_identity(write.bearer_token)
        if write.removes_entity and write.entity_id:
            self._cache.tombstone(kind, write.entity_id, writer)
        elif entity is not None and write.caches_result and entity_id:
            self._cache.put(kind, entity_id, entity, created=write.entity_id is None, writer=writer)
        elif entity_id:
            self._cache.invalidate(kind, entity_id)
        else:
            self._cache.invalidate_lists(kind)

        self._emit(Outcome.ENGINE_WRITE, match, started, entity_id=entity_id)
        return _reply(entity)

    async def _call_engine(self, write: EngineWriteRequest) -> Any:
        attempt = 1
        while True:
            try:
                return await self._engine.call(write)
            except EngineError as e:
                if not e.transient or attempt >= self._write_max_attempts:
                    raise
                logger.warning(
                    f"{write.operation} attempt {attempt}/{self._write_max_attempts} failed: {e}; retrying"
                )
                await self._sleep(self._retry_delay * attempt)
                attempt += 1

    # Outcomes

    def _reject(self, match: RouteMatch, error: EngineError, started: float) -> httpx.Response:
        self._stats["rejected"] += 1
        logger.info(f"Engine rejected {match.target_operation}: {error}")
        self._emit(Outcome.REJECTED, match, started, error_class="permanent", error_message=str(error))
        if isinstance(error.body, dict):
            body = error.body
        else:
            body = {"status": error.status_code, "message": str(error.body or error)}
        return httpx.Response(error.status_code, json=body)

    async def _fallback(
        self,
        request: httpx.Request,
        match: RouteMatch | None,
        error: Exception,
        started: float,
    ) -> httpx.Response:
        self._stats["fallbacks"] += 1
        logger.warning(
            f"Falling back to legacy for {request.method} {request.url.path}: "
            f"{type(error).__name__}: {error}"
        )
        if match is not None:
            self._emit(
                Outcome.FALLBACK, match, started,
                error_class=type(error).__name__, error_message=str(error),
            )
        return await self._legacy.handle_async_request(request)

    def _emit(self, outcome: Outcome, match: RouteMatch, started: float, **kwargs) -> None:
        if self._telemetry is None:
            return
        self._telemetry.emit(TelemetryEvent.create(
            Channel.ROUTE,
            outcome,
            entity_type=match.entity_kind,
            operation=match.target_operation,
            method=match.method,
            path=match.path,
            latency_ms=(time.perf_counter() - started) * 1000,
            **kwargs,
        ))

    @property
    def stats(self) -> dict:
        return {**self._stats, "cache": self._cache.stats}


def create_routing_client(
    legacy_url: str,
    router: QueryRouter,
    query_client: QueryServiceClient,
    engine: SourceEngineClient,
    cache: ReadYourWritesCache | None = None,
    telemetry: TelemetryEmitter | None = None,
    write_max_attempts: int = 2,
    legacy_transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = 10.0,
) -> httpx.AsyncClient:
    """An httpx client for the legacy API whose requests go through the bridge."""
    transport = BridgeTransport(
        legacy=legacy_transport or httpx.AsyncHTTPTransport(),
        router=router,
        query_client=query_client,
        engine=engine,
        cache=cache,
        telemetry=telemetry,
        write_max_attempts=write_max_attempts,
    )
    return httpx.AsyncClient(base_url=legacy_url, transport=transport, timeout=timeout)
