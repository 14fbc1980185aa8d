"""Service layer - wires configuration into the running bridge.

Two halves share one process:

1. Sync: per entity type, a consumer pulls change events from the engine's
   notification stream and drives them through the dispatcher into the
   legacy platform, parking failures in the dead-letter store.
2. Routing: a router, transformer and read-your-writes cache behind an
   httpx transport that legacy API clients can use in place of their own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .auth import LegacyLoginTokenProvider, OidcPasswordTokenProvider, StaticTokenProvider, TokenProvider
from .config import Config
from .engine.client import SourceEngineClient
from .events.types import EntityType
from .feed.base import NotificationSource
from .feed.stream import HttpStreamSource
from .legacy.client import LegacyPlatformClient
from .query.client import QueryServiceClient
from .routing.cache import ReadYourWritesCache
from .routing.router import QueryRouter, RouteMatch
from .routing.rules import load_routing_table
from .routing.transport import create_routing_client
from .sync.consumer import SyncConsumer
from .sync.cursor import SqliteCursorStore
from .sync.db import DatabaseManager
from .sync.deadletter import DeadLetterRecord, DeadLetterRecorder, SqliteDeadLetterStore
from .sync.dispatcher import SyncDispatcher
from .sync.resync import FullResync
from .sync.retry import RetryPolicy
from .telemetry.emitter import TelemetryEmitter


logger = logging.getLogger(__name__)


def _timeout(total: float, connect: float) -> httpx.Timeout:
    return httpx.Timeout(total, connect=connect)


class SyncBridgeService:
    """Owns every long-lived component and their background tasks."""

    def __init__(
        self,
        config: Config,
        telemetry: TelemetryEmitter | None = None,
        sources: dict[EntityType, NotificationSource] | None = None,
        legacy_transport: httpx.AsyncBaseTransport | None = None,
        engine_transport: httpx.AsyncBaseTransport | None = None,
        query_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.telemetry = telemetry

        self.db = DatabaseManager(config.storage.db_path)
        self.recorder = DeadLetterRecorder(SqliteDeadLetterStore(self.db))
        self.cursors = SqliteCursorStore(self.db)

        # Auth: one client for token endpoints, separate from the data clients
        self._auth_http = httpx.AsyncClient(
            timeout=_timeout(config.legacy.timeout_seconds, config.legacy.connect_timeout_seconds),
            transport=legacy_transport,
        )
        self.legacy_tokens: TokenProvider = self._legacy_tokens(config)
        self.engine_tokens: TokenProvider = self._engine_tokens(config)

        self.legacy = LegacyPlatformClient.create(
            config.legacy.url,
            tokens=self.legacy_tokens,
            timeout_seconds=config.legacy.timeout_seconds,
            connect_timeout_seconds=config.legacy.connect_timeout_seconds,
            max_connections=config.legacy.max_connections,
            transport=legacy_transport,
        )

        self.dispatcher = SyncDispatcher(
            legacy=self.legacy,
            recorder=self.recorder,
            policy=RetryPolicy.from_config(config.retry),
            telemetry=telemetry,
            alert=self._alert,
        )

        self._engine_http = httpx.AsyncClient(
            base_url=config.engine.url,
            timeout=_timeout(config.engine.timeout_seconds, config.engine.connect_timeout_seconds),
            transport=engine_transport,
        )
        self._query_http = httpx.AsyncClient(
            timeout=_timeout(config.query.timeout_seconds, config.query.connect_timeout_seconds),
            transport=query_transport,
        )
        self.engine = SourceEngineClient(self._engine_http, config.engine.protocols, config.engine.api_prefix)
        self.query = QueryServiceClient(self._query_http, config.query.url)

        self.router = QueryRouter(load_routing_table(config.routing.rules_file))
        self.cache = ReadYourWritesCache(
            ttl_seconds=config.cache.ttl_seconds,
            max_size=config.cache.max_size,
        )
        self.resync = FullResync(self.query, self.legacy, self.dispatcher, tokens=self.engine_tokens)

        self.sources = sources if sources is not None else self._stream_sources(config)
        self.consumers: dict[EntityType, SyncConsumer] = {
            entity_type: SyncConsumer(
                consumer_id=f"{entity_type.value}-sync",
                source=source,
                dispatcher=self.dispatcher,
                cursors=self.cursors,
                escalate=self._escalate,
            )
            for entity_type, source in self.sources.items()
        }
        self._tasks: list[asyncio.Task] = []

    def _legacy_tokens(self, config: Config) -> TokenProvider:
        if config.legacy.username and config.legacy.password:
            return LegacyLoginTokenProvider(
                self._auth_http,
                config.legacy.url,
                config.legacy.username,
                config.legacy.password,
                refresh_margin_seconds=config.legacy.token_refresh_margin_seconds,
            )
        logger.warning("No legacy credentials configured; calling the legacy platform unauthenticated")
        return StaticTokenProvider()

    def _engine_tokens(self, config: Config) -> TokenProvider:
        engine = config.engine
        if engine.oidc_url and engine.username and engine.password:
            return OidcPasswordTokenProvider(
                self._auth_http, engine.oidc_url, engine.client_id, engine.username, engine.password,
            )
        return StaticTokenProvider()

    def _stream_sources(self, config: Config) -> dict[EntityType, NotificationSource]:
        sources: dict[EntityType, NotificationSource] = {}
        for name in config.feed.entity_types:
            entity_type = EntityType(name)
            # Streams are long-lived: no read timeout
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=config.engine.connect_timeout_seconds),
            )
            sources[entity_type] = HttpStreamSource(
                client=client,
                url=f"{config.engine.url.rstrip('/')}{config.engine.stream_path}",
                entity_types=frozenset({entity_type}),
                tokens=self.engine_tokens,
                last_event_id=self.cursors.get(f"{entity_type.value}-sync"),
                reconnect_base_seconds=config.feed.reconnect_base_seconds,
                reconnect_max_seconds=config.feed.reconnect_max_seconds,
            )
        return sources

    # Lifecycle

    async def start(self) -> None:
        for entity_type, consumer in self.consumers.items():
            self._tasks.append(asyncio.create_task(consumer.run(), name=f"consume-{entity_type.value}"))
        if self.config.cache.enabled:
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="cache-sweep"))
        logger.info(f"Sync bridge started with {len(self.consumers)} consumer(s)")

    async def stop(self) -> None:
        for source in self.sources.values():
            await source.close()
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                logger.error(f"Task {task.get_name()} ended with error: {result}")
        self._tasks.clear()

        for source in self.sources.values():
            client = getattr(source, "client", None)
            if isinstance(client, httpx.AsyncClient):
                await client.aclose()
        await self.legacy.close()
        await self._engine_http.aclose()
        await self._query_http.aclose()
        await self._auth_http.aclose()
        self.db.close()
        logger.info("Sync bridge stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cache.sweep_interval_seconds)
            self.cache.sweep()

    # Hooks

    def _alert(self, record: DeadLetterRecord) -> None:
        logger.error(
            f"ALERT dead letter {record.event_id} [{record.error_class}] "
            f"{record.event.entity_type.value}/{record.event.entity_id}: {record.last_error}"
        )

    def _escalate(self, consumer_id: str, error: Exception) -> None:
        logger.critical(f"Consumer {consumer_id} halted, dead-letter store unavailable: {error}")

    # Routing

    def routing_client(self, legacy_transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
        """A legacy API client whose calls are routed through the bridge."""
        return create_routing_client(
            self.config.legacy.url,
            router=self.router,
            query_client=self.query,
            engine=self.engine,
            cache=self.cache,
            telemetry=self.telemetry,
            write_max_attempts=self.config.engine.write_max_attempts,
            legacy_transport=legacy_transport,
            timeout=self.config.legacy.timeout_seconds,
        )

    def classify(self, method: str, url: str) -> RouteMatch:
        return self.router.classify(method, url)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "dispatcher": self.dispatcher.stats,
            "dead_letters": self.recorder.stats,
            "consumers": {t.value: c.stats for t, c in self.consumers.items()},
            "sources": {t.value: getattr(s, "stats", {}) for t, s in self.sources.items()},
            "cache": self.cache.stats,
            "telemetry": self.telemetry.stats if self.telemetry else {},
        }
