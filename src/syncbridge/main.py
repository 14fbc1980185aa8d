"""FastAPI application - Sync Bridge operator API.

The bridge runs its sync consumers in the background; this API exposes
health, statistics, dead-letter inspection/replay/purge, cursors, full
resync, and a routing classifier for checking the rule table.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import TokenError
from .config import Config, load_config
from .events.types import EntityType
from .legacy.client import LegacyError
from .query.client import QueryServiceError
from .service import SyncBridgeService
from .sync.deadletter import DeadLetterError, DeadLetterNotFoundError, DeadLetterWriteError
from .sync.resync import ResyncRefusedError
from .telemetry.batcher import TelemetryBatcher, create_batched_consumer
from .telemetry.emitter import TelemetryEmitter
from .telemetry.sinks.console import ConsoleSink
from .telemetry.sinks.base import TelemetrySink
from .telemetry.sinks.file import FileSink


logger = logging.getLogger(__name__)


# Response models
class HealthResponse(BaseModel):
    status: str
    consumers: dict[str, Any]
    dead_letters: dict[str, Any]
    telemetry: dict[str, Any]


class DeadLetterResponse(BaseModel):
    event_id: str
    entity_type: str
    entity_id: str
    operation: str
    last_error: str
    error_class: str
    attempts: int
    first_failed_at: str
    last_failed_at: str
    replay_count: int
    event: dict[str, Any]


class DeadLetterListResponse(BaseModel):
    count: int
    dead_letters: list[DeadLetterResponse]


class ReplayResponse(BaseModel):
    event_id: str
    state: str
    attempts: int
    error: str | None = None
    resolved: bool


class ClassifyResponse(BaseModel):
    method: str
    path: str
    classification: str
    operation: str | None = None
    entity: str | None = None
    path_params: dict[str, str] = {}
    query_params: dict[str, str] = {}


# Global service instance (initialized in lifespan)
_service: SyncBridgeService | None = None
_telemetry_task: asyncio.Task | None = None
_batcher_task: asyncio.Task | None = None


async def create_telemetry(config: Config) -> tuple[TelemetryEmitter, TelemetryBatcher, TelemetrySink]:
    """Create telemetry emitter, batcher and the started sink behind them."""
    emitter = TelemetryEmitter(
        max_queue_size=config.telemetry.max_queue_size,
    )

    sink_type = config.telemetry.sink_type
    sink_config = config.telemetry.sink_config

    if sink_type == "file":
        sink = FileSink(**sink_config)
    elif sink_type == "console":
        sink = ConsoleSink(**sink_config)
    else:
        logger.warning(f"Unknown telemetry sink {sink_type!r}; using console")
        sink = ConsoleSink()
    await sink.start()

    batcher = TelemetryBatcher(
        batch_size=config.telemetry.batch_size,
        flush_interval_seconds=config.telemetry.flush_interval_seconds,
        sink=sink.send,
    )
    emitter.add_consumer(create_batched_consumer(batcher))

    return emitter, batcher, sink


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    global _service, _telemetry_task, _batcher_task

    logger.info("Starting sync bridge...")

    config = load_config()

    emitter: TelemetryEmitter | None = None
    batcher: TelemetryBatcher | None = None
    sink: TelemetrySink | None = None
    if config.telemetry.enabled:
        emitter, batcher, sink = await create_telemetry(config)
        await emitter.start()
        _telemetry_task = asyncio.create_task(emitter.process_loop())
        _batcher_task = asyncio.create_task(batcher.timer_loop())

    _service = SyncBridgeService(config, telemetry=emitter)
    await _service.start()

    logger.info(f"Sync bridge started (legacy={config.legacy.url}, engine={config.engine.url})")

    yield

    logger.info("Shutting down sync bridge...")

    await _service.stop()

    for task in (_telemetry_task, _batcher_task):
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    if emitter:
        await emitter.stop()
    if batcher:
        await batcher.stop()
    if sink:
        await sink.stop()

    _service = None
    logger.info("Sync bridge stopped")


app = FastAPI(
    title="Sync Bridge",
    description="Propagates source-engine changes to the legacy platform and routes legacy API calls to the authority.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(DeadLetterNotFoundError)
async def dead_letter_not_found_handler(request: Request, exc: DeadLetterNotFoundError):
    return JSONResponse(
        status_code=404,
        content={"error": "Not found", "detail": str(exc)},
    )


@app.exception_handler(DeadLetterWriteError)
async def dead_letter_write_handler(request: Request, exc: DeadLetterWriteError):
    return JSONResponse(
        status_code=503,
        content={"error": "Dead-letter store unavailable", "detail": str(exc)},
    )


@app.exception_handler(DeadLetterError)
async def dead_letter_error_handler(request: Request, exc: DeadLetterError):
    return JSONResponse(
        status_code=500,
        content={"error": "Dead-letter error", "detail": str(exc)},
    )


@app.exception_handler(ResyncRefusedError)
async def resync_refused_handler(request: Request, exc: ResyncRefusedError):
    return JSONResponse(
        status_code=409,
        content={"error": "Resync refused", "detail": str(exc)},
    )


@app.exception_handler(QueryServiceError)
async def query_service_error_handler(request: Request, exc: QueryServiceError):
    return JSONResponse(
        status_code=502,
        content={"error": "Query service error", "detail": str(exc)},
    )


@app.exception_handler(LegacyError)
async def legacy_error_handler(request: Request, exc: LegacyError):
    return JSONResponse(
        status_code=502,
        content={"error": "Legacy platform error", "detail": str(exc)},
    )


@app.exception_handler(TokenError)
async def token_error_handler(request: Request, exc: TokenError):
    return JSONResponse(
        status_code=502,
        content={"error": "Authentication failed", "detail": str(exc)},
    )


def _require_service() -> SyncBridgeService:
    if not _service:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _service


def _entity_type(value: str | None) -> EntityType | None:
    if value is None:
        return None
    try:
        return EntityType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown entity type {value!r}")


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check. Degraded when any consumer has stopped on a failure."""
    service = _require_service()
    consumers = {t.value: c.stats for t, c in service.consumers.items()}
    failed = any(c.failure is not None for c in service.consumers.values())
    return HealthResponse(
        status="degraded" if failed else "healthy",
        consumers=consumers,
        dead_letters=service.recorder.stats,
        telemetry=service.telemetry.stats if service.telemetry else {},
    )


@app.get("/stats")
async def stats():
    return _require_service().stats


@app.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letters(
    entity_type: str | None = Query(None, description="Filter by entity type"),
    limit: int | None = Query(None, ge=1, le=1000),
):
    records = _require_service().recorder.list(entity_type=_entity_type(entity_type), limit=limit)
    return DeadLetterListResponse(
        count=len(records),
        dead_letters=[DeadLetterResponse(**r.to_dict()) for r in records],
    )


@app.get("/dead-letters/{event_id}", response_model=DeadLetterResponse)
async def get_dead_letter(event_id: str):
    return DeadLetterResponse(**_require_service().recorder.get(event_id).to_dict())


@app.delete("/dead-letters/{event_id}")
async def purge_dead_letter(event_id: str):
    _require_service().recorder.purge(event_id)
    return {"event_id": event_id, "status": "purged"}


@app.post("/dead-letters/{event_id}/replay", response_model=ReplayResponse)
async def replay_dead_letter(event_id: str):
    result = await _require_service().recorder.replay(event_id)
    return ReplayResponse(
        event_id=event_id,
        state=result.state.value,
        attempts=result.attempts,
        error=result.error,
        resolved=result.acknowledged,
    )


@app.get("/cursors")
async def cursors():
    return {"cursors": _require_service().cursors.all()}


@app.post("/resync/{entity_type}")
async def resync(
    entity_type: str,
    allow_empty: bool = Query(False, description="Delete every legacy entity if the read model has none"),
):
    service = _require_service()
    return await service.resync.reconcile(_entity_type(entity_type), allow_empty=allow_empty)


@app.get("/routing/rules")
async def routing_rules():
    table = _require_service().router.table
    return {
        "rules": [
            {
                "methods": sorted(rule.methods),
                "pattern": rule.pattern,
                "classification": rule.classification.value,
                "operation": rule.target_operation or None,
                "entity": rule.entity_kind or None,
            }
            for rule in table
        ]
    }


@app.get("/routing/classify", response_model=ClassifyResponse)
async def classify(
    method: str = Query(..., description="HTTP method"),
    url: str = Query(..., description="Request URL or path"),
):
    match = _require_service().classify(method, url)
    return ClassifyResponse(
        method=match.method,
        path=match.path,
        classification=match.classification.value,
        operation=match.target_operation,
        entity=match.entity_kind,
        path_params=match.path_params,
        query_params=match.query_params,
    )


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Sync Bridge",
        "version": "0.1.0",
        "endpoints": {
            "/health": "Health check",
            "/stats": "Dispatcher, consumer, cache and telemetry statistics",
            "/dead-letters": "List dead-lettered events",
            "/dead-letters/{event_id}": "GET record, DELETE to purge",
            "/dead-letters/{event_id}/replay": "POST - re-inject the event",
            "/cursors": "Per-consumer stream positions",
            "/resync/{entity_type}": "POST - reconcile legacy with the authority",
            "/routing/rules": "The active routing table",
            "/routing/classify": "Classify a method and URL",
        },
    }


def run():
    """Run the service with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    uvicorn.run(
        "syncbridge.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )


if __name__ == "__main__":
    run()
