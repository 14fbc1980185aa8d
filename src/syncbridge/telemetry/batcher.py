"""Batching worker between the emitter and a sink."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .events import TelemetryEvent


logger = logging.getLogger(__name__)


@dataclass
class TelemetryBatcher:
    """
    Collects telemetry events and flushes them to a sink when the batch is
    full or the flush interval elapses, whichever comes first. A failed flush
    drops the batch and is counted; telemetry never backs up into the bridge.
    """
    batch_size: int = 500
    flush_interval_seconds: float = 1.0

    sink: Callable[[list[TelemetryEvent]], Awaitable[None]] | None = None

    _buffer: list[TelemetryEvent] = field(default_factory=list, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _last_flush: float = field(default_factory=time.monotonic, init=False)
    _stats: dict = field(default_factory=dict, init=False)
    _running: bool = field(default=False, init=False)

    def __post_init__(self):
        self._stats = {
            "batches_sent": 0,
            "events_sent": 0,
            "flush_errors": 0,
        }

    async def add(self, event: TelemetryEvent) -> None:
        async with self._lock:
            self._buffer.append(event)
            if len(self._buffer) >= self.batch_size:
                await self._flush_locked()

    async def flush(self) -> None:
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self) -> None:
        if not self._buffer:
            return

        batch, self._buffer = self._buffer, []
        self._last_flush = time.monotonic()

        if self.sink is None:
            logger.warning(f"No telemetry sink configured, discarding {len(batch)} events")
            return

        try:
            await self.sink(batch)
        except Exception as e:
            logger.error(f"Failed to flush telemetry batch of {len(batch)}: {e}")
            self._stats["flush_errors"] += 1
            return
        self._stats["batches_sent"] += 1
        self._stats["events_sent"] += len(batch)

    async def timer_loop(self) -> None:
        """Background loop that flushes stale batches during quiet periods."""
        self._running = True
        logger.info(f"Telemetry batcher timer started (interval={self.flush_interval_seconds}s)")

        while self._running:
            try:
                await asyncio.sleep(self.flush_interval_seconds)
                async with self._lock:
                    if self._buffer and time.monotonic() - self._last_flush >= self.flush_interval_seconds:
                        await self._flush_locked()
            except asyncio.CancelledError:
                logger.info("Telemetry batcher timer cancelled")
                break

        await self.flush()

    async def stop(self) -> None:
        self._running = False
        await self.flush()
        logger.info(f"Telemetry batcher stopped. Stats: {self._stats}")

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "buffer_size": len(self._buffer),
        }


def create_batched_consumer(batcher: TelemetryBatcher) -> Callable[[TelemetryEvent], Awaitable[None]]:
    """Adapt a batcher into an emitter consumer."""
    async def consumer(event: TelemetryEvent) -> None:
        await batcher.add(event)

    return consumer
