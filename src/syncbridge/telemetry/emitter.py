"""Non-blocking telemetry emitter."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from .events import TelemetryEvent


logger = logging.getLogger(__name__)


@dataclass
class TelemetryEmitter:
    """
    Queues telemetry events off the hot path.

    The sync dispatcher and the routing transport call `emit()`, which never
    blocks: when the queue is full the event is dropped and counted. A
    background `process_loop()` hands events to the registered consumers.
    """
    max_queue_size: int = 10000

    _queue: asyncio.Queue | None = field(default=None, init=False)
    _consumers: list[Callable[[TelemetryEvent], None]] = field(default_factory=list, init=False)
    _stats: dict = field(default_factory=dict, init=False)
    _by_outcome: dict[str, int] = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._stats = {
            "emitted": 0,
            "dropped": 0,
            "errors": 0,
        }

    async def start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        logger.info(f"Telemetry emitter started (max_queue={self.max_queue_size})")

    async def stop(self) -> None:
        """Deliver whatever is still queued, then stop."""
        if self._queue:
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._deliver(event)
        logger.info(f"Telemetry emitter stopped. Stats: {self.stats}")

    def add_consumer(self, consumer: Callable[[TelemetryEvent], None]) -> None:
        self._consumers.append(consumer)

    def emit(self, event: TelemetryEvent) -> bool:
        """Queue an event. Returns False if it was dropped."""
        key = f"{event.channel.value}.{event.outcome.value}"
        self._by_outcome[key] = self._by_outcome.get(key, 0) + 1

        if self._queue is None:
            self._stats["dropped"] += 1
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            return False
        self._stats["emitted"] += 1
        return True

    async def process_loop(self) -> None:
        """Background task: drain the queue into consumers until cancelled."""
        if self._queue is None:
            raise RuntimeError("Emitter not started")

        logger.info("Telemetry processing loop started")
        while True:
            try:
                event = await self._queue.get()
                await self._deliver(event)
                self._queue.task_done()
            except asyncio.CancelledError:
                logger.info("Telemetry processing loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error processing telemetry event: {e}")
                self._stats["errors"] += 1

    async def _deliver(self, event: TelemetryEvent) -> None:
        for consumer in self._consumers:
            try:
                if asyncio.iscoroutinefunction(consumer):
                    await consumer(event)
                else:
                    consumer(event)
            except Exception as e:
                logger.error(f"Telemetry consumer error: {e}")
                self._stats["errors"] += 1

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "queue_depth": self.queue_depth,
            "consumers": len(self._consumers),
            "outcomes": dict(self._by_outcome),
        }
