"""Consumer loop: one per entity-type subscription."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from ..feed.base import NotificationSource
from .cursor import CursorStore
from .deadletter import DeadLetterWriteError
from .dispatcher import SyncDispatcher


logger = logging.getLogger(__name__)


class SyncConsumer:
    """
    Pulls events from a source and drives each through the dispatcher, in
    delivery order. An event is acknowledged and the cursor advanced only
    after the dispatcher reports it durably handled (acknowledged or
    dead-lettered).

    Cancellation leaves the in-flight event unacknowledged so the source
    redelivers it. A DeadLetterWriteError nacks the event, raises the
    escalation hook and stops the loop with the error.
    """

    def __init__(
        self,
        consumer_id: str,
        source: NotificationSource,
        dispatcher: SyncDispatcher,
        cursors: CursorStore,
        escalate: Callable[[str, Exception], Any] | None = None,
    ):
        self.consumer_id = consumer_id
        self.source = source
        self.dispatcher = dispatcher
        self.cursors = cursors
        self._escalate = escalate
        self._stats = {
            "processed": 0,
            "acknowledged": 0,
            "dead_lettered": 0,
        }
        self.running = False
        self.failure: Exception | None = None

    async def run(self, max_events: int | None = None) -> None:
        """Consume until the source ends, `max_events` are handled, or cancelled."""
        self.running = True
        logger.info(f"Consumer {self.consumer_id} started (cursor={self.cursors.get(self.consumer_id)})")
        try:
            async for event in self.source.events():
                try:
                    result = await self.dispatcher.dispatch(event)
                except DeadLetterWriteError as e:
                    self.failure = e
                    await self.source.nack(event)
                    logger.critical(f"Consumer {self.consumer_id} stopping: {e}")
                    if self._escalate is not None:
                        self._escalate(self.consumer_id, e)
                    raise

                await self.source.ack(event)
                if event.position:
                    self.cursors.advance(self.consumer_id, event.position)

                self._stats["processed"] += 1
                if result.dead_lettered:
                    self._stats["dead_lettered"] += 1
                else:
                    self._stats["acknowledged"] += 1

                if max_events is not None and self._stats["processed"] >= max_events:
                    break
        except asyncio.CancelledError:
            logger.info(f"Consumer {self.consumer_id} cancelled; in-flight event will be redelivered")
            raise
        finally:
            self.running = False

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "running": self.running,
            "cursor": self.cursors.get(self.consumer_id),
            "failure": str(self.failure) if self.failure else None,
        }
