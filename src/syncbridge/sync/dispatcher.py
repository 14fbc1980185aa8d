"""Sync dispatcher - per-event state machine.

    Received -> Mapping -> Applying -> Acknowledged
                   |          |
                   |          +-> Retrying -> Applying ...
                   |          |       |
                   +----------+-------+-> DeadLettered

Conflict from the legacy platform counts as success. Mapping errors and
permanent legacy errors dead-letter immediately; transient errors retry with
full-jitter backoff until the attempt or elapsed-time budget runs out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from ..events.types import ChangeEvent
from ..legacy.client import ConflictLegacyError, PermanentLegacyError, TransientLegacyError
from ..mapping.registry import map_to_legacy
from ..mapping.types import LegacyOperation, MappingError
from ..telemetry.emitter import TelemetryEmitter
from ..telemetry.events import Channel, Outcome, TelemetryEvent
from .deadletter import DeadLetterRecord, DeadLetterRecorder
from .retry import RetryPolicy


logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    RECEIVED = "Received"
    MAPPING = "Mapping"
    APPLYING = "Applying"
    RETRYING = "Retrying"
    ACKNOWLEDGED = "Acknowledged"
    DEAD_LETTERED = "DeadLettered"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PERMANENT = "permanent"
    MAPPING = "mapping"
    EXHAUSTED = "exhausted"
    UNEXPECTED = "unexpected"


class LegacyApplier(Protocol):
    async def apply(self, operation: LegacyOperation) -> Any: ...


AlertHook = Callable[[DeadLetterRecord], Any]


@dataclass
class DispatchResult:
    """Outcome of dispatching one event."""
    event: ChangeEvent
    state: DispatchState
    attempts: int = 0
    history: list[DispatchState] = field(default_factory=list)
    error: str | None = None
    error_class: ErrorClass | None = None
    conflict: bool = False
    elapsed_seconds: float = 0.0
    dead_letter: DeadLetterRecord | None = None

    @property
    def acknowledged(self) -> bool:
        return self.state == DispatchState.ACKNOWLEDGED

    @property
    def dead_lettered(self) -> bool:
        return self.state == DispatchState.DEAD_LETTERED

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event.event_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "history": [s.value for s in self.history],
            "error": self.error,
            "error_class": self.error_class.value if self.error_class else None,
            "conflict": self.conflict,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class SyncDispatcher:
    """
    Drives one change event to a terminal state.

    Both terminal states mean "durably handled": the caller acknowledges the
    event and advances its cursor either way. The only error that escapes
    `dispatch()` is DeadLetterWriteError (the failure could not be parked),
    plus cancellation.
    """

    def __init__(
        self,
        legacy: LegacyApplier,
        recorder: DeadLetterRecorder,
        policy: RetryPolicy | None = None,
        mapper: Callable[[ChangeEvent], LegacyOperation] = map_to_legacy,
        telemetry: TelemetryEmitter | None = None,
        alert: AlertHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.legacy = legacy
        self.recorder = recorder
        self.policy = policy or RetryPolicy()
        self._mapper = mapper
        self._telemetry = telemetry
        self._alert = alert
        self._sleep = sleep
        self._clock = clock
        self._stats = {
            "dispatched": 0,
            "acknowledged": 0,
            "conflicts": 0,
            "retries": 0,
            "dead_lettered": 0,
        }
        recorder.bind_replay(self.replay)

    async def dispatch(self, event: ChangeEvent) -> DispatchResult:
        started = self._clock()
        result = DispatchResult(event=event, state=DispatchState.RECEIVED, history=[DispatchState.RECEIVED])
        self._stats["dispatched"] += 1

        self._enter(result, DispatchState.MAPPING)
        try:
            operation = self._mapper(event)
        except MappingError as e:
            return self._dead_letter(result, ErrorClass.MAPPING, str(e), started)
        except Exception as e:
            logger.exception(f"Unexpected error mapping event {event.event_id}")
            return self._dead_letter(result, ErrorClass.UNEXPECTED, f"{type(e).__name__}: {e}", started)

        while True:
            result.attempts += 1
            self._enter(result, DispatchState.APPLYING)
            try:
                await self.legacy.apply(operation)
            except ConflictLegacyError as e:
                logger.debug(f"Event {event.event_id}: legacy already in desired state ({e})")
                result.conflict = True
                return self._acknowledge(result, started)
            except PermanentLegacyError as e:
                return self._dead_letter(result, ErrorClass.PERMANENT, str(e), started)
            except TransientLegacyError as e:
                if not self.policy.should_retry(result.attempts):
                    return self._dead_letter(
                        result, ErrorClass.EXHAUSTED,
                        f"retries exhausted after {result.attempts} attempts: {e}", started,
                    )
                delay = self.policy.delay(result.attempts)
                if not self.policy.within_budget(self._clock() - started, delay):
                    return self._dead_letter(
                        result, ErrorClass.EXHAUSTED,
                        f"retry time budget of {self.policy.max_elapsed_seconds}s exhausted: {e}", started,
                    )
                self._stats["retries"] += 1
                self._enter(result, DispatchState.RETRYING)
                logger.warning(
                    f"Event {event.event_id} attempt {result.attempts} failed transiently, "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)
            except Exception as e:
                logger.exception(f"Unexpected error applying event {event.event_id}")
                return self._dead_letter(result, ErrorClass.UNEXPECTED, f"{type(e).__name__}: {e}", started)
            else:
                return self._acknowledge(result, started)

    async def replay(self, event: ChangeEvent) -> DispatchResult:
        """Re-dispatch a dead-lettered event; the record is dropped on success."""
        result = await self.dispatch(event)
        if result.acknowledged:
            self.recorder.resolve(event.event_id)
            self._emit(result, Outcome.REPLAYED)
            logger.info(f"Replay of {event.event_id} acknowledged after {result.attempts} attempt(s)")
        return result

    def _enter(self, result: DispatchResult, state: DispatchState) -> None:
        result.state = state
        result.history.append(state)

    def _acknowledge(self, result: DispatchResult, started: float) -> DispatchResult:
        self._enter(result, DispatchState.ACKNOWLEDGED)
        result.elapsed_seconds = self._clock() - started
        self._stats["acknowledged"] += 1
        if result.conflict:
            self._stats["conflicts"] += 1
        event = result.event
        logger.info(
            f"Acknowledged {event.event_id} ({event.entity_type.value}/{event.entity_id} "
            f"{event.operation.value}) after {result.attempts} attempt(s)"
            + (" [already in state]" if result.conflict else "")
        )
        self._emit(result, Outcome.ACKNOWLEDGED)
        return result

    def _dead_letter(
        self,
        result: DispatchResult,
        error_class: ErrorClass,
        reason: str,
        started: float,
    ) -> DispatchResult:
        # DeadLetterWriteError propagates to the consumer
        record = self.recorder.record(result.event, reason, error_class.value, result.attempts)
        self._enter(result, DispatchState.DEAD_LETTERED)
        result.error = record.last_error
        result.error_class = error_class
        result.dead_letter = record
        result.elapsed_seconds = self._clock() - started
        self._stats["dead_lettered"] += 1
        self._emit(result, Outcome.DEAD_LETTERED)
        self._raise_alert(record)
        return result

    def _raise_alert(self, record: DeadLetterRecord) -> None:
        if self._alert is None:
            return
        try:
            self._alert(record)
        except Exception as e:
            logger.error(f"Alert hook failed for dead letter {record.event_id}: {e}")

    def _emit(self, result: DispatchResult, outcome: Outcome) -> None:
        if self._telemetry is None:
            return
        event = result.event
        self._telemetry.emit(TelemetryEvent.create(
            channel=Channel.SYNC,
            outcome=outcome,
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            operation=event.operation.value,
            event_id=event.event_id,
            attempts=result.attempts,
            latency_ms=result.elapsed_seconds * 1000,
            error_class=result.error_class.value if result.error_class else None,
            error_message=result.error,
        ))

    @property
    def stats(self) -> dict:
        return dict(self._stats)
