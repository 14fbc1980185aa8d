"""Dead-letter recording and operator-driven replay."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from ..events.types import ChangeEvent, EntityType
from .db import DatabaseManager


logger = logging.getLogger(__name__)


class DeadLetterError(Exception):
    """Base exception for dead-letter operations."""
    pass


class DeadLetterWriteError(DeadLetterError):
    """Raised when a dead letter cannot be persisted. Must be escalated."""
    pass


class DeadLetterNotFoundError(DeadLetterError):
    """Raised when no dead letter exists for an event id."""
    pass


@dataclass(frozen=True)
class DeadLetterRecord:
    """A parked change event plus its failure history."""
    event: ChangeEvent
    last_error: str
    error_class: str
    attempts: int
    first_failed_at: datetime
    last_failed_at: datetime
    replay_count: int = 0

    @property
    def event_id(self) -> str:
        return self.event.event_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "event_id": self.event_id,
            "entity_type": self.event.entity_type.value,
            "entity_id": self.event.entity_id,
            "operation": self.event.operation.value,
            "event": self.event.to_dict(),
            "last_error": self.last_error,
            "error_class": self.error_class,
            "attempts": self.attempts,
            "first_failed_at": self.first_failed_at.isoformat(),
            "last_failed_at": self.last_failed_at.isoformat(),
            "replay_count": self.replay_count,
        }


class DeadLetterStore(Protocol):
    def upsert(self, record: DeadLetterRecord) -> None: ...

    def get(self, event_id: str) -> DeadLetterRecord | None: ...

    def list(self, entity_type: EntityType | None = None, limit: int | None = None) -> list[DeadLetterRecord]: ...

    def delete(self, event_id: str) -> bool: ...


@dataclass
class InMemoryDeadLetterStore:
    """Dict-backed store for tests and ephemeral runs."""
    _records: dict[str, DeadLetterRecord] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def upsert(self, record: DeadLetterRecord) -> None:
        with self._lock:
            self._records[record.event_id] = record

    def get(self, event_id: str) -> DeadLetterRecord | None:
        return self._records.get(event_id)

    def list(self, entity_type: EntityType | None = None, limit: int | None = None) -> list[DeadLetterRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.last_failed_at)
        if entity_type is not None:
            records = [r for r in records if r.event.entity_type == entity_type]
        return records[:limit] if limit is not None else records

    def delete(self, event_id: str) -> bool:
        with self._lock:
            return self._records.pop(event_id, None) is not None


class SqliteDeadLetterStore:
    """Dead letters in the bridge's SQLite database, keyed by event id."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    def upsert(self, record: DeadLetterRecord) -> None:
        with self._db.lock:
            conn = self._db.connect()
            conn.execute(
                """
                INSERT INTO dead_letters (
                    event_id, entity_type, entity_id, operation, event_json,
                    last_error, error_class, attempts, first_failed_at, last_failed_at, replay_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_id) DO UPDATE SET
                    last_error = excluded.last_error,
                    error_class = excluded.error_class,
                    attempts = excluded.attempts,
                    last_failed_at = excluded.last_failed_at,
                    replay_count = excluded.replay_count
                """,
                (
                    record.event_id,
                    record.event.entity_type.value,
                    record.event.entity_id,
                    record.event.operation.value,
                    json.dumps(record.event.to_dict(), default=str),
                    record.last_error,
                    record.error_class,
                    record.attempts,
                    record.first_failed_at.isoformat(),
                    record.last_failed_at.isoformat(),
                    record.replay_count,
                ),
            )
            conn.commit()

    def get(self, event_id: str) -> DeadLetterRecord | None:
        with self._db.lock:
            row = self._db.connect().execute(
                "SELECT * FROM dead_letters WHERE event_id = ?", (event_id,)
            ).fetchone()
        return self._from_row(row) if row else None

    def list(self, entity_type: EntityType | None = None, limit: int | None = None) -> list[DeadLetterRecord]:
        sql = "SELECT * FROM dead_letters"
        params: list[Any] = []
        if entity_type is not None:
            sql += " WHERE entity_type = ?"
            params.append(entity_type.value)
        sql += " ORDER BY last_failed_at"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._db.lock:
            rows = self._db.connect().execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def delete(self, event_id: str) -> bool:
        with self._db.lock:
            conn = self._db.connect()
            cursor = conn.execute("DELETE FROM dead_letters WHERE event_id = ?", (event_id,))
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _from_row(row: sqlite3.Row) -> DeadLetterRecord:
        return DeadLetterRecord(
            event=ChangeEvent.from_dict(json.loads(row["event_json"])),
            last_error=row["last_error"],
            error_class=row["error_class"],
            attempts=row["attempts"],
            first_failed_at=datetime.fromisoformat(row["first_failed_at"]),
            last_failed_at=datetime.fromisoformat(row["last_failed_at"]),
            replay_count=row["replay_count"],
        )


ReplayHandler = Callable[[ChangeEvent], Awaitable[Any]]


class DeadLetterRecorder:
    """
    Records failed events and drives operator replay.

    Exactly one record exists per event id: recording an event that is
    already parked updates its failure metadata in place. Store failures
    surface as DeadLetterWriteError and are never swallowed.
    """

    def __init__(
        self,
        store: DeadLetterStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._clock = clock
        self._replay_handler: ReplayHandler | None = None

    def bind_replay(self, handler: ReplayHandler) -> None:
        """Set the coroutine that re-injects an event at Received (the dispatcher)."""
        self._replay_handler = handler

    def record(
        self,
        event: ChangeEvent,
        reason: str,
        error_class: str = "unknown",
        attempts: int = 0,
    ) -> DeadLetterRecord:
        now = self._clock()
        reason = reason.strip() if reason else ""
        if not reason:
            reason = f"{error_class} failure"

        try:
            existing = self._store.get(event.event_id)
            if existing is not None:
                record = replace(
                    existing,
                    last_error=reason,
                    error_class=error_class,
                    attempts=existing.attempts + attempts,
                    last_failed_at=now,
                )
            else:
                record = DeadLetterRecord(
                    event=event,
                    last_error=reason,
                    error_class=error_class,
                    attempts=attempts,
                    first_failed_at=now,
                    last_failed_at=now,
                )
            self._store.upsert(record)
        except Exception as e:
            logger.critical(f"Failed to record dead letter for event {event.event_id}: {e}")
            raise DeadLetterWriteError(f"Could not record dead letter {event.event_id}: {e}") from e

        logger.error(
            f"Dead-lettered event {event.event_id} ({event.entity_type.value}/{event.entity_id} "
            f"{event.operation.value}) after {attempts} attempt(s): [{error_class}] {reason}"
        )
        return record

    def list(self, entity_type: EntityType | None = None, limit: int | None = None) -> list[DeadLetterRecord]:
        return self._store.list(entity_type=entity_type, limit=limit)

    def get(self, event_id: str) -> DeadLetterRecord:
        record = self._store.get(event_id)
        if record is None:
            raise DeadLetterNotFoundError(f"No dead letter for event {event_id}")
        return record

    def purge(self, event_id: str) -> None:
        if not self._store.delete(event_id):
            raise DeadLetterNotFoundError(f"No dead letter for event {event_id}")
        logger.info(f"Purged dead letter {event_id}")

    def resolve(self, event_id: str) -> bool:
        """Drop the record after a successful replay. Returns False if absent."""
        return self._store.delete(event_id)

    async def replay(self, event_id: str) -> Any:
        """
        Re-inject a parked event at Received.

        The record is removed when the replay is acknowledged and updated
        with the new failure otherwise.
        """
        if self._replay_handler is None:
            raise DeadLetterError("No replay handler bound")
        record = self.get(event_id)
        self._store.upsert(replace(record, replay_count=record.replay_count + 1))
        logger.info(f"Replaying dead letter {event_id} (replay #{record.replay_count + 1})")
        return await self._replay_handler(record.event.with_delivery_attempt(1))

    @property
    def stats(self) -> dict:
        records = self._store.list()
        by_type: dict[str, int] = {}
        for r in records:
            by_type[r.event.entity_type.value] = by_type.get(r.event.entity_type.value, 0) + 1
        return {"pending": len(records), "by_entity_type": by_type}
