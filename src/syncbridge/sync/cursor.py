"""Per-consumer sync cursors."""

from __future__ import annotations

import threading
from typing import Protocol

from .db import DatabaseManager


class CursorStore(Protocol):
    def get(self, consumer_id: str) -> str | None: ...

    def advance(self, consumer_id: str, position: str) -> None: ...

    def all(self) -> dict[str, str]: ...


class InMemoryCursorStore:
    def __init__(self):
        self._positions: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, consumer_id: str) -> str | None:
        return self._positions.get(consumer_id)

    def advance(self, consumer_id: str, position: str) -> None:
        with self._lock:
            self._positions[consumer_id] = position

    def all(self) -> dict[str, str]:
        with self._lock:
            return dict(self._positions)


class SqliteCursorStore:
    """Cursors persisted next to the dead letters."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    def get(self, consumer_id: str) -> str | None:
        with self._db.lock:
            row = self._db.connect().execute(
                "SELECT position FROM sync_cursors WHERE consumer_id = ?", (consumer_id,)
            ).fetchone()
        return row["position"] if row else None

    def advance(self, consumer_id: str, position: str) -> None:
        with self._db.lock:
            conn = self._db.connect()
            conn.execute(
                """
                INSERT INTO sync_cursors (consumer_id, position, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(consumer_id) DO UPDATE SET
                    position = excluded.position,
                    updated_at = excluded.updated_at
                """,
                (consumer_id, position),
            )
            conn.commit()

    def all(self) -> dict[str, str]:
        with self._db.lock:
            rows = self._db.connect().execute(
                "SELECT consumer_id, position FROM sync_cursors ORDER BY consumer_id"
            ).fetchall()
        return {row["consumer_id"]: row["position"] for row in rows}
