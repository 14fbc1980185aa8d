"""SQLite storage for dead letters and sync cursors."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

# Default database path
DEFAULT_DB_PATH = "syncbridge.db"

SCHEMA_SQL = """
-- Events parked after permanent failure or retry exhaustion
CREATE TABLE IF NOT EXISTS dead_letters (
    event_id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    event_json TEXT NOT NULL,
    last_error TEXT NOT NULL,
    error_class TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    first_failed_at TEXT NOT NULL,
    last_failed_at TEXT NOT NULL,
    replay_count INTEGER NOT NULL DEFAULT 0
);

-- Last acknowledged stream position per consumer
CREATE TABLE IF NOT EXISTS sync_cursors (
    consumer_id TEXT PRIMARY KEY,
    position TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_dead_letters_entity ON dead_letters(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_dead_letters_failed ON dead_letters(last_failed_at);
"""


def init_db(db_path: str | Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA_SQL)
    conn.commit()

    return conn


class DatabaseManager:
    """
    One shared connection for the dead-letter and cursor stores.

    Both stores serialize access through `lock`, so the connection can be
    used from the event loop and from worker threads.
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH):
        self.db_path = str(db_path)
        self.lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Get or create the connection."""
        if self._conn is None:
            self._conn = init_db(self.db_path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> sqlite3.Connection:
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
