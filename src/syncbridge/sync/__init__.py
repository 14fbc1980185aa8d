"""Change propagation - dispatch, retry, dead letters and cursors."""

from .retry import RetryPolicy
from .db import DatabaseManager, init_db
from .deadletter import (
    DeadLetterError,
    DeadLetterNotFoundError,
    DeadLetterRecord,
    DeadLetterRecorder,
    DeadLetterWriteError,
    InMemoryDeadLetterStore,
    SqliteDeadLetterStore,
)
from .cursor import InMemoryCursorStore, SqliteCursorStore
from .dispatcher import DispatchResult, DispatchState, ErrorClass, SyncDispatcher
from .consumer import SyncConsumer
from .resync import FullResync

__all__ = [
    "RetryPolicy",
    "DatabaseManager",
    "init_db",
    "DeadLetterError",
    "DeadLetterNotFoundError",
    "DeadLetterRecord",
    "DeadLetterRecorder",
    "DeadLetterWriteError",
    "InMemoryDeadLetterStore",
    "SqliteDeadLetterStore",
    "InMemoryCursorStore",
    "SqliteCursorStore",
    "DispatchResult",
    "DispatchState",
    "ErrorClass",
    "SyncDispatcher",
    "SyncConsumer",
    "FullResync",
]
