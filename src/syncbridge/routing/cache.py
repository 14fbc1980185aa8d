"""Short-lived read-your-writes cache for routed writes."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """
    The bridge's own view of an entity right after a write.

    A tombstone records a delete: reads of the entity must not see it even if
    the read model has not caught up.
    """
    kind: str
    entity_id: str
    payload: dict[str, Any] | None
    written_at: float
    ttl_seconds: float
    tombstone: bool = False
    # Written by a create, so absent from read-model pages fetched before it
    created: bool = False
    # Caller identity of the write; only that caller is served the entry
    writer: str | None = None

    def is_expired(self, now: float) -> bool:
        return now > self.written_at + self.ttl_seconds


@dataclass
class ListEntry:
    page: dict[str, Any]
    written_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now > self.written_at + self.ttl_seconds


@dataclass
class ReadYourWritesCache:
    """
    Thread-safe cache keyed by (entity kind, entity id), plus a per-kind list
    cache keyed by (kind, operation, query string).

    Entries stay valid for `ttl_seconds` after the write, by which time the
    read model is expected to reflect it. Expiry is checked on read; `sweep()`
    reclaims memory. Any write of a kind invalidates every cached list of
    that kind.

    Each entry remembers its writer, and `get` and `fresh_entries` only
    return entries written by the asking caller. List keys are expected to
    carry the caller identity too.
    """
    ttl_seconds: float = 30.0
    max_size: int = 10000
    clock: Callable[[], float] = time.monotonic

    _entries: OrderedDict = field(default_factory=OrderedDict, init=False)
    _lists: dict[tuple[str, str], ListEntry] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)

    def put(
        self,
        kind: str,
        entity_id: str,
        payload: dict[str, Any],
        created: bool = False,
        writer: str | None = None,
    ) -> None:
        self._store(CacheEntry(kind, entity_id, payload, self.clock(), self.ttl_seconds, created=created, writer=writer))

    def tombstone(self, kind: str, entity_id: str, writer: str | None = None) -> None:
        self._store(CacheEntry(kind, entity_id, None, self.clock(), self.ttl_seconds, tombstone=True, writer=writer))

    def invalidate(self, kind: str, entity_id: str) -> None:
        """Forget an entity without asserting anything about its state."""
        with self._lock:
            self._entries.pop((kind, entity_id), None)
            self._drop_lists(kind)

    def _store(self, entry: CacheEntry) -> None:
        key = (entry.kind, entry.entity_id)
        with self._lock:
            previous = self._entries.get(key)
            if previous is not None and previous.created and not entry.tombstone and not previous.is_expired(entry.written_at):
                entry = replace(entry, created=True)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            self._drop_lists(entry.kind)

    def get(self, kind: str, entity_id: str, writer: str | None = None) -> CacheEntry | None:
        """The live entry `writer` made for the entity (payload or tombstone), or None."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get((kind, entity_id))
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[(kind, entity_id)]
                self._misses += 1
                return None
            if entry.writer != writer:
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def fresh_entries(self, kind: str, writer: str | None = None) -> list[CacheEntry]:
        """Live entries of one kind made by `writer`, oldest write first."""
        now = self.clock()
        with self._lock:
            return [
                e for (k, _), e in self._entries.items()
                if k == kind and e.writer == writer and not e.is_expired(now)
            ]

    def put_list(self, kind: str, list_key: str, page: dict[str, Any]) -> None:
        with self._lock:
            self._lists[(kind, list_key)] = ListEntry(page, self.clock(), self.ttl_seconds)

    def get_list(self, kind: str, list_key: str) -> dict[str, Any] | None:
        now = self.clock()
        with self._lock:
            entry = self._lists.get((kind, list_key))
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._lists[(kind, list_key)]
                self._misses += 1
                return None
            self._hits += 1
            return entry.page

    def invalidate_lists(self, kind: str) -> None:
        with self._lock:
            self._drop_lists(kind)

    def _drop_lists(self, kind: str) -> None:
        """Caller holds the lock."""
        for key in [k for k in self._lists if k[0] == kind]:
            del self._lists[key]

    def sweep(self) -> int:
        """Remove expired entries. Returns count removed."""
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            expired_lists = [k for k, e in self._lists.items() if e.is_expired(now)]
            for key in expired_lists:
                del self._lists[key]
        removed = len(expired) + len(expired_lists)
        if removed:
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._lists.clear()

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0
        return {
            "size": self.size,
            "lists": len(self._lists),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": round(hit_rate, 2),
        }
