"""Tests for dead-letter recording, storage and cursors."""

from datetime import datetime, timedelta, timezone

import pytest

from syncbridge.events.types import EntityType
from syncbridge.sync.cursor import SqliteCursorStore
from syncbridge.sync.db import DatabaseManager
from syncbridge.sync.deadletter import (
    DeadLetterError,
    DeadLetterNotFoundError,
    DeadLetterRecorder,
    DeadLetterWriteError,
    InMemoryDeadLetterStore,
    SqliteDeadLetterStore,
)

from conftest import make_event


class SteppingClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class BrokenStore(InMemoryDeadLetterStore):
    def upsert(self, record):
        raise OSError("disk full")


@pytest.fixture
def db():
    manager = DatabaseManager(":memory:")
    yield manager
    manager.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, db):
    if request.param == "sqlite":
        return SqliteDeadLetterStore(db)
    return InMemoryDeadLetterStore()


class TestRecorder:
    def test_records_event_with_failure_metadata(self, store):
        recorder = DeadLetterRecorder(store, clock=SteppingClock())
        event = make_event()

        recorder.record(event, "POST /api/device returned 400", "permanent", attempts=1)

        record = recorder.get("evt-1")
        assert record.event == event
        assert record.error_class == "permanent"
        assert record.attempts == 1
        assert record.first_failed_at == record.last_failed_at

    def test_second_failure_updates_in_place(self, store):
        recorder = DeadLetterRecorder(store, clock=SteppingClock())
        recorder.record(make_event(), "first", "transient", attempts=5)
        first = recorder.get("evt-1")

        recorder.record(make_event(), "second", "permanent", attempts=1)

        records = recorder.list()
        assert len(records) == 1
        assert records[0].last_error == "second"
        assert records[0].error_class == "permanent"
        assert records[0].attempts == 6
        assert records[0].first_failed_at == first.first_failed_at
        assert records[0].last_failed_at > first.last_failed_at

    def test_blank_reason_is_replaced(self, store):
        recorder = DeadLetterRecorder(store)
        record = recorder.record(make_event(), "   ", "mapping")
        assert record.last_error == "mapping failure"

    def test_list_filters_and_orders(self, store):
        recorder = DeadLetterRecorder(store, clock=SteppingClock())
        recorder.record(make_event("evt-a"), "x", "permanent")
        recorder.record(make_event("evt-b", entity_id="ten-1", entity_type=EntityType.TENANT,
                                   payload={"id": "ten-1", "title": "Acme"}), "x", "permanent")
        recorder.record(make_event("evt-c", entity_id="dev-3"), "x", "permanent")

        assert [r.event_id for r in recorder.list()] == ["evt-a", "evt-b", "evt-c"]
        assert [r.event_id for r in recorder.list(entity_type=EntityType.DEVICE)] == ["evt-a", "evt-c"]
        assert len(recorder.list(limit=2)) == 2
        assert recorder.stats == {"pending": 3, "by_entity_type": {"device": 2, "tenant": 1}}

    def test_purge(self, store):
        recorder = DeadLetterRecorder(store)
        recorder.record(make_event(), "x", "permanent")

        recorder.purge("evt-1")

        assert recorder.list() == []
        with pytest.raises(DeadLetterNotFoundError):
            recorder.purge("evt-1")

    def test_get_unknown(self, store):
        with pytest.raises(DeadLetterNotFoundError):
            DeadLetterRecorder(store).get("nope")

    def test_store_failure_is_escalated(self):
        recorder = DeadLetterRecorder(BrokenStore())
        with pytest.raises(DeadLetterWriteError, match="disk full"):
            recorder.record(make_event(), "x", "permanent")

    @pytest.mark.asyncio
    async def test_replay_requires_handler(self, store):
        recorder = DeadLetterRecorder(store)
        recorder.record(make_event(), "x", "permanent")
        with pytest.raises(DeadLetterError):
            await recorder.replay("evt-1")

    @pytest.mark.asyncio
    async def test_replay_reinjects_first_delivery(self, store):
        recorder = DeadLetterRecorder(store)
        recorder.record(make_event().with_delivery_attempt(4), "x", "transient", attempts=5)
        replayed = []

        async def handler(event):
            replayed.append(event)
            return "done"

        recorder.bind_replay(handler)

        assert await recorder.replay("evt-1") == "done"
        assert replayed[0].delivery_attempt == 1
        assert recorder.get("evt-1").replay_count == 1


class TestSqliteStore:
    def test_event_survives_round_trip_through_storage(self, db):
        store = SqliteDeadLetterStore(db)
        event = make_event(payload={"id": "dev-1", "name": "Boiler", "type": "t", "additionalInfo": '{"a": 1}'},
                           position="1714564800000-0")
        DeadLetterRecorder(store).record(event, "x", "permanent", attempts=2)

        loaded = store.get("evt-1")

        assert loaded.event.payload == event.payload
        assert loaded.event.position == "1714564800000-0"
        assert loaded.event.occurred_at == event.occurred_at

    def test_delete_reports_absence(self, db):
        assert SqliteDeadLetterStore(db).delete("nope") is False


class TestCursors:
    def test_advance_and_read(self, db):
        cursors = SqliteCursorStore(db)
        assert cursors.get("device-sync") is None

        cursors.advance("device-sync", "100-0")
        cursors.advance("device-sync", "101-0")
        cursors.advance("tenant-sync", "7-0")

        assert cursors.get("device-sync") == "101-0"
        assert cursors.all() == {"device-sync": "101-0", "tenant-sync": "7-0"}

    def test_cursors_persist_across_connections(self, tmp_path):
        path = tmp_path / "bridge.db"
        first = DatabaseManager(path)
        SqliteCursorStore(first).advance("device-sync", "42-0")
        first.close()

        second = DatabaseManager(path)
        assert SqliteCursorStore(second).get("device-sync") == "42-0"
        second.close()
