"""Tests for the consumer loop."""

import asyncio

import pytest

from syncbridge.events.types import ChangeOperation
from syncbridge.feed.memory import InMemorySource
from syncbridge.sync.cursor import InMemoryCursorStore
from syncbridge.sync.deadletter import DeadLetterRecorder, DeadLetterWriteError, InMemoryDeadLetterStore
from syncbridge.sync.consumer import SyncConsumer
from syncbridge.sync.dispatcher import SyncDispatcher

from conftest import make_event


class BrokenStore(InMemoryDeadLetterStore):
    def upsert(self, record):
        raise OSError("database is locked")


@pytest.fixture
def source():
    return InMemorySource()


@pytest.fixture
def cursors():
    return InMemoryCursorStore()


class TestConsumer:
    @pytest.mark.asyncio
    async def test_events_applied_in_delivery_order(self, source, cursors, dispatcher, legacy_platform):
        source.publish(make_event("evt-1", position="1-0"))
        source.publish(make_event("evt-2", operation=ChangeOperation.DELETED, payload={}, position="2-0"))
        consumer = SyncConsumer("device-sync", source, dispatcher, cursors)

        await consumer.run(max_events=2)

        assert "dev-1" not in legacy_platform.devices
        assert [r.method for r in legacy_platform.mutations] == ["POST", "DELETE"]
        assert [e.event_id for e in source.acked] == ["evt-1", "evt-2"]
        assert cursors.get("device-sync") == "2-0"

    @pytest.mark.asyncio
    async def test_dead_lettered_event_still_advances_cursor(
        self, source, cursors, dispatcher, legacy_platform, recorder
    ):
        source.publish(make_event("evt-bad", payload={"id": "dev-1"}, position="5-0"))
        source.publish(make_event("evt-good", entity_id="dev-2", position="6-0"))
        consumer = SyncConsumer("device-sync", source, dispatcher, cursors)

        await consumer.run(max_events=2)

        assert recorder.get("evt-bad").error_class == "mapping"
        assert "dev-2" in legacy_platform.devices
        assert cursors.get("device-sync") == "6-0"
        assert consumer.stats["dead_lettered"] == 1
        assert consumer.stats["acknowledged"] == 1

    @pytest.mark.asyncio
    async def test_event_without_position_keeps_cursor(self, source, cursors, dispatcher):
        cursors.advance("device-sync", "9-0")
        source.publish(make_event())
        consumer = SyncConsumer("device-sync", source, dispatcher, cursors)

        await consumer.run(max_events=1)

        assert cursors.get("device-sync") == "9-0"

    @pytest.mark.asyncio
    async def test_dead_letter_write_failure_stops_and_escalates(
        self, source, cursors, legacy_client, legacy_platform, sleep, clock
    ):
        dispatcher = SyncDispatcher(legacy_client, DeadLetterRecorder(BrokenStore()), sleep=sleep, clock=clock)
        legacy_platform.reject_with = 400
        source.publish(make_event(position="3-0"))
        escalations = []
        consumer = SyncConsumer(
            "device-sync", source, dispatcher, cursors,
            escalate=lambda consumer_id, exc: escalations.append((consumer_id, str(exc))),
        )

        with pytest.raises(DeadLetterWriteError):
            await consumer.run()

        assert source.acked == []
        assert [e.event_id for e in source.nacked] == ["evt-1"]
        assert source.pending == 1
        assert cursors.get("device-sync") is None
        assert escalations[0][0] == "device-sync"
        assert consumer.stats["failure"] is not None
        assert not consumer.running

    @pytest.mark.asyncio
    async def test_cancellation_leaves_event_unacknowledged(
        self, source, cursors, legacy_client, legacy_platform, recorder, clock
    ):
        blocked = asyncio.Event()

        async def stuck_sleep(seconds):
            blocked.set()
            await asyncio.sleep(3600)

        dispatcher = SyncDispatcher(legacy_client, recorder, sleep=stuck_sleep, clock=clock)
        source.publish(make_event(position="4-0"))
        consumer = SyncConsumer("device-sync", source, dispatcher, cursors)

        # First attempt fails transiently so the dispatcher parks in its backoff sleep
        legacy_platform.failures = [503]

        task = asyncio.create_task(consumer.run())
        await asyncio.wait_for(blocked.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert source.acked == []
        assert cursors.get("device-sync") is None
        assert recorder.list() == []

    @pytest.mark.asyncio
    async def test_redelivery_is_stamped(self, source):
        event = make_event()
        source.publish(event)

        stream = source.events()
        first = await stream.__anext__()
        await source.nack(first)
        second = await stream.__anext__()

        assert first.delivery_attempt == 1
        assert second.delivery_attempt == 2
        await source.close()
