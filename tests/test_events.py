"""
Tests for the events module.

Tests the cross-session BatchNotifier, event types and the EventStore log.
"""

from datetime import datetime, timedelta, timezone

import pytest

from herbtrace.core.events import (
    EVENT_REGISTRY,
    BatchCreated,
    BatchNotifier,
    Event,
    EventStore,
    EventType,
    ResourceRecorded,
    StatusChanged,
    SyncItemFailed,
)


class TestBatchNotifier:
    """Tests for publish/subscribe delivery."""

    def test_delivers_to_every_subscriber(self):
        notifier = BatchNotifier()
        received_a, received_b = [], []
        notifier.subscribe(received_a.append)
        notifier.subscribe(received_b.append)

        change = notifier.publish(["batch-1", "batch-2"], reason="created")

        assert received_a == [change]
        assert received_b == [change]
        assert change.batches == ("batch-1", "batch-2")
        assert change.reason == "created"

    def test_unsubscribed_callback_is_not_called(self):
        notifier = BatchNotifier()
        received = []
        unsubscribe = notifier.subscribe(received.append)

        unsubscribe()
        unsubscribe()  # second call is harmless
        notifier.publish(["batch-1"])

        assert received == []
        assert notifier.subscriber_count == 0

    def test_no_replay_for_late_subscribers(self):
        notifier = BatchNotifier()
        notifier.publish(["batch-1"])

        received = []
        notifier.subscribe(received.append)

        assert received == []

    def test_failing_subscriber_does_not_block_others(self):
        notifier = BatchNotifier()
        received = []

        def broken(change):
            raise RuntimeError("session closed")

        notifier.subscribe(broken)
        notifier.subscribe(received.append)
        notifier.publish(["batch-1"])

        assert len(received) == 1

    def test_unsubscribe_during_delivery(self):
        """Verify a callback may unsubscribe itself while being notified."""
        notifier = BatchNotifier()
        calls = []
        unsubscribe = None

        def once(change):
            calls.append(change)
            unsubscribe()

        unsubscribe = notifier.subscribe(once)
        notifier.publish(["a"])
        notifier.publish(["b"])

        assert len(calls) == 1

    def test_sequence_increases_per_publish(self):
        notifier = BatchNotifier()
        first = notifier.publish([])
        second = notifier.publish([])

        assert second.sequence == first.sequence + 1


class TestEventTypes:
    """Tests for event dataclasses."""

    def test_event_has_required_fields(self):
        event = Event()

        assert event.event_id is not None
        assert event.timestamp is not None
        assert event.actor == "system"

    def test_event_to_dict(self):
        event = BatchCreated(qr_code="QR_EV_001", actor="collector", batch_id="batch-1")

        data = event.to_dict()

        assert data["event_type"] == "batch_created"
        assert data["qr_code"] == "QR_EV_001"
        assert data["batch_id"] == "batch-1"

    def test_event_from_dict_routes_by_type(self):
        data = {
            "event_id": "ev-1",
            "timestamp": "2025-03-01T08:00:00+00:00",
            "event_type": "status_changed",
            "qr_code": "QR_EV_002",
            "old_status": "pending",
            "new_status": "processing",
            "unknown_field": "ignored",
        }

        event = Event.from_dict(data)

        assert isinstance(event, StatusChanged)
        assert event.new_status == "processing"

    def test_all_event_types_in_registry(self):
        for event_type in EventType:
            assert event_type.value in EVENT_REGISTRY


class TestEventStore:
    """Tests for the append-only log."""

    @pytest.fixture
    def event_store(self, tmp_path):
        return EventStore(tmp_path / "events.jsonl")

    def test_append_writes_one_line_per_event(self, event_store):
        event_store.append(BatchCreated(qr_code="QR_EV_003"))
        event_store.append(StatusChanged(qr_code="QR_EV_003", new_status="processing"))

        lines = event_store.log_path.read_text().strip().split("\n")
        assert len(lines) == 2

    def test_replay_filters(self, event_store):
        event_store.append(BatchCreated(qr_code="QR_A"))
        event_store.append(ResourceRecorded(qr_code="QR_A", resource_id="collection-1"))
        event_store.append(BatchCreated(qr_code="QR_B"))

        assert len(list(event_store.replay(qr_code="QR_A"))) == 2
        assert len(list(event_store.replay(event_type="batch_created"))) == 2
        assert event_store.count_events() == 3

    def test_replay_filter_by_time(self, event_store):
        old = BatchCreated(qr_code="QR_OLD", timestamp="2024-01-01T00:00:00+00:00")
        event_store.append(old)
        event_store.append(BatchCreated(qr_code="QR_NEW"))

        since = datetime.now(timezone.utc) - timedelta(hours=1)
        recent = list(event_store.replay(since=since))

        assert [e.qr_code for e in recent] == ["QR_NEW"]

    def test_batch_history_in_append_order(self, event_store):
        event_store.append(BatchCreated(qr_code="QR_EV_004"))
        event_store.append(StatusChanged(qr_code="QR_EV_004", new_status="processing"))
        event_store.append(StatusChanged(qr_code="QR_EV_004", new_status="processed"))

        history = event_store.get_batch_history("QR_EV_004")

        assert [e.event_type for e in history] == [
            "batch_created",
            "status_changed",
            "status_changed",
        ]

    def test_replay_skips_corrupt_lines(self, event_store):
        event_store.append(BatchCreated(qr_code="QR_EV_005"))
        with open(event_store.log_path, "a") as f:
            f.write("{not json\n")

        assert event_store.count_events() == 1

    def test_replay_of_missing_log_is_empty(self, tmp_path):
        assert list(EventStore(tmp_path / "none.jsonl").replay()) == []

    def test_handler_called_for_its_type_only(self, event_store):
        seen = []
        event_store.register_handler("sync_item_failed", seen.append)

        event_store.append(BatchCreated(qr_code="QR_EV_006"))
        event_store.append(SyncItemFailed(qr_code="QR_EV_006", item_id=3, attempts=3))

        assert [e.item_id for e in seen] == [3]
