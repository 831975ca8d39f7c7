"""Shared fixtures: resource builders, a fake transport and a wired service."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from herbtrace.core.events import BatchNotifier, EventStore
from herbtrace.core.protocols import TransportError
from herbtrace.core.resources import CollectionEvent, ProcessingStep, QualityTest
from herbtrace.core.storage import JSONBatchStorage, JSONQueueStore
from herbtrace.core.sync import SyncQueue
from herbtrace.core.workflow import WorkflowStateMachine
from herbtrace.service import TraceabilityService

BASE_TIME = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Records every post; responds via ``handler`` (default: success)."""

    def __init__(self, handler=None):
        self.calls = []
        self.handler = handler

    async def post(self, endpoint, payload):
        self.calls.append((endpoint, payload))
        await asyncio.sleep(0)
        if self.handler is None:
            return {"success": True}
        return self.handler(endpoint, payload)

    @property
    def endpoints(self):
        return [endpoint for endpoint, _ in self.calls]


def always_down(endpoint, payload):
    raise TransportError("connection refused")


def collection_data(**overrides):
    data = {
        "kind": "collection",
        "botanicalName": "Withania somnifera",
        "commonName": "Ashwagandha",
        "partUsed": "root",
        "performerId": "FARMER-001",
        "performerName": "Ravi Kumar",
        "latitude": 26.9124,
        "longitude": 75.7873,
        "village": "Chomu",
        "district": "Jaipur",
        "state": "Rajasthan",
        "quantity": {"value": 5, "unit": "kg"},
        "performedAt": BASE_TIME.isoformat(),
        "recordedAt": BASE_TIME.isoformat(),
    }
    data.update(overrides)
    return data


def processing_data(**overrides):
    data = {
        "kind": "processing",
        "performerId": "PROC-001",
        "processType": "Drying",
        "quantity": {"value": 5, "unit": "kg"},
        "outputQuantity": {"value": 4.2, "unit": "kg"},
        "yieldPercent": 84,
        "performedAt": (BASE_TIME + timedelta(days=1)).isoformat(),
        "recordedAt": (BASE_TIME + timedelta(days=1)).isoformat(),
    }
    data.update(overrides)
    return data


def lab_test_data(**overrides):
    data = {
        "kind": "test",
        "performerId": "LAB-001",
        "testName": "Moisture Content",
        "resultValue": 8.5,
        "resultUnit": "%",
        "quantity": {"value": 50, "unit": "g"},
        "performedAt": (BASE_TIME + timedelta(days=2)).isoformat(),
        "recordedAt": (BASE_TIME + timedelta(days=2)).isoformat(),
    }
    data.update(overrides)
    return data


@pytest.fixture
def collection():
    return CollectionEvent.from_dict(collection_data())


@pytest.fixture
def processing(collection):
    return ProcessingStep.from_dict(processing_data(priorResourceRef=collection.id))


@pytest.fixture
def quality_test(processing):
    return QualityTest.from_dict(lab_test_data(priorResourceRef=processing.id))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def queue_store(tmp_path):
    return JSONQueueStore(tmp_path / "sync_queue.json")


@pytest.fixture
def storage(tmp_path):
    return JSONBatchStorage(data_dir=tmp_path / "data")


@pytest.fixture
def service(tmp_path, storage, queue_store, transport):
    """Service with an offline queue so writes never trigger delivery."""
    queue = SyncQueue(queue_store, transport, is_online=False)
    return TraceabilityService(
        storage=storage,
        sync_queue=queue,
        workflow=WorkflowStateMachine(),
        notifier=BatchNotifier(),
        event_store=EventStore(tmp_path / "events.jsonl"),
    )
