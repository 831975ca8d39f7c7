"""
Tests for JSON storage backends.
"""

import json
from dataclasses import replace

import pytest

from herbtrace.core.storage import JSONBatchStorage, JSONQueueStore, create_storage
from herbtrace.core.workflow import Batch, BatchStatus, Role, WorkflowStateMachine


@pytest.fixture
def json_storage(tmp_path):
    return JSONBatchStorage(data_dir=tmp_path)


class TestBatchStorage:
    """Tests for batch persistence."""

    def test_save_and_get(self, json_storage):
        batch = Batch.create("QR_ST_001", details={"botanicalName": "Ocimum sanctum"})

        collection = json_storage.save_batch(batch)

        assert [b.qr_code for b in collection] == ["QR_ST_001"]
        loaded = json_storage.get_batch_by_qr_code("QR_ST_001")
        assert loaded.details["botanicalName"] == "Ocimum sanctum"
        assert loaded.status == BatchStatus.PENDING

    def test_get_missing_returns_none(self, json_storage):
        assert json_storage.get_batch_by_qr_code("QR_NONE") is None

    def test_save_replaces_by_qr_code(self, json_storage):
        batch = Batch.create("QR_ST_002")
        json_storage.save_batch(batch)

        advanced = WorkflowStateMachine().advance(batch, BatchStatus.PROCESSING, Role.PROCESSOR)
        json_storage.save_batch(advanced)

        assert json_storage.count() == 1
        assert json_storage.get_batch_by_qr_code("QR_ST_002").status == BatchStatus.PROCESSING

    def test_insertion_order(self, json_storage):
        for n in range(3):
            json_storage.save_batch(Batch.create(f"QR_ORDER_{n}"))

        assert [b.qr_code for b in json_storage.get_all_batches()] == [
            "QR_ORDER_0",
            "QR_ORDER_1",
            "QR_ORDER_2",
        ]

    def test_persisted_layout(self, json_storage):
        json_storage.save_batch(Batch.create("QR_ST_003", details={"farmerName": "Ravi"}))

        records = json.loads(json_storage.batches_file.read_text())

        assert records[0]["qrCode"] == "QR_ST_003"
        assert records[0]["status"] == "pending"
        assert records[0]["statusHistory"][0]["status"] == "pending"
        assert records[0]["farmerName"] == "Ravi"

    def test_writes_reread_latest_state(self, tmp_path):
        """Verify two handles never overwrite each other's batches."""
        first = JSONBatchStorage(data_dir=tmp_path)
        second = JSONBatchStorage(data_dir=tmp_path)

        first.save_batch(Batch.create("QR_ST_A"))
        second.save_batch(Batch.create("QR_ST_B"))

        assert {b.qr_code for b in first.get_all_batches()} == {"QR_ST_A", "QR_ST_B"}

    def test_delete_and_count(self, json_storage):
        json_storage.save_batch(Batch.create("QR_ST_004"))
        json_storage.save_batch(Batch.create("QR_ST_005"))

        assert json_storage.delete_batch("QR_ST_004") is True
        assert json_storage.delete_batch("QR_ST_004") is False
        assert json_storage.count() == 1
        assert json_storage.count(status="pending") == 1
        assert json_storage.count(status="approved") == 0

    def test_no_temp_file_left_behind(self, json_storage):
        json_storage.save_batch(Batch.create("QR_ST_006"))
        assert not list(json_storage.data_dir.glob("*.tmp"))


class TestResourceStorage:
    """Tests for resource persistence."""

    def test_put_and_get(self, json_storage, collection):
        json_storage.put_resource(collection)

        assert json_storage.get_resource(collection.id) == collection

    def test_existing_ids_are_not_overwritten(self, json_storage, collection):
        json_storage.put_resource(collection)
        json_storage.put_resource(replace(collection, botanical_name="Changed"))

        assert json_storage.get_resource(collection.id).botanical_name == "Withania somnifera"

    def test_get_resources_keeps_order_and_skips_missing(
        self, json_storage, collection, processing
    ):
        json_storage.put_resource(processing)
        json_storage.put_resource(collection)

        loaded = json_storage.get_resources([collection.id, "missing", processing.id])

        assert [r.id for r in loaded] == [collection.id, processing.id]


class TestQueueStore:
    """Tests for the sync queue file."""

    def test_missing_file_loads_empty(self, tmp_path):
        assert JSONQueueStore(tmp_path / "queue.json").load() == []

    def test_save_and_load(self, tmp_path):
        store = JSONQueueStore(tmp_path / "nested" / "queue.json")
        store.save([{"id": 1, "status": "pending"}])

        assert store.load() == [{"id": 1, "status": "pending"}]

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "queue.json"
        path.write_text("{broken")

        with pytest.raises(json.JSONDecodeError):
            JSONQueueStore(path).load()


class TestStorageFactory:
    """Tests for create_storage."""

    def test_create_json_storage(self, tmp_path):
        batch_storage, queue_store = create_storage("json", {"path": tmp_path})

        assert isinstance(batch_storage, JSONBatchStorage)
        assert queue_store.path == tmp_path / "sync_queue.json"

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage("sqlite", {"path": tmp_path})
