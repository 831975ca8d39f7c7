"""
Tests for TraceabilityService, the composition root.

Covers the full batch lifecycle across roles, rejection without side
effects, notifications, audit events and sync queue integration.
"""

import asyncio

import pytest

from conftest import FakeTransport, collection_data, lab_test_data, processing_data
from herbtrace.config import Config
from herbtrace.core.workflow import BatchNotFound, BatchStatus, Role, WorkflowStateMachine
from herbtrace.service import create_service

QR = "QR_COL_TEST1"


@pytest.fixture
def registered(service):
    result = service.create_batch(Role.COLLECTOR, QR, collection_data())
    assert result.accepted, result.reason
    return result


def walk_to_tested(service):
    assert service.submit_resource("processor", QR, processing_data()).accepted
    assert service.submit_resource("laboratory", QR, lab_test_data()).accepted


class TestCreateBatch:
    """Tests for batch registration."""

    def test_registers_pending_batch(self, service, registered):
        batch = service.get_batch_by_qr_code(QR)

        assert batch.status == BatchStatus.PENDING
        assert batch.details["botanicalName"] == "Withania somnifera"
        assert len(batch.resources) == 1
        assert registered.sync_item_id is not None

    def test_queues_collection_payload(self, service, registered):
        item = service.sync_queue.get_item(registered.sync_item_id)

        assert item.type == "collection"
        assert item.data["qrCode"] == QR
        assert item.data["farmer"]["farmerId"] == "FARMER-001"
        assert item.data["herb"]["quantity"] == 5
        assert item.data["location"]["latitude"] == pytest.approx(26.9124)

    def test_only_collectors_register(self, service):
        result = service.create_batch(Role.PROCESSOR, QR, collection_data())

        assert not result.accepted
        assert service.get_all_batches() == []

    def test_duplicate_qr_code_rejected(self, service, registered):
        result = service.create_batch(Role.COLLECTOR, QR, collection_data())

        assert not result.accepted
        assert "already exists" in result.reason

    def test_invalid_collection_writes_nothing(self, service):
        result = service.create_batch(
            Role.COLLECTOR, QR, collection_data(botanicalName="", latitude=None)
        )

        assert not result.accepted
        assert result.errors == ["Botanical name is required", "GPS coordinates are required"]
        assert service.get_all_batches() == []
        assert service.sync_queue.status().total == 0
        assert service.event_store.count_events() == 0

    def test_malformed_collection_is_a_shape_error(self, service):
        result = service.create_batch(Role.COLLECTOR, QR, collection_data(kind="shipment"))

        assert not result.accepted
        assert "Unknown resource kind" in result.errors[0]

    def test_malformed_documentation_is_rejected_without_writes(self, service):
        result = service.create_batch(
            Role.COLLECTOR, QR, collection_data(documentation="photo.jpg")
        )

        assert not result.accepted
        assert "Documentation must be a mapping" in result.errors[0]
        assert service.get_all_batches() == []
        assert service.sync_queue.status().total == 0


class TestSubmitResource:
    """Tests for processing and laboratory submissions."""

    def test_processor_moves_batch_to_processed(self, service, registered):
        result = service.submit_resource("processor", QR, processing_data())

        assert result.accepted
        assert result.batch.status == BatchStatus.PROCESSED
        statuses = [e.status.value for e in result.batch.status_history]
        assert statuses == ["pending", "processing", "processed"]

    def test_processing_links_to_collection(self, service, registered):
        result = service.submit_resource("processor", QR, processing_data())

        collection_id, processing_id = result.batch.resources
        stored = service.storage.get_resource(processing_id)
        assert stored.prior_resource_ref == collection_id
        assert stored.batch_ref == QR

    def test_lab_before_processing_is_denied(self, service, registered):
        result = service.submit_resource("laboratory", QR, lab_test_data())

        assert not result.accepted
        assert "not yet ready" in result.reason
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.PENDING

    def test_lab_moves_batch_to_tested(self, service, registered):
        walk_to_tested(service)

        batch = service.get_batch_by_qr_code(QR)
        assert batch.status == BatchStatus.TESTED
        assert len(batch.resources) == 3

    def test_wrong_resource_kind_rejected(self, service, registered):
        service.submit_resource("processor", QR, processing_data())

        result = service.submit_resource("laboratory", QR, processing_data(kind="processing"))

        assert not result.accepted
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.PROCESSED

    def test_invalid_test_rejected_without_side_effects(self, service, registered):
        service.submit_resource("processor", QR, processing_data())
        queued = service.sync_queue.status().total

        result = service.submit_resource("laboratory", QR, lab_test_data(resultValue=None))

        assert not result.accepted
        assert result.errors == ["Test result value is required"]
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.PROCESSED
        assert service.sync_queue.status().total == queued

    def test_processor_after_processing_is_view_only(self, service, registered):
        service.submit_resource("processor", QR, processing_data())

        result = service.submit_resource("processor", QR, processing_data())

        assert not result.accepted
        assert "view-only" in result.reason

    def test_viewer_cannot_submit(self, service, registered):
        assert not service.submit_resource("consumer", QR, processing_data()).accepted

    def test_unknown_batch(self, service):
        result = service.submit_resource("processor", "QR_MISSING", processing_data())

        assert not result.accepted
        assert result.reason == "Batch not found"


class TestDecisions:
    """Tests for regulator decisions and completion."""

    def test_approve_and_complete(self, service, registered):
        walk_to_tested(service)

        approved = service.record_decision("regulator", QR, "approved", notes="Meets limits")
        completed = service.complete_batch("regulator", QR)

        assert approved.accepted
        assert approved.sync_item_id is not None
        assert completed.accepted
        assert completed.batch.status == BatchStatus.COMPLETED
        assert service.sync_queue.get_item(approved.sync_item_id).type == "decision"

    def test_reject(self, service, registered):
        walk_to_tested(service)

        result = service.record_decision("regulator", QR, "rejected", notes="Heavy metals")

        assert result.batch.status == BatchStatus.REJECTED
        assert result.batch.status_history[-1].notes == "Heavy metals"

    def test_early_rejection_is_disabled(self, service, registered):
        result = service.record_decision("regulator", QR, "rejected")

        assert not result.accepted
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.PENDING

    def test_early_rejection_when_enabled(self, service, registered):
        service.workflow = WorkflowStateMachine(allow_early_rejection=True)

        rejected = service.record_decision("regulator", QR, "rejected", notes="Adulterated")
        approved = service.record_decision("regulator", QR, "approved")

        assert rejected.accepted, rejected.reason
        assert rejected.batch.status == BatchStatus.REJECTED
        assert service.sync_queue.get_item(rejected.sync_item_id).type == "decision"
        assert not approved.accepted

    def test_early_approval_is_not_possible(self, service, registered):
        service.workflow = WorkflowStateMachine(allow_early_rejection=True)

        result = service.record_decision("regulator", QR, "approved")

        assert not result.accepted
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.PENDING

    def test_invalid_decision(self, service, registered):
        walk_to_tested(service)
        assert not service.record_decision("regulator", QR, "completed").accepted

    def test_only_regulator_decides(self, service, registered):
        walk_to_tested(service)
        assert not service.record_decision("laboratory", QR, "approved").accepted

    def test_complete_requires_approval(self, service, registered):
        walk_to_tested(service)
        assert not service.complete_batch("regulator", QR).accepted


class TestReadsAndNotifications:
    """Tests for access checks, provenance, notifications and audit."""

    def test_check_access_by_qr_code(self, service, registered):
        assert service.check_access("processor", QR).can_edit
        assert not service.check_access("laboratory", QR).access_allowed
        assert service.check_access("processor", "QR_MISSING").reason == "Batch not found"

    def test_provenance_scenario(self, service, registered):
        walk_to_tested(service)

        bundle = service.get_provenance(QR)

        assert bundle.completeness() == 100
        assert len(bundle.events) == 3
        assert [e.kind.value for e in bundle.events] == ["collection", "processing", "test"]
        assert bundle.verifiability() == 100
        assert bundle.target_ref == service.get_batch_by_qr_code(QR).id

    def test_provenance_unknown_batch(self, service):
        with pytest.raises(BatchNotFound):
            service.get_provenance("QR_MISSING")

    def test_subscribers_receive_full_collection(self, service):
        changes = []
        unsubscribe = service.subscribe_to_batch_updates(changes.append)

        service.create_batch("collector", QR, collection_data())
        service.create_batch("collector", "QR_SECOND", collection_data())
        unsubscribe()
        service.submit_resource("processor", QR, processing_data())

        assert len(changes) == 2
        assert [b.qr_code for b in changes[-1].batches] == [QR, "QR_SECOND"]

    def test_rejection_publishes_nothing(self, service, registered):
        changes = []
        service.subscribe_to_batch_updates(changes.append)

        service.submit_resource("laboratory", QR, lab_test_data())

        assert changes == []

    def test_audit_trail(self, service, registered):
        walk_to_tested(service)

        types = [e.event_type for e in service.event_store.get_batch_history(QR)]

        assert types.count("batch_created") == 1
        assert types.count("resource_recorded") == 3
        assert types.count("status_changed") == 4

    def test_sync_outcome_is_audited(self, service, registered):
        service.sync_queue.set_online(True)
        asyncio.run(service.sync_queue.drain())

        completed = list(service.event_store.replay(event_type="sync_item_completed"))
        assert [e.qr_code for e in completed] == [QR]


class TestCreateService:
    """Tests for building the service from configuration."""

    def test_builds_from_config(self, tmp_path):
        config = type("TestConfig", (Config,), {"DATA_DIR": tmp_path, "SYNC_MAX_ATTEMPTS": 5})

        service = create_service(config, transport=FakeTransport())

        assert service.sync_queue.max_attempts == 5
        assert service.storage.data_dir == tmp_path
        assert service.event_store.log_path == tmp_path / "events.jsonl"
        assert service.workflow.allow_early_rejection is False

    def test_early_rejection_from_config(self, tmp_path):
        config = type("TestConfig", (Config,), {"DATA_DIR": tmp_path, "ALLOW_EARLY_REJECTION": True})
        service = create_service(config, transport=FakeTransport())
        service.sync_queue.set_online(False)
        service.create_batch("collector", QR, collection_data())

        result = service.record_decision("regulator", QR, "rejected", notes="Wrong species")

        assert result.accepted, result.reason
        assert service.get_batch_by_qr_code(QR).status == BatchStatus.REJECTED
