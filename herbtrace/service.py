"""
Traceability service: the composition root for one client.

Wires storage, the workflow state machine, the cross-session notifier, the
sync queue and the audit event log, and exposes the operations each role
portal performs against a batch.

Features:
- Batch registration by collectors
- Processing and laboratory submissions that walk the batch forward
- Regulatory decisions and batch completion
- Per-role access checks before any editable form is shown
- Provenance bundles with traceability scores
- Every accepted write is persisted, audited, queued for upstream sync and
  broadcast to open sessions

Rejected submissions (validation errors or access denials) come back as a
SubmissionResult and leave no trace in storage, the queue or the event log.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from herbtrace.core.events import (
    BatchCollectionChanged,
    BatchCreated,
    BatchNotifier,
    EventStore,
    ResourceRecorded,
    StatusChanged,
    SyncItemCompleted,
    SyncItemFailed,
)
from herbtrace.core.protocols import BatchStore
from herbtrace.core.provenance import ProvenanceBundle, build_bundle
from herbtrace.core.resources import (
    CollectionEvent,
    ProcessingStep,
    QualityTest,
    Resource,
    ResourceShapeError,
    construct_resource,
)
from herbtrace.core.sync import SyncItem, SyncQueue
from herbtrace.core.sync.payload import (
    DECISION_ITEM_TYPE,
    build_decision_payload,
    build_submission_payload,
)
from herbtrace.core.workflow import (
    AccessResult,
    AccessType,
    Batch,
    BatchNotFound,
    BatchStatus,
    Role,
    WorkflowError,
    WorkflowStateMachine,
)

logger = logging.getLogger(__name__)

# Resource variant each writing role records, and the status it leaves the batch in
ROLE_SUBMISSIONS = {
    Role.PROCESSOR: (ProcessingStep, BatchStatus.PROCESSED),
    Role.LABORATORY: (QualityTest, BatchStatus.TESTED),
}

DECISIONS = (BatchStatus.APPROVED, BatchStatus.REJECTED)


@dataclass
class SubmissionResult:
    """Outcome of a write operation."""

    accepted: bool
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    batch: Optional[Batch] = None
    sync_item_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "errors": list(self.errors),
            "reason": self.reason,
            "batch": self.batch.to_dict() if self.batch else None,
            "syncItemId": self.sync_item_id,
        }


def _rejected(reason: str, errors: Optional[List[str]] = None) -> SubmissionResult:
    return SubmissionResult(accepted=False, reason=reason, errors=list(errors or []))


class TraceabilityService:
    """Batch workflow operations for every role portal."""

    def __init__(
        self,
        storage: BatchStore,
        sync_queue: SyncQueue,
        workflow: Optional[WorkflowStateMachine] = None,
        notifier: Optional[BatchNotifier] = None,
        event_store: Optional[EventStore] = None,
    ):
        """Initialize service.

        Args:
            storage: Batch and resource persistence
            sync_queue: Outbound submission queue
            workflow: State machine (default: early rejection disabled)
            notifier: Cross-session channel (default: new notifier)
            event_store: Optional audit log
        """
        self.storage = storage
        self.sync_queue = sync_queue
        self.workflow = workflow or WorkflowStateMachine()
        self.notifier = notifier or BatchNotifier()
        self.event_store = event_store

        if event_store is not None:
            sync_queue.on_completed = self._audit_sync_completed
            sync_queue.on_failed = self._audit_sync_failed

    # ========================================================================
    # Read interface
    # ========================================================================

    def get_batch_by_qr_code(self, qr_code: str) -> Optional[Batch]:
        return self.storage.get_batch_by_qr_code(qr_code)

    def get_all_batches(self) -> List[Batch]:
        return self.storage.get_all_batches()

    def subscribe_to_batch_updates(
        self, callback: Callable[[BatchCollectionChanged], None]
    ) -> Callable[[], None]:
        """Register for batch collection changes. Returns the unsubscribe function."""
        return self.notifier.subscribe(callback)

    def check_access(
        self, role: Any, qr_code: str, access_type: Any = AccessType.EDIT
    ) -> AccessResult:
        """Decide what ``role`` may do with the batch behind ``qr_code``."""
        return self.workflow.check_access(role, self.storage.get_batch_by_qr_code(qr_code), access_type)

    def get_provenance(self, qr_code: str) -> ProvenanceBundle:
        """Aggregate every stored resource of a batch into a provenance bundle.

        Raises:
            BatchNotFound: If no batch has this QR code
        """
        batch = self.storage.get_batch_by_qr_code(qr_code)
        if batch is None:
            raise BatchNotFound(f"Batch not found: {qr_code}")
        resources = self.storage.get_resources(list(batch.resources))
        return build_bundle(qr_code, resources, target_ref=batch.id)

    # ========================================================================
    # Writes
    # ========================================================================

    def create_batch(
        self,
        role: Any,
        qr_code: str,
        collection: Union[CollectionEvent, Dict[str, Any]],
        details: Optional[Dict[str, Any]] = None,
    ) -> SubmissionResult:
        """Register a new batch from a collector's collection event.

        Args:
            role: Acting role (must be collector)
            qr_code: QR code printed for the batch
            collection: CollectionEvent or its dict form
            details: Extra domain fields stored on the batch record

        Returns:
            SubmissionResult with the new batch when accepted
        """
        if _role_name(role) != Role.COLLECTOR.value:
            return _rejected(f"Only collectors may register batches, not {_role_name(role)}")
        if not qr_code:
            return _rejected("QR code is required")
        if self.storage.get_batch_by_qr_code(qr_code) is not None:
            return _rejected(f"Batch {qr_code} already exists")

        try:
            resource = _as_resource(collection, CollectionEvent)
        except ResourceShapeError as e:
            return _rejected(str(e), [str(e)])

        resource = replace(resource, batch_ref=qr_code)
        validation = resource.validate()
        if not validation.is_valid:
            return _rejected("Collection event is incomplete", validation.errors)

        details = dict(details or {})
        details.setdefault("botanicalName", resource.botanical_name)
        details.setdefault("commonName", resource.common_name)
        details.setdefault("quantity", resource.quantity.value)
        details.setdefault("unit", resource.quantity.unit)
        details.setdefault("collectionId", resource.id)

        batch = Batch.create(
            qr_code=qr_code,
            actor_role=Role.COLLECTOR.value,
            details=details,
            notes="Collection recorded",
        ).with_resource(resource.id)

        self.storage.put_resource(resource)
        self.storage.save_batch(batch)
        self._audit(
            BatchCreated(qr_code=qr_code, actor=Role.COLLECTOR.value, batch_id=batch.id),
            ResourceRecorded(
                qr_code=qr_code,
                actor=Role.COLLECTOR.value,
                resource_id=resource.id,
                resource_kind=resource.kind.value,
            ),
        )

        item_id = self.sync_queue.enqueue(
            build_submission_payload(qr_code, resource, details), resource.kind.value
        )
        logger.info(f"Registered batch {qr_code} ({resource.botanical_name})")
        self._publish(f"created {qr_code}")
        return SubmissionResult(accepted=True, batch=batch, sync_item_id=item_id)

    def submit_resource(
        self,
        role: Any,
        qr_code: str,
        resource: Union[Resource, Dict[str, Any]],
    ) -> SubmissionResult:
        """Record a processing step or quality test against a batch.

        The batch walks through the intermediate status (processing or
        testing) to the role's completed status in one submission.

        Args:
            role: processor or laboratory
            qr_code: Batch QR code
            resource: ProcessingStep/QualityTest or its dict form

        Returns:
            SubmissionResult with the updated batch when accepted
        """
        access = self.check_access(role, qr_code, AccessType.EDIT)
        if not access.can_edit:
            return _rejected(access.reason or "Edit access denied")

        batch = access.batch
        acting = Role(_role_name(role))
        if acting not in ROLE_SUBMISSIONS:
            return _rejected(f"{acting.value} does not record resources against batches")
        variant, final_status = ROLE_SUBMISSIONS[acting]

        try:
            resource = _as_resource(resource, variant)
        except ResourceShapeError as e:
            return _rejected(str(e), [str(e)])
        if not isinstance(resource, variant):
            return _rejected(
                f"{acting.value} records {variant.kind.value} resources, "
                f"not {resource.kind.value}"
            )

        link = {"batch_ref": qr_code}
        if not resource.prior_resource_ref and batch.resources:
            link["prior_resource_ref"] = batch.resources[-1]
        resource = replace(resource, **link)

        validation = resource.validate()
        if not validation.is_valid:
            return _rejected(f"{variant.__name__} is incomplete", validation.errors)

        try:
            updated, transitions = self._walk_to(batch, final_status, acting)
        except WorkflowError as e:
            return _rejected(str(e))

        updated = updated.with_resource(resource.id)
        self.storage.put_resource(resource)
        self.storage.save_batch(updated)
        self._audit(
            ResourceRecorded(
                qr_code=qr_code,
                actor=acting.value,
                resource_id=resource.id,
                resource_kind=resource.kind.value,
            ),
            *transitions,
        )

        item_id = self.sync_queue.enqueue(
            build_submission_payload(qr_code, resource), resource.kind.value
        )
        self._publish(f"{resource.kind.value} recorded for {qr_code}")
        return SubmissionResult(accepted=True, batch=updated, sync_item_id=item_id)

    def record_decision(
        self, role: Any, qr_code: str, decision: str, notes: str = ""
    ) -> SubmissionResult:
        """Approve or reject a tested batch."""
        try:
            target = BatchStatus(decision)
        except ValueError:
            target = None
        if target not in DECISIONS:
            return _rejected(f"Decision must be approved or rejected, not {decision}")

        result = self._transition(role, qr_code, target, notes)
        if not result.accepted:
            return result

        result.sync_item_id = self.sync_queue.enqueue(
            build_decision_payload(qr_code, target.value, notes, _role_name(role)),
            DECISION_ITEM_TYPE,
        )
        self._publish(f"{qr_code} {target.value}")
        return result

    def complete_batch(self, role: Any, qr_code: str, notes: str = "") -> SubmissionResult:
        """Close out an approved batch."""
        result = self._transition(role, qr_code, BatchStatus.COMPLETED, notes)
        if result.accepted:
            self._publish(f"{qr_code} completed")
        return result

    # ========================================================================
    # Internals
    # ========================================================================

    def _transition(
        self, role: Any, qr_code: str, target: BatchStatus, notes: str
    ) -> SubmissionResult:
        access = self.check_access(role, qr_code, AccessType.EDIT)
        if not access.can_edit:
            return _rejected(access.reason or "Edit access denied")

        try:
            updated = self.workflow.advance(access.batch, target, role, notes)
        except WorkflowError as e:
            return _rejected(str(e))

        self.storage.save_batch(updated)
        self._audit(_status_event(access.batch, updated))
        return SubmissionResult(accepted=True, batch=updated)

    def _walk_to(self, batch: Batch, final_status: BatchStatus, role: Role):
        """Advance along the forward path until ``final_status`` is reached."""
        transitions = []
        current = batch
        while current.status != final_status:
            next_status = self.workflow.next_status(current.status)
            if next_status is None or next_status.rank > final_status.rank:
                raise WorkflowError(
                    f"Batch {batch.qr_code} cannot reach {final_status.value} "
                    f"from {current.status.value}"
                )
            advanced = self.workflow.advance(
                current, next_status, role, notes=f"{role.value} submission"
            )
            transitions.append(_status_event(current, advanced))
            current = advanced
        return current, transitions

    def _publish(self, reason: str) -> None:
        self.notifier.publish(self.storage.get_all_batches(), reason=reason)

    def _audit(self, *events) -> None:
        if self.event_store is None:
            return
        for event in events:
            self.event_store.append(event)

    def _audit_sync_completed(self, item: SyncItem, endpoint: str) -> None:
        self._audit(
            SyncItemCompleted(
                qr_code=item.data.get("qrCode"),
                actor="sync",
                item_id=item.id,
                endpoint=endpoint,
                attempts=item.attempts,
            )
        )

    def _audit_sync_failed(self, item: SyncItem) -> None:
        self._audit(
            SyncItemFailed(
                qr_code=item.data.get("qrCode"),
                actor="sync",
                item_id=item.id,
                attempts=item.attempts,
                last_error=item.last_error or "",
            )
        )


def _role_name(role: Any) -> str:
    return role.value if isinstance(role, Role) else str(role)


def _as_resource(value: Union[Resource, Dict[str, Any]], variant) -> Resource:
    if isinstance(value, Resource):
        return value
    if not isinstance(value, dict):
        raise ResourceShapeError(f"Expected a resource object, got {type(value).__name__}")
    data = dict(value)
    data.setdefault("kind", variant.kind.value)
    return construct_resource(data)


def _status_event(before: Batch, after: Batch) -> StatusChanged:
    entry = after.status_history[-1]
    return StatusChanged(
        qr_code=after.qr_code,
        actor=entry.actor_role,
        old_status=before.status.value,
        new_status=after.status.value,
        notes=entry.notes,
    )


def create_service(config=None, transport=None) -> TraceabilityService:
    """Build a service over JSON storage from configuration.

    Args:
        config: Config class or object with the same attributes (default: Config)
        transport: Sync transport (default: UrllibTransport to SYNC_BASE_URL)

    Returns:
        Ready-to-use TraceabilityService
    """
    from herbtrace.config import Config
    from herbtrace.core.storage import create_storage
    from herbtrace.core.sync.transport import UrllibTransport

    config = config or Config
    data_dir = Path(config.DATA_DIR)
    storage, queue_store = create_storage("json", {"path": data_dir})

    sync_queue = SyncQueue(
        queue_store,
        transport or UrllibTransport(config.SYNC_BASE_URL, timeout=config.SYNC_TIMEOUT),
        max_attempts=config.SYNC_MAX_ATTEMPTS,
        base_delay=config.SYNC_BASE_DELAY,
        sync_interval=config.SYNC_INTERVAL,
        attempt_timeout=config.SYNC_TIMEOUT,
    )
    logger.info(f"Traceability service using {data_dir} (sync to {config.SYNC_BASE_URL})")

    return TraceabilityService(
        storage=storage,
        sync_queue=sync_queue,
        workflow=WorkflowStateMachine(allow_early_rejection=config.ALLOW_EARLY_REJECTION),
        event_store=EventStore(data_dir / "events.jsonl"),
    )
