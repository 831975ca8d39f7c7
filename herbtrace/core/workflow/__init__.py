"""
Cross-party workflow state machine for herb batches.

A batch moves through the supply chain one stage at a time:

    pending -> processing -> processed -> testing -> tested
            -> approved | rejected
    approved -> completed

Each role (collector, processor, laboratory, regulator) owns one stage: the
statuses at which it may write and the transitions leaving them. Access
checks tell a role's portal whether a batch is not yet ready, editable, or
already past its stage (view only). Transitions are append-only: every
advance adds one entry to the batch's status history.

Usage:
    from herbtrace.core.workflow import Batch, BatchStatus, Role, WorkflowStateMachine

    machine = WorkflowStateMachine()
    batch = Batch.create(qr_code="QR_COL_001", actor_role=Role.COLLECTOR)
    batch = machine.advance(batch, BatchStatus.PROCESSING, Role.PROCESSOR)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
import logging
import uuid

from herbtrace.core.resources import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for rejected workflow writes."""


class AccessDenied(WorkflowError):
    """Role is acting outside its designated stage."""


class IllegalTransition(WorkflowError):
    """Requested status is not a legal successor of the current one."""


class BatchNotFound(LookupError):
    """No batch is registered under the given QR code."""


class BatchStatus(str, Enum):
    """Batch lifecycle status (mutually exclusive)."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    TESTING = "testing"
    TESTED = "tested"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        """Position on the forward path. approved and rejected share a rank."""
        return STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class Role(str, Enum):
    """Portal roles. Only the first four ever write."""

    COLLECTOR = "collector"
    PROCESSOR = "processor"
    LABORATORY = "laboratory"
    REGULATOR = "regulator"
    CONSUMER = "consumer"
    MANAGEMENT = "management"


class AccessType(str, Enum):
    VIEW = "view"
    EDIT = "edit"


STATUS_RANK: Dict[BatchStatus, int] = {
    BatchStatus.PENDING: 0,
    BatchStatus.PROCESSING: 1,
    BatchStatus.PROCESSED: 2,
    BatchStatus.TESTING: 3,
    BatchStatus.TESTED: 4,
    BatchStatus.APPROVED: 5,
    BatchStatus.REJECTED: 5,
    BatchStatus.COMPLETED: 6,
}

TERMINAL_STATUSES: FrozenSet[BatchStatus] = frozenset(
    {BatchStatus.REJECTED, BatchStatus.COMPLETED}
)

# (from, to) -> owning role
TRANSITIONS: Dict[Tuple[BatchStatus, BatchStatus], Role] = {
    (BatchStatus.PENDING, BatchStatus.PROCESSING): Role.PROCESSOR,
    (BatchStatus.PROCESSING, BatchStatus.PROCESSED): Role.PROCESSOR,
    (BatchStatus.PROCESSED, BatchStatus.TESTING): Role.LABORATORY,
    (BatchStatus.TESTING, BatchStatus.TESTED): Role.LABORATORY,
    (BatchStatus.TESTED, BatchStatus.APPROVED): Role.REGULATOR,
    (BatchStatus.TESTED, BatchStatus.REJECTED): Role.REGULATOR,
    (BatchStatus.APPROVED, BatchStatus.COMPLETED): Role.REGULATOR,
}

# Statuses at which each writing role may edit, in path order
DESIGNATED_STAGES: Dict[Role, Tuple[BatchStatus, ...]] = {
    Role.COLLECTOR: (BatchStatus.PENDING,),
    Role.PROCESSOR: (BatchStatus.PENDING, BatchStatus.PROCESSING),
    Role.LABORATORY: (BatchStatus.PROCESSED, BatchStatus.TESTING),
    Role.REGULATOR: (BatchStatus.TESTED, BatchStatus.APPROVED),
}

VIEWER_ROLES: FrozenSet[Role] = frozenset({Role.CONSUMER, Role.MANAGEMENT})

# Statuses a consumer may look up; management sees every status
CONSUMER_VISIBLE: FrozenSet[BatchStatus] = frozenset(
    {BatchStatus.APPROVED, BatchStatus.COMPLETED}
)

# Progress shown on tracking screens
STATUS_PROGRESS: Dict[BatchStatus, int] = {
    BatchStatus.PENDING: 10,
    BatchStatus.PROCESSING: 25,
    BatchStatus.PROCESSED: 50,
    BatchStatus.TESTING: 75,
    BatchStatus.TESTED: 85,
    BatchStatus.APPROVED: 100,
    BatchStatus.REJECTED: 0,
    BatchStatus.COMPLETED: 100,
}


@dataclass(frozen=True)
class StatusEntry:
    """One append-only record in a batch's status history."""

    status: BatchStatus
    timestamp: datetime
    actor_role: str
    notes: str = ""
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": format_timestamp(self.timestamp),
            "actorRole": self.actor_role,
            "notes": self.notes,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusEntry":
        return cls(
            status=BatchStatus(data["status"]),
            timestamp=parse_timestamp(data.get("timestamp"), utc_now()),
            actor_role=data.get("actorRole") or data.get("actor_role") or "",
            notes=data.get("notes") or "",
            sequence=int(data.get("sequence", 0)),
        )


@dataclass(frozen=True)
class Batch:
    """Workflow record for one traceable batch.

    The last history entry's status always equals ``status`` and history
    timestamps never decrease.
    """

    id: str
    qr_code: str
    status: BatchStatus = BatchStatus.PENDING
    status_history: Tuple[StatusEntry, ...] = ()
    resources: Tuple[str, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        qr_code: str,
        actor_role: str = Role.COLLECTOR.value,
        batch_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        notes: str = "Batch created",
        now: Optional[datetime] = None,
    ) -> "Batch":
        """Create a new pending batch with its first history entry."""
        now = now or utc_now()
        entry = StatusEntry(
            status=BatchStatus.PENDING,
            timestamp=now,
            actor_role=_role_value(actor_role),
            notes=notes,
            sequence=1,
        )
        return cls(
            id=batch_id or f"batch-{uuid.uuid4().hex[:12]}",
            qr_code=qr_code,
            status=BatchStatus.PENDING,
            status_history=(entry,),
            details=dict(details or {}),
            created_at=now,
            last_updated=now,
        )

    def with_resource(self, resource_id: str) -> "Batch":
        """Return a copy with ``resource_id`` appended to the resource list."""
        if resource_id in self.resources:
            return self
        return replace(self, resources=self.resources + (resource_id,), last_updated=utc_now())

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.details)
        data.update(
            {
                "id": self.id,
                "qrCode": self.qr_code,
                "status": self.status.value,
                "statusHistory": [entry.to_dict() for entry in self.status_history],
                "resources": list(self.resources),
                "createdAt": format_timestamp(self.created_at),
                "lastUpdated": format_timestamp(self.last_updated),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        known = {"id", "qrCode", "status", "statusHistory", "resources", "createdAt", "lastUpdated"}
        history = tuple(StatusEntry.from_dict(e) for e in data.get("statusHistory") or [])
        status = BatchStatus(data.get("status") or BatchStatus.PENDING.value)
        if not history:
            history = (StatusEntry(status=status, timestamp=utc_now(), actor_role="", sequence=1),)
        return cls(
            id=data.get("id") or data.get("qrCode", ""),
            qr_code=data.get("qrCode", ""),
            status=status,
            status_history=history,
            resources=tuple(data.get("resources") or []),
            details={k: v for k, v in data.items() if k not in known},
            created_at=parse_timestamp(data.get("createdAt"), utc_now()),
            last_updated=parse_timestamp(data.get("lastUpdated"), utc_now()),
        )


@dataclass
class AccessResult:
    """Outcome of a portal access check."""

    access_allowed: bool
    can_edit: bool = False
    has_been_processed: bool = False
    batch: Optional[Batch] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessAllowed": self.access_allowed,
            "canEdit": self.can_edit,
            "hasBeenProcessed": self.has_been_processed,
            "batch": self.batch.to_dict() if self.batch else None,
            "reason": self.reason,
        }


def _role_value(role: Any) -> str:
    return role.value if isinstance(role, Role) else str(role)


def _coerce_role(role: Any) -> Optional[Role]:
    try:
        return Role(_role_value(role))
    except ValueError:
        return None


class WorkflowStateMachine:
    """
    Owns status transition legality and per-role read/write gating.

    The machine is stateless apart from its options; batches are passed in
    and new batches are returned.
    """

    def __init__(self, allow_early_rejection: bool = False):
        """Initialize state machine.

        Args:
            allow_early_rejection: Let the regulator reject from any
                non-terminal status instead of only from ``tested``
        """
        self.allow_early_rejection = allow_early_rejection

    def allowed_transitions(self, status: BatchStatus) -> List[BatchStatus]:
        """Legal successors of ``status`` regardless of role."""
        successors = [to for (frm, to) in TRANSITIONS if frm == status]
        if (
            self.allow_early_rejection
            and not status.is_terminal
            and BatchStatus.REJECTED not in successors
        ):
            successors.append(BatchStatus.REJECTED)
        return successors

    def next_status(self, status: BatchStatus) -> Optional[BatchStatus]:
        """Next status on the canonical forward path (approval branch)."""
        successors = [s for s in self.allowed_transitions(status) if s != BatchStatus.REJECTED]
        return successors[0] if successors else None

    def transition_owner(self, current: BatchStatus, new: BatchStatus) -> Optional[Role]:
        owner = TRANSITIONS.get((current, new))
        if owner is None and new == BatchStatus.REJECTED and self.allow_early_rejection:
            if not current.is_terminal:
                return Role.REGULATOR
        return owner

    @staticmethod
    def progress(status: BatchStatus) -> int:
        return STATUS_PROGRESS[status]

    def check_access(
        self,
        role: Any,
        batch: Optional[Batch],
        access_type: Any = AccessType.EDIT,
    ) -> AccessResult:
        """Decide what ``role`` may do with ``batch`` at its current status.

        Args:
            role: Acting role
            batch: Batch looked up by QR code (None if unknown)
            access_type: "view" or "edit"

        Returns:
            AccessResult; never raises
        """
        resolved = _coerce_role(role)
        if resolved is None:
            return AccessResult(access_allowed=False, reason=f"Unknown role: {_role_value(role)}")
        if batch is None:
            return AccessResult(access_allowed=False, reason="Batch not found")

        try:
            access = AccessType(access_type.value if isinstance(access_type, AccessType) else access_type)
        except ValueError:
            return AccessResult(access_allowed=False, reason=f"Invalid access type: {access_type}")

        if resolved in VIEWER_ROLES:
            if resolved == Role.CONSUMER and batch.status not in CONSUMER_VISIBLE:
                return AccessResult(
                    access_allowed=False,
                    reason=(
                        f"Batch {batch.qr_code} is {batch.status.value}; "
                        f"consumers only see approved batches"
                    ),
                )
            return AccessResult(
                access_allowed=True,
                can_edit=False,
                batch=batch,
                reason=f"{resolved.value} has view-only access",
            )

        stage = DESIGNATED_STAGES[resolved]
        rank = batch.status.rank
        if (
            resolved == Role.REGULATOR
            and self.allow_early_rejection
            and rank < stage[0].rank
            and not batch.status.is_terminal
        ):
            return AccessResult(
                access_allowed=True,
                can_edit=access == AccessType.EDIT,
                batch=batch,
                reason=f"Batch {batch.qr_code} is {batch.status.value}; early rejection permitted",
            )
        if rank < stage[0].rank:
            return AccessResult(
                access_allowed=False,
                reason=(
                    f"Batch {batch.qr_code} is {batch.status.value}; "
                    f"not yet ready for this role ({resolved.value})"
                ),
            )
        if batch.status in stage:
            return AccessResult(
                access_allowed=True,
                can_edit=access == AccessType.EDIT,
                batch=batch,
                reason="Edit access granted" if access == AccessType.EDIT else "View access granted",
            )
        return AccessResult(
            access_allowed=True,
            can_edit=False,
            has_been_processed=True,
            batch=batch,
            reason=(
                f"Batch {batch.qr_code} is already {batch.status.value}; "
                f"view-only for {resolved.value}"
            ),
        )

    def advance(
        self,
        batch: Batch,
        new_status: Any,
        actor_role: Any,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Batch:
        """Move ``batch`` to ``new_status`` on behalf of ``actor_role``.

        Args:
            batch: Current batch record
            new_status: Requested status
            actor_role: Role performing the write
            notes: Free-text note stored in the history entry
            now: Override for the entry timestamp

        Returns:
            New Batch with one more history entry

        Raises:
            IllegalTransition: If new_status is not a legal successor
            AccessDenied: If actor_role does not own the transition
        """
        try:
            target = BatchStatus(new_status.value if isinstance(new_status, BatchStatus) else new_status)
        except ValueError:
            raise IllegalTransition(f"Unknown status: {new_status}")

        role = _coerce_role(actor_role)
        if target not in self.allowed_transitions(batch.status):
            raise IllegalTransition(
                f"Cannot move batch {batch.qr_code} from {batch.status.value} to {target.value}"
            )

        owner = self.transition_owner(batch.status, target)
        if role is None or role != owner:
            raise AccessDenied(
                f"Only {owner.value if owner else 'nobody'} may move batch {batch.qr_code} "
                f"from {batch.status.value} to {target.value}"
            )

        last = batch.status_history[-1] if batch.status_history else None
        timestamp = now or utc_now()
        if last and timestamp < last.timestamp:
            # Clock skew between clients must not reorder history
            timestamp = last.timestamp

        entry = StatusEntry(
            status=target,
            timestamp=timestamp,
            actor_role=role.value,
            notes=notes,
            sequence=(last.sequence if last else 0) + 1,
        )

        logger.info(
            f"Batch {batch.qr_code}: {batch.status.value} -> {target.value} by {role.value}"
        )

        return replace(
            batch,
            status=target,
            status_history=batch.status_history + (entry,),
            last_updated=timestamp,
        )


__all__ = [
    "WorkflowError",
    "AccessDenied",
    "IllegalTransition",
    "BatchNotFound",
    "BatchStatus",
    "Role",
    "AccessType",
    "StatusEntry",
    "Batch",
    "AccessResult",
    "WorkflowStateMachine",
    "TRANSITIONS",
    "DESIGNATED_STAGES",
    "STATUS_PROGRESS",
]
