"""
Event notification and audit trail for batch workflows.

Two pieces:
- BatchNotifier: in-process publish/subscribe channel that delivers the full
  batch collection to every open session whenever it changes
- EventStore: append-only JSON Lines log of workflow and sync events for
  audit and replay

Event Types:
- BatchCreated: New batch registered by a collector
- StatusChanged: Workflow status transition
- ResourceRecorded: Collection/processing/test resource attached to a batch
- SyncItemCompleted: Queued submission accepted by the authoritative store
- SyncItemFailed: Queued submission exhausted its retry budget

Usage:
    from herbtrace.core.events import BatchNotifier, EventStore, StatusChanged

    notifier = BatchNotifier()
    unsubscribe = notifier.subscribe(lambda change: print(len(change.batches)))

    store = EventStore(Path("./events.jsonl"))
    store.append(StatusChanged(qr_code="QR_COL_001", old_status="pending",
                               new_status="processing", actor="processor"))
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Type
import itertools
import json
import logging
import uuid

logger = logging.getLogger(__name__)


# ============================================================================
# Cross-session notification
# ============================================================================


@dataclass(frozen=True)
class BatchCollectionChanged:
    """Notification carrying the full batch collection after a change."""

    batches: Sequence[Any]
    sequence: int
    reason: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


BatchListener = Callable[[BatchCollectionChanged], None]


class BatchNotifier:
    """
    Publish/subscribe channel for batch collection changes.

    Delivery is best-effort and at-most-once per change. There is no replay:
    a session that subscribes after a publish must fetch state explicitly.
    """

    def __init__(self):
        self._subscribers: Dict[int, BatchListener] = {}
        self._ids = itertools.count(1)
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: BatchListener) -> Callable[[], None]:
        """Register callback for future changes.

        Args:
            callback: Invoked with a BatchCollectionChanged

        Returns:
            Function that removes the subscription (safe to call twice)
        """
        token = next(self._ids)
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, batches: Sequence[Any], reason: str = "") -> BatchCollectionChanged:
        """Deliver ``batches`` to every currently subscribed callback."""
        self._sequence += 1
        change = BatchCollectionChanged(
            batches=tuple(batches), sequence=self._sequence, reason=reason
        )

        # Snapshot so callbacks may unsubscribe during delivery
        for callback in list(self._subscribers.values()):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"Batch subscriber error: {e}")

        logger.debug(
            f"Published batch change #{change.sequence} to {len(self._subscribers)} subscribers"
        )
        return change


# ============================================================================
# Audit event log
# ============================================================================


class EventType(str, Enum):
    """Types of events in the batch workflow."""

    BATCH_CREATED = "batch_created"
    STATUS_CHANGED = "status_changed"
    RESOURCE_RECORDED = "resource_recorded"
    SYNC_ITEM_COMPLETED = "sync_item_completed"
    SYNC_ITEM_FAILED = "sync_item_failed"


@dataclass
class Event:
    """Base event class with common fields."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str = field(default="")
    qr_code: Optional[str] = None
    actor: str = "system"  # Role or subsystem that caused the event
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Create event from dictionary."""
        event_type = data.get("event_type", "")

        # Route to specific event class
        event_class = EVENT_REGISTRY.get(event_type, Event)
        return event_class(**{k: v for k, v in data.items() if k in event_class.__dataclass_fields__})


@dataclass
class BatchCreated(Event):
    """Event: New batch registered."""

    event_type: str = field(default=EventType.BATCH_CREATED.value)
    batch_id: str = ""
    initial_status: str = "pending"


@dataclass
class StatusChanged(Event):
    """Event: Workflow status transition."""

    event_type: str = field(default=EventType.STATUS_CHANGED.value)
    old_status: str = ""
    new_status: str = ""
    notes: str = ""


@dataclass
class ResourceRecorded(Event):
    """Event: Resource attached to a batch."""

    event_type: str = field(default=EventType.RESOURCE_RECORDED.value)
    resource_id: str = ""
    resource_kind: str = ""


@dataclass
class SyncItemCompleted(Event):
    """Event: Queued submission accepted upstream."""

    event_type: str = field(default=EventType.SYNC_ITEM_COMPLETED.value)
    item_id: int = 0
    endpoint: str = ""
    attempts: int = 0


@dataclass
class SyncItemFailed(Event):
    """Event: Queued submission exhausted retries."""

    event_type: str = field(default=EventType.SYNC_ITEM_FAILED.value)
    item_id: int = 0
    attempts: int = 0
    last_error: str = ""


# Registry mapping event type strings to classes
EVENT_REGISTRY: Dict[str, Type[Event]] = {
    EventType.BATCH_CREATED.value: BatchCreated,
    EventType.STATUS_CHANGED.value: StatusChanged,
    EventType.RESOURCE_RECORDED.value: ResourceRecorded,
    EventType.SYNC_ITEM_COMPLETED.value: SyncItemCompleted,
    EventType.SYNC_ITEM_FAILED.value: SyncItemFailed,
}


class EventStore:
    """
    Append-only event log with JSON Lines storage.

    Features:
    - Durable append-only storage
    - Event replay by QR code, time range, or type
    - Pluggable event handlers for side effects
    """

    def __init__(self, log_path: Path):
        """Initialize event store.

        Args:
            log_path: Path to JSONL event log file
        """
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._handlers: Dict[str, List[Callable[[Event], None]]] = {}

    def append(self, event: Event) -> None:
        """Append event to log and notify handlers."""
        with open(self.log_path, "a") as f:
            f.write(json.dumps(event.to_dict()) + "\n")

        logger.debug(f"Event appended: {event.event_type} for {event.qr_code}")

        self._notify_handlers(event)

    def replay(
        self,
        qr_code: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Iterator[Event]:
        """Replay events with optional filters.

        Args:
            qr_code: Filter by batch QR code
            event_type: Filter by event type
            since: Filter events after this time
            until: Filter events before this time

        Yields:
            Matching events in append order
        """
        if not self.log_path.exists():
            return

        with open(self.log_path) as f:
            for line in f:
                if not line.strip():
                    continue

                try:
                    data = json.loads(line)
                    event = Event.from_dict(data)

                    if qr_code and event.qr_code != qr_code:
                        continue
                    if event_type and event.event_type != event_type:
                        continue
                    if since or until:
                        event_time = datetime.fromisoformat(event.timestamp)
                        if since and event_time < since:
                            continue
                        if until and event_time > until:
                            continue

                    yield event

                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(f"Failed to parse event: {e}")

    def get_batch_history(self, qr_code: str) -> List[Event]:
        """Complete event history for one batch."""
        return list(self.replay(qr_code=qr_code))

    def count_events(self, event_type: Optional[str] = None) -> int:
        return sum(1 for _ in self.replay(event_type=event_type))

    def register_handler(
        self,
        event_type: str,
        handler: Callable[[Event], None],
    ) -> None:
        """Register handler for event type."""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def _notify_handlers(self, event: Event) -> None:
        """Notify registered handlers of event."""
        handlers = self._handlers.get(event.event_type, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error: {e}")


__all__ = [
    # Notification
    "BatchCollectionChanged",
    "BatchListener",
    "BatchNotifier",
    # Event types
    "Event",
    "EventType",
    "BatchCreated",
    "StatusChanged",
    "ResourceRecorded",
    "SyncItemCompleted",
    "SyncItemFailed",
    "EVENT_REGISTRY",
    # Store
    "EventStore",
]
