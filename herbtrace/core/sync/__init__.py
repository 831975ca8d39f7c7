"""
Offline-resilient sync queue.

Submissions are persisted locally the moment they are enqueued and delivered
to the authoritative store when connectivity allows. Each item is retried
with a linearly growing delay until it is accepted or its attempt budget is
spent; failed items stay in the queue until explicitly reset.

A drain is single-flight: a second drain requested while one is running is a
no-op, and the pending items it would have sent are picked up by the next
retry, reconnect or periodic tick.

Usage:
    from herbtrace.core.sync import SyncQueue
    from herbtrace.core.sync.transport import UrllibTransport

    queue = SyncQueue(store, UrllibTransport("https://store.example.org"))
    item_id = queue.enqueue(payload, "collection")
    await queue.drain()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from herbtrace.core.protocols import QueueStore, Transport, TransportError
from herbtrace.core.sync.payload import get_device_info

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0
DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_ATTEMPT_TIMEOUT = 10.0

# Candidate endpoints per item type, tried in order until one accepts
DEFAULT_ENDPOINTS: Dict[str, List[str]] = {
    "collection": [
        "/api/collection/events",
        "/api/collection/submit",
        "/api/batches",
    ],
    "processing": ["/api/processing/events"],
    "test": ["/api/lab/events"],
    "decision": ["/api/regulator/decisions"],
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncItem:
    """One queued submission as persisted in the queue file."""

    id: int
    type: str
    data: Dict[str, Any]
    timestamp: str
    attempts: int = 0
    status: str = SyncItemStatus.PENDING.value
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    last_attempt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "status": self.status,
        }
        if self.completed_at is not None:
            record["completedAt"] = self.completed_at
        if self.last_error is not None:
            record["lastError"] = self.last_error
        if self.last_attempt is not None:
            record["lastAttempt"] = self.last_attempt
        return record

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncItem":
        return cls(
            id=int(data["id"]),
            type=data.get("type", "collection"),
            data=data.get("data") or {},
            timestamp=data.get("timestamp", ""),
            attempts=int(data.get("attempts", 0)),
            status=data.get("status", SyncItemStatus.PENDING.value),
            completed_at=data.get("completedAt"),
            last_error=data.get("lastError"),
            last_attempt=data.get("lastAttempt"),
        )


@dataclass(frozen=True)
class SyncStatus:
    """Point-in-time queue counts."""

    total: int
    pending: int
    completed: int
    failed: int
    is_online: bool
    drain_in_progress: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "completed": self.completed,
            "failed": self.failed,
            "isOnline": self.is_online,
            "drainInProgress": self.drain_in_progress,
        }


class SyncQueue:
    """
    Durable FIFO of submissions awaiting delivery.

    All queue state lives in the QueueStore. Every mutation reloads the
    stored items, changes one item and writes them back without awaiting in
    between, so callbacks that interleave on the event loop never persist a
    stale copy.
    """

    def __init__(
        self,
        store: QueueStore,
        transport: Transport,
        endpoints: Optional[Dict[str, Sequence[str]]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        source: str = "herbtrace",
        is_online: bool = True,
        auto_drain: bool = True,
        on_completed: Optional[Callable[[SyncItem, str], None]] = None,
        on_failed: Optional[Callable[[SyncItem], None]] = None,
    ):
        """Initialize sync queue.

        Args:
            store: Persistence for queue items
            transport: Delivers payloads to the authoritative store
            endpoints: Candidate endpoints per item type (default: DEFAULT_ENDPOINTS)
            max_attempts: Attempts before an item is marked failed
            base_delay: Retry delay in seconds, multiplied by the attempt count
            sync_interval: Seconds between periodic drains once started
            attempt_timeout: Seconds before one delivery attempt is abandoned
            source: Value stamped as ``metadata.source`` on every payload
            is_online: Initial connectivity state
            auto_drain: Schedule a drain after enqueue when a loop is running
            on_completed: Called with the item and accepting endpoint
            on_failed: Called with the item once retries are exhausted
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._store = store
        self._transport = transport
        self.endpoints = {k: list(v) for k, v in (endpoints or DEFAULT_ENDPOINTS).items()}
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sync_interval = sync_interval
        self.attempt_timeout = attempt_timeout
        self.source = source
        self.is_online = is_online
        self.auto_drain = auto_drain
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.device_info = get_device_info()

        self._drain_in_progress = False
        self._last_id = 0
        self._retry_handles: List[asyncio.TimerHandle] = []
        self._tasks: set = set()
        self._timer_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Queue contents
    # ------------------------------------------------------------------
    def items(self) -> List[SyncItem]:
        """All queued items in FIFO order."""
        return [SyncItem.from_dict(r) for r in self._store.load()]

    def get_item(self, item_id: int) -> Optional[SyncItem]:
        for record in self._store.load():
            if record.get("id") == item_id:
                return SyncItem.from_dict(record)
        return None

    def has_pending(self) -> bool:
        return any(
            r.get("status") == SyncItemStatus.PENDING.value for r in self._store.load()
        )

    def enqueue(self, data: Dict[str, Any], item_type: str = "collection") -> int:
        """Persist a submission for delivery.

        The item is durable before this returns. Ids are strictly increasing
        within the queue, including across restarts.

        Args:
            data: JSON-serializable payload
            item_type: Endpoint group for delivery

        Returns:
            Queue item id
        """
        if item_type not in self.endpoints:
            raise ValueError(f"No sync endpoints configured for type: {item_type}")

        records = self._store.load()
        highest = max((int(r.get("id", 0)) for r in records), default=0)
        item_id = max(highest + 1, self._last_id + 1, int(time.time() * 1000))
        self._last_id = item_id

        item = SyncItem(id=item_id, type=item_type, data=data, timestamp=_now_iso())
        records.append(item.to_dict())
        self._store.save(records)
        logger.info(f"Queued {item_type} submission {item_id}")

        if self.is_online and self.auto_drain:
            self._schedule_drain("enqueue")
        return item_id

    def status(self) -> SyncStatus:
        """Current counts. Reads only; never triggers delivery."""
        records = self._store.load()
        counts = {s.value: 0 for s in SyncItemStatus}
        for record in records:
            status = record.get("status")
            if status in counts:
                counts[status] += 1
        return SyncStatus(
            total=len(records),
            pending=counts[SyncItemStatus.PENDING.value],
            completed=counts[SyncItemStatus.COMPLETED.value],
            failed=counts[SyncItemStatus.FAILED.value],
            is_online=self.is_online,
            drain_in_progress=self._drain_in_progress,
        )

    def clear_completed(self) -> int:
        """Drop completed items. Returns the number removed."""
        records = self._store.load()
        kept = [r for r in records if r.get("status") != SyncItemStatus.COMPLETED.value]
        removed = len(records) - len(kept)
        if removed:
            self._store.save(kept)
            logger.info(f"Cleared {removed} completed sync items")
        return removed

    def retry_failed(self) -> int:
        """Reset failed items to pending with a fresh attempt budget."""
        records = self._store.load()
        reset = 0
        for record in records:
            if record.get("status") == SyncItemStatus.FAILED.value:
                record["status"] = SyncItemStatus.PENDING.value
                record["attempts"] = 0
                record.pop("lastError", None)
                reset += 1
        if reset:
            self._store.save(records)
            logger.info(f"Reset {reset} failed sync items to pending")
        return reset

    async def force_sync_all(self) -> int:
        """Reset failed items, then drain.

        Returns:
            Number of items delivered by this drain
        """
        self.retry_failed()
        return await self.drain()

    # ------------------------------------------------------------------
    # Connectivity and timers
    # ------------------------------------------------------------------
    def set_online(self, online: bool) -> None:
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            logger.info("Connection restored, syncing queued submissions")
            self._schedule_drain("reconnect")
        elif not online and was_online:
            logger.info("Connection lost, submissions will be queued")

    def start(self) -> None:
        """Start the periodic drain timer on the running loop."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.get_running_loop().create_task(self._periodic())
        logger.info(f"Sync timer started (every {self.sync_interval}s)")

    def stop(self) -> None:
        """Cancel the periodic timer, scheduled retries and pending drains."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()
        for task in list(self._tasks):
            task.cancel()
        logger.debug("Sync timers stopped")

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if self.is_online and self.has_pending():
                await self.drain()

    def _schedule_drain(self, reason: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; drain on {reason} deferred")
            return None
        task = loop.create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_retry(self, attempts: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        delay = self.base_delay * attempts
        handle = loop.call_later(delay, self._retry_due)
        self._retry_handles.append(handle)

    def _retry_due(self) -> None:
        self._retry_handles = [h for h in self._retry_handles if not h.cancelled()]
        if self.is_online:
            self._schedule_drain("retry")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def drain(self) -> int:
        """Attempt delivery of every pending item, oldest first.

        Returns:
            Number of items accepted during this drain (0 if another drain
            was already running)
        """
        if self._drain_in_progress:
            logger.debug("Sync drain already in progress")
            return 0
        self._drain_in_progress = True
        try:
            pending_ids = [
                r["id"]
                for r in self._store.load()
                if r.get("status") == SyncItemStatus.PENDING.value
            ]
            if not pending_ids:
                return 0

            logger.info(f"Processing sync queue: {len(pending_ids)} pending items")
            delivered = 0
            for item_id in pending_ids:
                if not self.is_online:
                    logger.info("Went offline mid-drain, stopping")
                    break
                # Reload so changes made since the drain began are respected
                item = self.get_item(item_id)
                if item is None or item.status != SyncItemStatus.PENDING.value:
                    continue
                if await self._deliver(item):
                    delivered += 1
            return delivered
        finally:
            self._drain_in_progress = False

    def _stamp(self, item: SyncItem) -> Dict[str, Any]:
        payload = dict(item.data)
        metadata = dict(payload.get("metadata") or {})
        metadata.update(
            {
                "source": self.source,
                "deviceInfo": self.device_info,
                "networkStatus": "online" if self.is_online else "offline",
                "syncAttempt": item.attempts + 1,
            }
        )
        payload["metadata"] = metadata
        return payload

    async def _deliver(self, item: SyncItem) -> bool:
        payload = self._stamp(item)
        last_error = "No endpoint accepted the submission"

        for endpoint in self.endpoints.get(item.type, []):
            try:
                response = await asyncio.wait_for(
                    self._transport.post(endpoint, payload),
                    timeout=self.attempt_timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"{endpoint} timed out after {self.attempt_timeout}s"
                logger.warning(f"Sync item {item.id}: {last_error}")
                continue
            except TransportError as e:
                last_error = f"{endpoint}: {e}"
                logger.warning(f"Sync item {item.id}: {last_error}")
                continue
            except Exception as e:
                # A misbehaving transport still costs the item one attempt
                last_error = f"{endpoint}: unexpected {type(e).__name__}: {e}"
                logger.error(f"Sync item {item.id}: {last_error}", exc_info=True)
                continue

            if isinstance(response, dict) and response.get("success") is True:
                self._mark_completed(item.id, endpoint)
                return True

            message = response.get("message") if isinstance(response, dict) else None
            last_error = f"{endpoint} rejected submission: {message or 'no reason given'}"
            logger.warning(f"Sync item {item.id}: {last_error}")

        self._record_failure(item.id, last_error)
        return False

    def _update_record(
        self, item_id: int, mutate: Callable[[Dict[str, Any]], None]
    ) -> Optional[SyncItem]:
        records = self._store.load()
        for record in records:
            if record.get("id") == item_id:
                mutate(record)
                self._store.save(records)
                return SyncItem.from_dict(record)
        logger.warning(f"Sync item {item_id} vanished from queue")
        return None

    def _mark_completed(self, item_id: int, endpoint: str) -> None:
        def _complete(record: Dict[str, Any]) -> None:
            record["attempts"] = int(record.get("attempts", 0)) + 1
            record["status"] = SyncItemStatus.COMPLETED.value
            record["completedAt"] = _now_iso()
            record["lastAttempt"] = record["completedAt"]
            record.pop("lastError", None)

        item = self._update_record(item_id, _complete)
        if item is None:
            return
        logger.info(f"Sync item {item_id} delivered via {endpoint}")
        if self.on_completed:
            try:
                self.on_completed(item, endpoint)
            except Exception as e:
                logger.error(f"Sync completion handler error: {e}")

    def _record_failure(self, item_id: int, error: str) -> None:
        def _fail(record: Dict[str, Any]) -> None:
            record["attempts"] = int(record.get("attempts", 0)) + 1
            record["lastError"] = error
            record["lastAttempt"] = _now_iso()
            if record["attempts"] >= self.max_attempts:
                record["status"] = SyncItemStatus.FAILED.value

        item = self._update_record(item_id, _fail)
        if item is None:
            return

        if item.status == SyncItemStatus.FAILED.value:
            logger.error(f"Sync item {item_id} failed after {item.attempts} attempts: {error}")
            if self.on_failed:
                try:
                    self.on_failed(item)
                except Exception as e:
                    logger.error(f"Sync failure handler error: {e}")
        else:
            logger.info(
                f"Sync item {item_id} attempt {item.attempts}/{self.max_attempts} failed, "
                f"retrying in {self.base_delay * item.attempts}s"
            )
            self._schedule_retry(item.attempts)


__all__ = [
    "DEFAULT_ENDPOINTS",
    "SyncItem",
    "SyncItemStatus",
    "SyncQueue",
    "SyncStatus",
]
