"""
Protocol interfaces for the traceability core.

These protocols define the contracts that pluggable collaborators must
implement, so the sync engine and service can run against files, memory or
remote services interchangeably.

Uses typing.Protocol for structural subtyping - implementations don't need
to explicitly inherit, they just need to implement the required methods.

## Transport Protocol

Required methods:
- `async post(endpoint: str, payload: Dict) -> Dict` - Submit one payload

Implementation notes:
- Raise TransportError for unreachable hosts, non-2xx responses and
  undecodable bodies
- Return the decoded JSON body; callers treat `success != True` as failure
- Must not retry internally; the sync queue owns retry policy

## QueueStore Protocol

Required methods:
- `load() -> List[Dict]` - Latest persisted queue items
- `save(items: List[Dict]) -> None` - Replace the persisted queue

## BatchStore Protocol

Required methods:
- `get_all_batches() -> List[Batch]`
- `get_batch_by_qr_code(qr_code: str) -> Optional[Batch]`
- `save_batch(batch: Batch) -> List[Batch]` - Upsert, returns full collection
- `put_resource(resource: Resource) -> None`
- `get_resource(resource_id: str) -> Optional[Resource]`
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from herbtrace.core.resources import Resource
from herbtrace.core.workflow import Batch


class TransportError(Exception):
    """A submission attempt failed before the store accepted it."""


@runtime_checkable
class Transport(Protocol):
    """Protocol for delivering payloads to the authoritative store."""

    async def post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit payload to endpoint.

        Args:
            endpoint: Path relative to the store's base URL
            payload: JSON-serializable body

        Returns:
            Decoded response body
        """
        ...


@runtime_checkable
class QueueStore(Protocol):
    """Protocol for durable sync queue persistence."""

    def load(self) -> List[Dict[str, Any]]:
        """Read the latest persisted queue."""
        ...

    def save(self, items: List[Dict[str, Any]]) -> None:
        """Persist the whole queue."""
        ...


@runtime_checkable
class BatchStore(Protocol):
    """Protocol for batch and resource persistence."""

    def get_all_batches(self) -> List[Batch]:
        ...

    def get_batch_by_qr_code(self, qr_code: str) -> Optional[Batch]:
        ...

    def save_batch(self, batch: Batch) -> List[Batch]:
        """Insert or replace batch; returns the full collection after write."""
        ...

    def put_resource(self, resource: Resource) -> None:
        ...

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        ...

    def get_resources(self, resource_ids: List[str]) -> List[Resource]:
        """Load resources in the given order, skipping unknown ids."""
        ...


__all__ = [
    "TransportError",
    "Transport",
    "QueueStore",
    "BatchStore",
]
