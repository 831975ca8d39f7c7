"""
JSON file-based storage backends.

Persists client-local state in JSON files:
- Batches: batches.json (array of batch records)
- Resources: resources.json (resource id -> record)
- Sync queue: sync_queue.json (array of queue items)

Every mutation re-reads the file immediately before writing it back, so
interleaved callbacks never overwrite each other's updates with stale
copies. Writes go to a temporary file that replaces the original in one
step.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from herbtrace.core.resources import Resource, ResourceShapeError, construct_resource
from herbtrace.core.workflow import Batch

logger = logging.getLogger(__name__)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt JSON in {path}: {e}")
        raise


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


class JSONQueueStore:
    """Durable sync queue persisted as a JSON array.

    Implements the QueueStore protocol.
    """

    def __init__(self, path: Path):
        """Initialize queue store.

        Args:
            path: Path to the queue JSON file
        """
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        items = _read_json(self.path, [])
        if not isinstance(items, list):
            logger.warning(f"Ignoring malformed sync queue in {self.path}")
            return []
        return items

    def save(self, items: List[Dict[str, Any]]) -> None:
        _write_json(self.path, items)
        logger.debug(f"Saved sync queue ({len(items)} items) to {self.path}")


class JSONBatchStorage:
    """JSON file-based storage for batches and their resources.

    Implements the BatchStore protocol.

    The storage separates concerns:
    - Batch records (mutable workflow state) live in batches.json
    - Resources (immutable once recorded) live in resources.json
    """

    def __init__(
        self,
        data_dir: Path,
        batches_file: Optional[Path] = None,
        resources_file: Optional[Path] = None,
    ):
        """Initialize JSON storage.

        Args:
            data_dir: Directory for data files
            batches_file: Path to batch collection (default: data_dir/batches.json)
            resources_file: Path to resources (default: data_dir/resources.json)
        """
        self.data_dir = Path(data_dir)
        self.batches_file = Path(batches_file) if batches_file else self.data_dir / "batches.json"
        self.resources_file = (
            Path(resources_file) if resources_file else self.data_dir / "resources.json"
        )

        self.data_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def _load_batch_records(self) -> List[Dict[str, Any]]:
        records = _read_json(self.batches_file, [])
        return records if isinstance(records, list) else []

    def get_all_batches(self) -> List[Batch]:
        """Get every batch, in insertion order."""
        batches = []
        for record in self._load_batch_records():
            try:
                batches.append(Batch.from_dict(record))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed batch record: {e}")
        return batches

    def get_batch_by_qr_code(self, qr_code: str) -> Optional[Batch]:
        for batch in self.get_all_batches():
            if batch.qr_code == qr_code:
                return batch
        return None

    def save_batch(self, batch: Batch) -> List[Batch]:
        """Insert or replace a batch keyed by QR code."""
        return self.update_batches(lambda records: self._upsert(records, batch))

    def update_batches(
        self, mutate: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]
    ) -> List[Batch]:
        """Read-modify-write the batch collection.

        Args:
            mutate: Receives the latest persisted records, returns new records

        Returns:
            Batch collection as written
        """
        records = mutate(self._load_batch_records())
        _write_json(self.batches_file, records)
        return [Batch.from_dict(r) for r in records]

    @staticmethod
    def _upsert(records: List[Dict[str, Any]], batch: Batch) -> List[Dict[str, Any]]:
        data = batch.to_dict()
        for i, record in enumerate(records):
            if record.get("qrCode") == batch.qr_code:
                records[i] = data
                break
        else:
            records.append(data)
        return records

    def delete_batch(self, qr_code: str) -> bool:
        """Delete batch. Returns True if existed."""
        removed = []

        def _remove(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            kept = [r for r in records if r.get("qrCode") != qr_code]
            removed.append(len(kept) != len(records))
            return kept

        self.update_batches(_remove)
        return removed[0]

    def count(self, status: Optional[str] = None) -> int:
        records = self._load_batch_records()
        if not status:
            return len(records)
        return sum(1 for r in records if r.get("status") == status)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def _load_resource_records(self) -> Dict[str, Dict[str, Any]]:
        records = _read_json(self.resources_file, {})
        return records if isinstance(records, dict) else {}

    def put_resource(self, resource: Resource) -> None:
        """Store a resource. Existing ids are never overwritten."""
        records = self._load_resource_records()
        if resource.id in records:
            logger.debug(f"Resource {resource.id} already stored")
            return
        records[resource.id] = resource.to_dict()
        _write_json(self.resources_file, records)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        record = self._load_resource_records().get(resource_id)
        if record is None:
            return None
        try:
            return construct_resource(record)
        except ResourceShapeError as e:
            logger.warning(f"Failed to load resource {resource_id}: {e}")
            return None

    def get_resources(self, resource_ids: List[str]) -> List[Resource]:
        """Load resources in the given order, skipping missing ids."""
        records = self._load_resource_records()
        resources = []
        for resource_id in resource_ids:
            record = records.get(resource_id)
            if record is None:
                logger.warning(f"Resource {resource_id} referenced but not stored")
                continue
            resources.append(construct_resource(record))
        return resources
