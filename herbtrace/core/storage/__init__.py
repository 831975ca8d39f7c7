"""
Storage backends for batch, resource and sync queue data.

Provides JSON file implementations:
- JSONBatchStorage: batch collection + resources (BatchStore protocol)
- JSONQueueStore: durable sync queue (QueueStore protocol)

Usage:
    from herbtrace.core.storage import create_storage

    storage, queue_store = create_storage("json", {"path": "./data"})
"""

from pathlib import Path

from .json_storage import JSONBatchStorage, JSONQueueStore

__all__ = [
    "JSONBatchStorage",
    "JSONQueueStore",
    "create_storage",
]


def create_storage(backend: str, config: dict):
    """Factory function to create storage backends.

    Args:
        backend: Storage type ("json")
        config: Backend-specific configuration

    Returns:
        (batch storage, queue store) tuple

    Raises:
        ValueError: If backend type is unknown
    """
    if backend == "json":
        data_dir = Path(config.get("path", "./data"))
        batch_storage = JSONBatchStorage(data_dir=data_dir)
        queue_store = JSONQueueStore(
            Path(config.get("queue_file") or data_dir / "sync_queue.json")
        )
        return batch_storage, queue_store
    else:
        raise ValueError(f"Unknown storage backend: {backend}")
