"""Storage backends for checkpoints and the cross-run store."""

from stepgraph.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)
from stepgraph.storage.kv_store import InMemoryKeyValueStore, KeyValueStore, StoreItem

__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "StoreItem",
]
