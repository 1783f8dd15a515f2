"""Snapshot persistence and reconciliation.

Provides whole-collection storage over local JSON files or an HTTP blob
store, and the reconciler that merges each run into it.
"""

from .backends import (
    COLLECTIONS,
    MARKETPLACES,
    PLUGINS,
    HttpBlobStore,
    JsonFileStore,
    MemoryStore,
    SnapshotStore,
    get_store,
)
from .lock import RunLock
from .reconciler import ReconcileResult, Reconciler, Snapshot

__all__ = [
    "COLLECTIONS",
    "MARKETPLACES",
    "PLUGINS",
    "HttpBlobStore",
    "JsonFileStore",
    "MemoryStore",
    "SnapshotStore",
    "get_store",
    "RunLock",
    "ReconcileResult",
    "Reconciler",
    "Snapshot",
]
