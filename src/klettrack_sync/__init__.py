"""Klettrack sync - offline-first synchronization of training data."""

from klettrack_sync.core.entities import EntityKind, entity_label
from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.storage.sqlite_state import SQLiteSyncState
from klettrack_sync.sync.api_client import SyncAPIClient
from klettrack_sync.sync.conflicts import ConflictEntry, ConflictResolver, Resolution
from klettrack_sync.sync.errors import SyncError
from klettrack_sync.sync.orchestrator import SyncOrchestrator, SyncPhase

__version__ = "0.1.0"

__all__ = [
    # Entities
    "EntityKind",
    "entity_label",
    # Local state
    "EntityRecordStore",
    "MutationQueue",
    "SQLiteSyncState",
    # Sync
    "SyncAPIClient",
    "SyncOrchestrator",
    "SyncPhase",
    "SyncError",
    # Conflicts
    "ConflictEntry",
    "ConflictResolver",
    "Resolution",
    # Version
    "__version__",
]
