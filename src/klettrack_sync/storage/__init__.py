"""Local state: entity records, the mutation queue and their persistence."""

from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.storage.sqlite_state import PersistedSyncState, SQLiteSyncState

__all__ = [
    "EntityRecordStore",
    "MutationQueue",
    "PersistedSyncState",
    "SQLiteSyncState",
]
