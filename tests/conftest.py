"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.storage.sqlite_state import SQLiteSyncState


@pytest.fixture
def store() -> EntityRecordStore:
    return EntityRecordStore()


@pytest.fixture
def queue() -> MutationQueue:
    return MutationQueue()


@pytest_asyncio.fixture
async def sqlite_state(tmp_path: Path) -> AsyncGenerator[SQLiteSyncState, None]:
    """Initialized SQLite state in a temp directory."""
    state = SQLiteSyncState(tmp_path / "sync.db")
    await state.initialize()
    yield state
    await state.close()
