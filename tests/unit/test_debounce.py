"""Tests for sync/debounce.py."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from klettrack_sync.sync.debounce import SyncDebouncer


class TestSyncDebouncer:
    async def test_runs_after_delay(self) -> None:
        debouncer = SyncDebouncer()
        operation = AsyncMock()

        debouncer.schedule(0.01, operation)
        assert debouncer.is_pending
        await debouncer.wait()

        operation.assert_awaited_once()
        assert not debouncer.is_pending

    async def test_reschedule_replaces_pending(self) -> None:
        debouncer = SyncDebouncer()
        first = AsyncMock()
        second = AsyncMock()

        debouncer.schedule(0.05, first)
        debouncer.schedule(0.01, second)
        await debouncer.wait()
        await asyncio.sleep(0.06)

        first.assert_not_awaited()
        second.assert_awaited_once()

    async def test_cancel(self) -> None:
        debouncer = SyncDebouncer()
        operation = AsyncMock()

        debouncer.schedule(0.01, operation)
        debouncer.cancel()
        await asyncio.sleep(0.02)

        operation.assert_not_awaited()
        assert not debouncer.is_pending

    async def test_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        debouncer = SyncDebouncer()
        operation = AsyncMock(side_effect=RuntimeError("offline"))

        debouncer.schedule(0, operation)
        await debouncer.wait()

        assert "Debounced sync operation failed" in caplog.text
