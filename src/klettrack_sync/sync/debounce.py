"""Debounced scheduling of async callbacks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class SyncDebouncer:
    """Runs the most recently scheduled operation after a quiet period.

    Scheduling again before the delay elapses cancels the earlier operation.
    """

    def __init__(self) -> None:
        self._pending: asyncio.Task[None] | None = None

    @property
    def is_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self, delay: float, operation: Callable[[], Awaitable[Any]]) -> None:
        self.cancel()
        self._pending = asyncio.get_running_loop().create_task(self._run(delay, operation))

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def wait(self) -> None:
        """Wait for the pending operation, if any (mainly for tests and shutdown)."""
        task = self._pending
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    async def _run(delay: float, operation: Callable[[], Awaitable[Any]]) -> None:
        await asyncio.sleep(max(0.0, delay))
        try:
            await operation()
        except Exception:
            logger.warning("Debounced sync operation failed", exc_info=True)
