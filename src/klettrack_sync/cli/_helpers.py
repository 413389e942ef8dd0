"""Shared CLI helpers for configuration, state and output formatting."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer

from klettrack_sync.config import AppConfig, get_config, get_env_token
from klettrack_sync.storage.sqlite_state import SQLiteSyncState
from klettrack_sync.sync.api_client import SyncAPIClient
from klettrack_sync.sync.device import get_device_id
from klettrack_sync.sync.orchestrator import SyncOrchestrator
from klettrack_sync.sync.telemetry import ConflictAuditLog

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command, draining aiosqlite callbacks before loop shutdown."""

    async def _with_drain() -> T:
        try:
            return await coro
        finally:
            await asyncio.sleep(0)

    return asyncio.run(_with_drain())


def load_config() -> AppConfig:
    return get_config(reload=True)


@asynccontextmanager
async def open_orchestrator(
    config: AppConfig, *, token: str | None = None, online: bool = False
) -> AsyncIterator[SyncOrchestrator]:
    """Open local state (and, when ``online``, an API client) as an orchestrator.

    Raises:
        SyncError: If ``online`` and the endpoint or token is unusable.
    """
    state = SQLiteSyncState(config.db_path)
    await state.initialize()
    api: SyncAPIClient | None = None
    try:
        if online:
            bearer = token or get_env_token() or ""
            settings = config.sync
            api = SyncAPIClient(
                settings.base_url,
                lambda: bearer,
                timeout=settings.request_timeout,
                max_retry_attempts=settings.max_retry_attempts,
                max_retry_delay=settings.max_retry_delay,
                require_https=settings.require_https,
            )
            await api.connect()

        orchestrator = SyncOrchestrator(
            api,
            device_id=get_device_id(config.data_dir),
            state=state,
            audit_log=ConflictAuditLog(config.audit_log_path),
            settings=config.sync,
        )
        await orchestrator.load()
        try:
            yield orchestrator
        finally:
            await orchestrator.close()
    finally:
        if api is not None:
            await api.close()
        await state.close()


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result in appropriate format."""
    if as_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return
    if "error" in data:
        typer.secho(f"Error: {data['error']}", fg=typer.colors.RED)
        return
    for key, value in data.items():
        typer.echo(f"{key}: {value}")
