"""klettrack-sync command line entry point."""

from __future__ import annotations

import json
import logging
import sys
from enum import StrEnum
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from klettrack_sync.cli._helpers import load_config, open_orchestrator, output_result, run_async
from klettrack_sync.core.entities import EntityKind
from klettrack_sync.sync.conflicts import Resolution
from klettrack_sync.sync.device import get_device_info
from klettrack_sync.sync.errors import SyncError
from klettrack_sync.sync.protocol import MutationType
from klettrack_sync.utils.timeutils import to_iso

app = typer.Typer(
    name="klettrack-sync",
    help="Klettrack sync - offline-first sync of training data",
    no_args_is_help=True,
)

console = Console()


class KeepChoice(StrEnum):
    MINE = "mine"
    SERVER = "server"

    @property
    def resolution(self) -> Resolution:
        return Resolution.KEEP_MINE if self == KeepChoice.MINE else Resolution.KEEP_SERVER


def _fail(error: SyncError) -> None:
    typer.secho(f"Sync failed ({error.kind}): {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@app.callback()
def _configure(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log sync activity to stderr")
    ] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command()
def device(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show this install's device identity."""
    info = get_device_info(load_config().data_dir)
    output_result(info.to_dict(), json_output)


@app.command()
def status(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show cursor, queue and conflict state.

    Examples:
        klettrack-sync status
        klettrack-sync status --json
    """

    async def _status() -> dict[str, Any]:
        async with open_orchestrator(load_config()) as orchestrator:
            return {
                "device_id": orchestrator.device_id,
                "user_id": orchestrator.user_id,
                "cursor": orchestrator.cursor,
                "pending": orchestrator.queue.pending_count,
                "blocked": orchestrator.queue.blocked_count,
                "records": orchestrator.store.counts(),
                **orchestrator.status.to_dict(),
            }

    output_result(run_async(_status()), json_output)


@app.command()
def run(
    token: Annotated[
        Optional[str],
        typer.Option("--token", "-t", help="Bearer token (default: $KLETTRACK_SYNC_TOKEN)"),
    ] = None,
    reason: Annotated[str, typer.Option("--reason", help="Trigger reason for metrics")] = "manual",
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Run one push/pull cycle against the configured endpoint."""

    async def _run() -> dict[str, Any]:
        async with open_orchestrator(load_config(), token=token, online=True) as orchestrator:
            result = await orchestrator.sync(reason)
            return {
                "skipped": result.skipped,
                "cursor": result.cursor,
                "pushed": result.pushed,
                "acknowledged": len(result.acknowledged),
                "conflicts": len(result.conflicts),
                "rejected": [str(e) for e in result.rejected],
                "pulled": result.pulled,
                "applied": result.applied,
            }

    try:
        data = run_async(_run())
    except SyncError as e:
        _fail(e)
        return
    if data["skipped"]:
        typer.secho(
            "Sync is disabled. Enable it with: klettrack-sync enable USER_ID",
            fg=typer.colors.YELLOW,
        )
        return
    output_result(data, json_output)
    if data["conflicts"]:
        typer.secho(
            "Conflicts need a decision: klettrack-sync conflicts", fg=typer.colors.YELLOW
        )


@app.command()
def conflicts(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List conflicts waiting for a decision."""

    async def _list() -> list[dict[str, Any]]:
        async with open_orchestrator(load_config()) as orchestrator:
            return [
                {
                    "op_id": entry.op_id,
                    "entity": entry.entity_label,
                    "entity_id": entry.entity_id_label,
                    "reason": entry.reason_label,
                    "server_version": entry.server_version_label,
                }
                for entry in orchestrator.resolver.pending
            ]

    entries = run_async(_list())
    if json_output:
        typer.echo(json.dumps(entries, indent=2))
        return
    if not entries:
        typer.echo("No conflicts.")
        return

    table = Table(title="Sync conflicts")
    table.add_column("Op", style="dim")
    table.add_column("Item")
    table.add_column("Id")
    table.add_column("Reason")
    table.add_column("Server v", justify="right")
    for entry in entries:
        table.add_row(
            entry["op_id"],
            entry["entity"],
            entry["entity_id"],
            entry["reason"],
            entry["server_version"],
        )
    console.print(table)


@app.command()
def resolve(
    op_id: Annotated[str, typer.Argument(help="Op id of the conflicted mutation")],
    keep: Annotated[KeepChoice, typer.Option("--keep", "-k", help="Which side wins")],
) -> None:
    """Resolve one conflict.

    Examples:
        klettrack-sync resolve 3f2a... --keep mine
        klettrack-sync resolve 3f2a... --keep server
    """

    async def _resolve() -> str:
        async with open_orchestrator(load_config()) as orchestrator:
            outcome = await orchestrator.resolve_conflict(op_id, keep.resolution)
            return outcome.status.value

    result = run_async(_resolve())
    if result == "resolved":
        typer.secho(f"Resolved {op_id} (keep {keep.value})", fg=typer.colors.GREEN)
        return
    typer.secho(f"Conflict {op_id}: {result}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@app.command("resolve-all")
def resolve_all(
    keep: Annotated[KeepChoice, typer.Option("--keep", "-k", help="Which side wins")],
) -> None:
    """Apply the same decision to every pending conflict."""

    async def _resolve_all() -> int:
        async with open_orchestrator(load_config()) as orchestrator:
            return await orchestrator.resolve_all(keep.resolution)

    count = run_async(_resolve_all())
    typer.echo(f"Resolved {count} conflict(s) (keep {keep.value})")


@app.command()
def records(
    entity: Annotated[str, typer.Argument(help="Entity kind, e.g. plans or sessions")],
    include_deleted: Annotated[
        bool, typer.Option("--all", "-a", help="Include deleted records")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List local records of one entity kind."""
    kind = EntityKind.parse(entity)
    if kind is None:
        typer.secho(f"Unknown entity kind: {entity}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    async def _records() -> list[dict[str, Any]]:
        async with open_orchestrator(load_config()) as orchestrator:
            store = orchestrator.store
            return store.all(kind) if include_deleted else store.active(kind)

    rows = run_async(_records())
    if json_output:
        typer.echo(json.dumps(rows, indent=2, default=str))
        return

    table = Table(title=kind.label)
    table.add_column("Id", style="dim")
    table.add_column("Name")
    table.add_column("Version", justify="right")
    if include_deleted:
        table.add_column("Deleted")
    for row in rows:
        cells = [str(row["id"]), str(row.get("name", "")), str(row["version"])]
        if include_deleted:
            cells.append("yes" if row["is_deleted"] else "")
        table.add_row(*cells)
    console.print(table)


@app.command()
def enqueue(
    entity: Annotated[str, typer.Argument(help="Entity kind")],
    entity_id: Annotated[str, typer.Argument(help="Record id")],
    doc: Annotated[
        Optional[str], typer.Option("--doc", "-d", help="JSON object to upsert")
    ] = None,
    delete: Annotated[bool, typer.Option("--delete", help="Queue a delete")] = False,
) -> None:
    """Queue a local edit for the next sync run.

    Examples:
        klettrack-sync enqueue plans 6f1c... --doc '{"name": "Base"}'
        klettrack-sync enqueue plans 6f1c... --delete
    """
    payload: dict[str, Any] = {}
    if not delete:
        try:
            payload = json.loads(doc or "{}")
        except json.JSONDecodeError as e:
            typer.secho(f"Invalid JSON: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1) from e
        if not isinstance(payload, dict):
            typer.secho("--doc must be a JSON object", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)

    async def _enqueue() -> str:
        async with open_orchestrator(load_config()) as orchestrator:
            mutation = await orchestrator.enqueue_local_mutation(
                entity,
                entity_id,
                MutationType.DELETE if delete else MutationType.UPSERT,
                payload,
            )
            return mutation.op_id

    try:
        queued = run_async(_enqueue())
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e
    typer.echo(f"Queued {queued}")


@app.command()
def reset(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Sign out: disable sync and clear local records, queue and cursor."""
    if not yes and not typer.confirm("Discard all local sync state?"):
        raise typer.Abort()

    async def _reset() -> None:
        async with open_orchestrator(load_config()) as orchestrator:
            await orchestrator.sign_out(clear_local_data=True)

    run_async(_reset())
    typer.secho("Local sync state cleared.", fg=typer.colors.GREEN)


@app.command()
def enable(
    user_id: Annotated[str, typer.Argument(help="Signed-in account id")],
) -> None:
    """Enable sync for an account (switching accounts clears local state)."""

    async def _enable() -> str | None:
        async with open_orchestrator(load_config()) as orchestrator:
            await orchestrator.set_sync_enabled(True, user_id=user_id)
            last = orchestrator.status.last_successful_sync_at
            return to_iso(last) if last else None

    last_sync = run_async(_enable())
    typer.echo(f"Sync enabled for {user_id} (last sync: {last_sync or 'never'})")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
