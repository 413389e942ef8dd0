"""Tests for sync/conflicts.py: Conflict normalization and resolution."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.sync.conflicts import (
    ConflictEntry,
    ConflictResolver,
    Resolution,
    ResolutionStatus,
    normalize_identifier,
)
from klettrack_sync.sync.protocol import PullChange, SyncConflict
from klettrack_sync.sync.telemetry import ConflictAuditLog, TelemetryEventType


def _conflict(op_id: str, entity_id: str = "plan-0001", **overrides: object) -> dict[str, object]:
    data: dict[str, object] = {
        "opId": op_id,
        "entity": "plans",
        "entityId": entity_id,
        "reason": "version_mismatch",
        "serverVersion": 5,
    }
    data.update(overrides)
    return data


# ─────────── normalization ───────────


class TestConflictEntry:
    """Tests for ConflictEntry.from_conflict() and display labels."""

    def test_sessions_entry_renders_label_and_lowercased_id(self) -> None:
        entry = ConflictEntry.from_conflict(
            {"opId": "OP-1", "entity": "sessions", "entityId": "ABCDEFGHI", "reason": "version_mismatch"}
        )
        assert entry.entity_label == "Session Entries"
        assert entry.entity_id == "abcdefghi"
        assert entry.entity_id_label == "abcdefghi"
        assert entry.op_id == "op-1"

    def test_unknown_entity_degrades(self) -> None:
        entry = ConflictEntry.from_conflict(_conflict("op-1", entity="hold_sets"))
        assert entry.entity == "unknown_entity"
        assert entry.entity_label == "Unknown Item"
        assert entry.kind is None

    def test_identifiers_capped_at_128(self) -> None:
        entry = ConflictEntry.from_conflict(_conflict("X" * 300, entity_id="Y" * 200))
        assert entry.op_id == "x" * 128
        assert entry.entity_id == "y" * 128

    def test_short_id_label(self) -> None:
        entry = ConflictEntry.from_conflict(_conflict("op-1", entity_id="abc"))
        assert entry.entity_id_label == "invalid-id"

    def test_missing_reason_and_version(self) -> None:
        entry = ConflictEntry.from_conflict({"opId": "op-1", "entity": "plans"})
        assert entry.reason == "unknown_conflict"
        assert entry.reason_label == "A sync conflict needs your decision."
        assert entry.server_version is None
        assert entry.server_version_label == "unknown"

    def test_reason_label(self) -> None:
        entry = ConflictEntry.from_conflict(_conflict("op-1"))
        assert entry.reason_label == "This item changed on another device."

    def test_from_sync_conflict(self) -> None:
        conflict = SyncConflict(
            op_id="op-2", entity="plans", entity_id="plan-0002", reason="fetch_failed", server_version=3
        )
        entry = ConflictEntry.from_conflict(conflict)
        assert entry.server_version == 3
        assert entry.reason_label == "Unable to load current server data."

    def test_server_preview_rows_sorted(self) -> None:
        entry = ConflictEntry.from_conflict(
            _conflict(
                "op-1",
                serverDoc={"name": "Base", "Weeks": 4.0, "active": True, "days": [1, 2], "meta": {"a": 1}},
            )
        )
        assert entry.server_preview_rows == [
            ("active", "true"),
            ("days", "[2 items]"),
            ("meta", "{1 fields}"),
            ("name", "Base"),
            ("Weeks", "4"),
        ]

    def test_normalize_identifier_handles_none(self) -> None:
        assert normalize_identifier(None) == ""


# ─────────── resolver ───────────


class TestRegister:
    def test_register_blocks_mutation(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 2, {"name": "Mine"})
        resolver = ConflictResolver(queue, store)

        added = resolver.register([_conflict(mutation.op_id)])

        assert [e.op_id for e in added] == [mutation.op_id]
        assert queue.get(mutation.op_id).blocked is True
        assert queue.snapshot() == []
        assert len(resolver) == 1
        assert resolver.events[0].event_type == TelemetryEventType.DETECTED

    def test_register_unknown_op_is_kept_for_display(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict("ghost")])
        assert resolver.get("GHOST") is not None


class TestKeepMine:
    async def test_rebases_to_server_version(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 2, {"name": "Mine"})
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(mutation.op_id, serverVersion=5)])

        outcome = await resolver.resolve(mutation.op_id, Resolution.KEEP_MINE)

        assert outcome.status == ResolutionStatus.RESOLVED
        assert outcome.base_version == 5
        rebased = queue.get(mutation.op_id)
        assert rebased.blocked is False
        assert rebased.base_version == 5
        assert rebased.attempts == 0
        assert len(resolver) == 0

    async def test_prefers_fresher_pulled_version(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 2)
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(mutation.op_id, serverVersion=5)])
        store.apply_pull_changes([PullChange.upsert("plans", {"id": "plan-0001", "version": 8})])

        outcome = await resolver.resolve(mutation.op_id, "keep_mine")

        assert outcome.base_version == 8

    async def test_falls_back_to_store_version(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        store.apply_pull_changes([PullChange.upsert("plans", {"id": "plan-0001", "version": 3})])
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 1)
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(mutation.op_id, serverVersion=None)])

        outcome = await resolver.resolve(mutation.op_id, Resolution.KEEP_MINE)

        assert outcome.base_version == 3

    async def test_missing_mutation_is_not_found(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict("ghost")])

        outcome = await resolver.resolve("ghost", Resolution.KEEP_MINE)

        assert outcome.status == ResolutionStatus.NOT_FOUND
        assert len(resolver) == 0


class TestKeepServer:
    async def test_discards_mutation_and_applies_server_doc(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        store.apply_pull_changes([PullChange.upsert("plans", {"id": "plan-0001", "version": 9})])
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 9, {"name": "Mine"})
        store.upsert_local("plans", {"id": "plan-0001", "name": "Mine"})
        resolver = ConflictResolver(queue, store)
        resolver.register(
            [_conflict(mutation.op_id, serverVersion=6, serverDoc={"name": "Server"})]
        )

        outcome = await resolver.resolve(mutation.op_id, Resolution.KEEP_SERVER)

        assert outcome.resolved
        assert outcome.applied_server_doc is True
        assert mutation.op_id not in queue
        record = store.get("plans", "plan-0001")
        assert record["name"] == "Server"
        assert record["version"] == 6

    async def test_without_server_doc_only_discards(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 1)
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(mutation.op_id)])

        outcome = await resolver.resolve(mutation.op_id, Resolution.KEEP_SERVER)

        assert outcome.resolved
        assert outcome.applied_server_doc is False
        assert len(queue) == 0


class TestResolveGuards:
    async def test_unknown_conflict_is_not_found(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        resolver = ConflictResolver(queue, store)
        outcome = await resolver.resolve("nope", Resolution.KEEP_MINE)
        assert outcome.status == ResolutionStatus.NOT_FOUND

    async def test_concurrent_resolution_is_rejected(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 1)
        gate = asyncio.Event()

        async def slow_hook(_: object) -> None:
            await gate.wait()

        resolver = ConflictResolver(queue, store, after_resolve=slow_hook)
        resolver.register([_conflict(mutation.op_id)])

        first = asyncio.create_task(resolver.resolve(mutation.op_id, Resolution.KEEP_MINE))
        await asyncio.sleep(0)
        assert resolver.is_resolving(mutation.op_id)

        second = await resolver.resolve(mutation.op_id, Resolution.KEEP_SERVER)
        gate.set()
        first_outcome = await first

        assert second.status == ResolutionStatus.IN_PROGRESS
        assert first_outcome.status == ResolutionStatus.RESOLVED
        assert mutation.op_id in queue

    async def test_after_resolve_hook_called(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 1)
        hook = AsyncMock()
        resolver = ConflictResolver(queue, store, after_resolve=hook)
        resolver.register([_conflict(mutation.op_id)])

        outcome = await resolver.resolve(mutation.op_id, Resolution.KEEP_MINE)

        hook.assert_awaited_once_with(outcome)
        assert outcome.entity == "plans"
        assert outcome.entity_id == "plan-0001"

    async def test_resolve_all(self, queue: MutationQueue, store: EntityRecordStore) -> None:
        ops = [queue.enqueue("plans", f"plan-000{i}", "upsert", 0).op_id for i in range(3)]
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(op, entity_id=f"plan-000{i}") for i, op in enumerate(ops)])

        resolved = await resolver.resolve_all(Resolution.KEEP_SERVER)

        assert resolved == 3
        assert len(resolver) == 0
        assert len(queue) == 0


class TestDiscardStale:
    def test_drops_conflicts_whose_mutation_was_replaced(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        old = queue.enqueue("plans", "plan-0001", "upsert", 1)
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(old.op_id)])

        queue.enqueue("plans", "plan-0001", "upsert", 1, {"name": "newer"})

        assert resolver.discard_stale() == 1
        assert len(resolver) == 0

    def test_keeps_conflicts_for_unknown_ops(
        self, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict("ghost")])

        assert resolver.discard_stale() == 0
        assert resolver.get("ghost") is not None


class TestTelemetry:
    async def test_events_newest_first_and_audited(
        self, tmp_path: Path, queue: MutationQueue, store: EntityRecordStore
    ) -> None:
        audit = ConflictAuditLog(tmp_path / "audit.json")
        mutation = queue.enqueue("plans", "plan-0001", "upsert", 1)
        resolver = ConflictResolver(queue, store, audit_log=audit)
        resolver.register([_conflict(mutation.op_id)])

        await resolver.resolve(mutation.op_id, Resolution.KEEP_MINE)

        types = [e.event_type for e in resolver.events]
        assert types == [TelemetryEventType.KEEP_MINE, TelemetryEventType.DETECTED]
        assert [e.event_type for e in audit.load()] == types

    def test_in_memory_events_capped(self, queue: MutationQueue, store: EntityRecordStore) -> None:
        resolver = ConflictResolver(queue, store)
        resolver.register([_conflict(f"op-{i}") for i in range(60)])
        assert len(resolver.events) == 50
