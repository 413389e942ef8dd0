"""Conflict presentation and user-mediated resolution."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from klettrack_sync.core.entities import UNKNOWN_ENTITY, EntityKind, entity_label
from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.sync.protocol import ConflictReason, SyncConflict, as_dict, as_int
from klettrack_sync.sync.telemetry import (
    MAX_IN_MEMORY_EVENTS,
    ConflictAuditLog,
    ConflictTelemetryEvent,
    TelemetryEventType,
)

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 128
MIN_DISPLAY_ID_LENGTH = 8

_REASON_LABELS = {
    ConflictReason.VERSION_MISMATCH: "This item changed on another device.",
    ConflictReason.INVALID_PAYLOAD: "The update payload is invalid.",
    ConflictReason.UPDATE_FAILED: "Server rejected the update.",
    ConflictReason.INSERT_FAILED: "Server rejected the new record.",
    ConflictReason.FETCH_FAILED: "Unable to load current server data.",
}


def normalize_identifier(value: Any) -> str:
    """Trim, lower-case and cap an identifier at 128 characters."""
    text = str(value).strip().lower() if value is not None else ""
    return text[:MAX_IDENTIFIER_LENGTH]


def normalize_entity(value: Any) -> str:
    kind = EntityKind.parse(normalize_identifier(value))
    return kind.value if kind is not None else UNKNOWN_ENTITY


def normalize_reason(value: Any) -> str:
    reason = normalize_identifier(value)
    return reason if reason else ConflictReason.UNKNOWN_CONFLICT.value


def _display_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict):
        return f"{{{len(value)} fields}}"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    return str(value)


@dataclass(frozen=True)
class ConflictEntry:
    """A server-reported conflict, normalized for display and resolution.

    Malformed or forward-incompatible values degrade to sentinels
    (``unknown_entity``, ``unknown_conflict``, truncated identifiers) instead
    of raising.
    """

    op_id: str
    entity: str
    entity_id: str
    reason: str
    server_version: int | None = None
    server_doc: dict[str, Any] | None = None

    @classmethod
    def from_conflict(cls, raw: SyncConflict | Mapping[str, Any]) -> ConflictEntry:
        if isinstance(raw, SyncConflict):
            data: Mapping[str, Any] = raw.to_dict()
        else:
            data = raw
        server_version = as_int(data.get("serverVersion"))
        return cls(
            op_id=normalize_identifier(data.get("opId")),
            entity=normalize_entity(data.get("entity")),
            entity_id=normalize_identifier(data.get("entityId")),
            reason=normalize_reason(data.get("reason")),
            server_version=server_version if server_version is None else max(0, server_version),
            server_doc=as_dict(data.get("serverDoc")),
        )

    @property
    def kind(self) -> EntityKind | None:
        return EntityKind.parse(self.entity)

    @property
    def entity_label(self) -> str:
        return entity_label(self.entity)

    @property
    def entity_id_label(self) -> str:
        return self.entity_id if len(self.entity_id) >= MIN_DISPLAY_ID_LENGTH else "invalid-id"

    @property
    def reason_label(self) -> str:
        try:
            return _REASON_LABELS[ConflictReason(self.reason)]
        except (ValueError, KeyError):
            return "A sync conflict needs your decision."

    @property
    def server_version_label(self) -> str:
        return str(self.server_version) if self.server_version is not None else "unknown"

    @property
    def server_preview_rows(self) -> list[tuple[str, str]]:
        if not self.server_doc:
            return []
        return sorted(
            ((key, _display_value(value)) for key, value in self.server_doc.items()),
            key=lambda row: row[0].lower(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "opId": self.op_id,
            "entity": self.entity,
            "entityId": self.entity_id,
            "reason": self.reason,
            "serverVersion": self.server_version,
            "serverDoc": self.server_doc,
        }


class Resolution(StrEnum):
    KEEP_MINE = "keep_mine"
    KEEP_SERVER = "keep_server"


class ResolutionStatus(StrEnum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of resolving one conflict."""

    op_id: str
    choice: Resolution
    status: ResolutionStatus
    entity: str = ""
    entity_id: str = ""
    base_version: int | None = None
    applied_server_doc: bool = False

    @property
    def resolved(self) -> bool:
        return self.status == ResolutionStatus.RESOLVED


AfterResolveHook = Callable[[ResolutionOutcome], Awaitable[None]]


class ConflictResolver:
    """
    Holds unresolved conflicts and applies the user's choice.

    Two choices exist per conflict:

    - keep mine: unblock the mutation with its base version moved to the
      freshest known server version, so the next push re-applies it on top;
    - keep server: drop the mutation and, when the conflict carries the
      server document, write it into the store immediately.

    A conflict whose resolution is still running rejects a second request
    with ``IN_PROGRESS``.
    """

    def __init__(
        self,
        queue: MutationQueue,
        store: EntityRecordStore,
        *,
        audit_log: ConflictAuditLog | None = None,
        after_resolve: AfterResolveHook | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._audit_log = audit_log
        self._after_resolve = after_resolve
        self._entries: dict[str, ConflictEntry] = {}
        self._in_flight: set[str] = set()
        # Conflicts whose mutation was in the queue when they were recorded.
        self._attached: set[str] = set()
        self._events: list[ConflictTelemetryEvent] = []

    @property
    def pending(self) -> list[ConflictEntry]:
        return list(self._entries.values())

    @property
    def events(self) -> list[ConflictTelemetryEvent]:
        """Recent telemetry events, newest first."""
        return list(self._events)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, op_id: str) -> ConflictEntry | None:
        return self._entries.get(normalize_identifier(op_id))

    def is_resolving(self, op_id: str) -> bool:
        return normalize_identifier(op_id) in self._in_flight

    def register(self, conflicts: Iterable[SyncConflict | Mapping[str, Any]]) -> list[ConflictEntry]:
        """Block the conflicted mutations and record the conflicts for a decision."""
        added = []
        for raw in conflicts:
            entry = ConflictEntry.from_conflict(raw)
            if self._queue.block(entry.op_id, entry.reason):
                self._attached.add(entry.op_id)
            else:
                self._attached.discard(entry.op_id)
                logger.warning(
                    "Conflict for %s/%s references unknown op %r",
                    entry.entity,
                    entry.entity_id,
                    entry.op_id,
                )
            self._entries[entry.op_id] = entry
            self._record(TelemetryEventType.DETECTED, entry)
            added.append(entry)
        return added

    def restore(self, entries: Iterable[ConflictEntry]) -> None:
        """Reload persisted conflicts without emitting telemetry."""
        self._entries = {e.op_id: e for e in entries}
        self._attached = {op_id for op_id in self._entries if op_id in self._queue}

    def discard_stale(self) -> int:
        """Forget conflicts whose mutation was replaced by a newer local edit.

        Conflicts that never matched a queued mutation stay until the user
        resolves them.
        """
        stale = [
            op_id
            for op_id, entry in self._entries.items()
            if op_id in self._attached
            and op_id not in self._queue
            and op_id not in self._in_flight
            and entry.server_doc is None
        ]
        for op_id in stale:
            del self._entries[op_id]
            self._attached.discard(op_id)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self._in_flight.clear()
        self._attached.clear()

    def resolve_now(self, op_id: str, choice: Resolution | str) -> ResolutionOutcome:
        """Apply a resolution to the queue and store synchronously."""
        key = normalize_identifier(op_id)
        choice = Resolution(choice)
        entry = self._entries.get(key)
        if entry is None:
            return ResolutionOutcome(op_id=key, choice=choice, status=ResolutionStatus.NOT_FOUND)

        if choice == Resolution.KEEP_MINE:
            outcome = self._keep_mine(entry)
        else:
            outcome = self._keep_server(entry)

        if outcome.resolved or outcome.status == ResolutionStatus.NOT_FOUND:
            self._entries.pop(key, None)
            self._attached.discard(key)
        if outcome.resolved:
            self._record(
                TelemetryEventType.KEEP_MINE
                if choice == Resolution.KEEP_MINE
                else TelemetryEventType.KEEP_SERVER,
                entry,
            )
        return outcome

    async def resolve(
        self, conflict: ConflictEntry | str, choice: Resolution | str
    ) -> ResolutionOutcome:
        """Resolve one conflict, then run the after-resolve hook.

        While the hook runs the conflict is marked in flight; a concurrent
        request for the same conflict returns ``IN_PROGRESS`` untouched.
        """
        key = normalize_identifier(conflict.op_id if isinstance(conflict, ConflictEntry) else conflict)
        choice = Resolution(choice)
        if key in self._in_flight:
            return ResolutionOutcome(op_id=key, choice=choice, status=ResolutionStatus.IN_PROGRESS)

        self._in_flight.add(key)
        try:
            outcome = self.resolve_now(key, choice)
            if outcome.resolved and self._after_resolve is not None:
                await self._after_resolve(outcome)
            return outcome
        finally:
            self._in_flight.discard(key)

    async def resolve_all(self, choice: Resolution | str) -> int:
        """Apply the same choice to every pending conflict. Returns the resolved count."""
        choice = Resolution(choice)
        resolved = 0
        for entry in list(self._entries.values()):
            outcome = await self.resolve(entry.op_id, choice)
            if outcome.resolved:
                resolved += 1
        return resolved

    def _keep_mine(self, entry: ConflictEntry) -> ResolutionOutcome:
        mutation = self._queue.get(entry.op_id)
        if mutation is None:
            return ResolutionOutcome(
                op_id=entry.op_id, choice=Resolution.KEEP_MINE, status=ResolutionStatus.NOT_FOUND
            )

        fresh_version = self._store.version(mutation.entity, mutation.entity_id)
        base_version = max(fresh_version, entry.server_version or 0)
        self._queue.rebase(entry.op_id, base_version)
        logger.info(
            "Keep mine for %s/%s: rebased op %s to v%d",
            mutation.entity,
            mutation.entity_id,
            entry.op_id,
            base_version,
        )
        return ResolutionOutcome(
            op_id=entry.op_id,
            choice=Resolution.KEEP_MINE,
            status=ResolutionStatus.RESOLVED,
            entity=mutation.entity.value,
            entity_id=mutation.entity_id,
            base_version=base_version,
        )

    def _keep_server(self, entry: ConflictEntry) -> ResolutionOutcome:
        mutation = self._queue.discard(entry.op_id)
        kind = mutation.entity if mutation is not None else entry.kind
        entity_id = mutation.entity_id if mutation is not None else entry.entity_id

        applied = False
        if entry.server_doc is not None and kind is not None:
            doc = dict(entry.server_doc)
            doc.setdefault("id", entity_id)
            if "version" not in doc and entry.server_version is not None:
                doc["version"] = entry.server_version
            applied = self._store.overwrite(kind, doc) is not None

        if mutation is None and not applied:
            return ResolutionOutcome(
                op_id=entry.op_id, choice=Resolution.KEEP_SERVER, status=ResolutionStatus.NOT_FOUND
            )

        logger.info(
            "Keep server for %s/%s (op %s, server doc applied: %s)",
            kind,
            entity_id,
            entry.op_id,
            applied,
        )
        return ResolutionOutcome(
            op_id=entry.op_id,
            choice=Resolution.KEEP_SERVER,
            status=ResolutionStatus.RESOLVED,
            entity=kind.value if kind is not None else entry.entity,
            entity_id=entity_id,
            applied_server_doc=applied,
        )

    def _record(self, event_type: TelemetryEventType, entry: ConflictEntry) -> None:
        event = ConflictTelemetryEvent(
            event_type=event_type,
            entity=entry.entity,
            entity_id=entry.entity_id,
            reason=entry.reason,
        )
        self._events.insert(0, event)
        del self._events[MAX_IN_MEMORY_EVENTS:]

        if self._audit_log is not None:
            try:
                self._audit_log.append(event)
            except OSError:
                logger.warning("Failed to append conflict audit event", exc_info=True)
