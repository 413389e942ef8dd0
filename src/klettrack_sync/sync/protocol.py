"""Wire data structures for the push/pull sync exchanges.

Server payloads are only partially trusted: every field is read through a
typed accessor with an explicit default, so a missing or mistyped field never
raises while parsing. Raw entity names are kept verbatim; interpretation
against :class:`EntityKind` happens in the store and the conflict resolver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from klettrack_sync.core.entities import EntityKind
from klettrack_sync.utils.timeutils import parse_iso, to_iso

DEFAULT_PULL_LIMIT = 200


class MutationType(StrEnum):
    """Kind of pending write."""

    UPSERT = "upsert"
    DELETE = "delete"


class ConflictReason(StrEnum):
    """Reasons the authority reports for a conflicted mutation."""

    VERSION_MISMATCH = "version_mismatch"
    INVALID_PAYLOAD = "invalid_payload"
    UPDATE_FAILED = "update_failed"
    INSERT_FAILED = "insert_failed"
    FETCH_FAILED = "fetch_failed"
    UNKNOWN_CONFLICT = "unknown_conflict"


# ── field accessors ──────────────────────────────────────────────────────────


def as_int(value: Any) -> int | None:
    """Integer view of a JSON number; booleans and non-integral values are None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


# ── mutations ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Mutation:
    """A pending local write awaiting acknowledgment from the authority."""

    op_id: str
    entity: EntityKind
    entity_id: str
    type: MutationType
    base_version: int
    payload: dict[str, Any] = field(default_factory=dict)
    updated_at_client: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    blocked: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {
            "opId": self.op_id,
            "entity": self.entity.value,
            "entityId": self.entity_id,
            "type": self.type.value,
            "baseVersion": self.base_version,
            "updatedAtClient": to_iso(self.updated_at_client) if self.updated_at_client else None,
            "payload": None if self.type == MutationType.DELETE else self.payload,
        }

    def to_dict(self) -> dict[str, Any]:
        """Full local representation, including queue bookkeeping."""
        return {
            **self.to_wire(),
            "payload": self.payload,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "blocked": self.blocked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mutation | None:
        """Rebuild a mutation from :meth:`to_dict` output. Returns None if invalid."""
        op_id = as_str(data.get("opId"))
        entity = EntityKind.parse(data.get("entity"))
        entity_id = as_str(data.get("entityId"))
        try:
            mutation_type = MutationType(data.get("type"))
        except ValueError:
            return None
        if not op_id or entity is None or not entity_id:
            return None
        return cls(
            op_id=op_id,
            entity=entity,
            entity_id=entity_id,
            type=mutation_type,
            base_version=max(0, as_int(data.get("baseVersion")) or 0),
            payload=as_dict(data.get("payload")) or {},
            updated_at_client=parse_iso(data.get("updatedAtClient")),
            attempts=max(0, as_int(data.get("attempts")) or 0),
            last_error=as_str(data.get("lastError")),
            blocked=bool(data.get("blocked", False)),
        )


# ── push ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PushRequest:
    """Request body for ``POST /push``."""

    device_id: str
    base_cursor: str | None
    mutations: tuple[Mutation, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "baseCursor": self.base_cursor,
            "mutations": [m.to_wire() for m in self.mutations],
        }


@dataclass(frozen=True)
class SyncConflict:
    """A mutation the authority refused because its view of the row differs."""

    op_id: str
    entity: str
    entity_id: str
    reason: str
    server_version: int | None = None
    server_doc: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConflict:
        return cls(
            op_id=as_str(data.get("opId")) or "",
            entity=as_str(data.get("entity")) or "",
            entity_id=as_str(data.get("entityId")) or "",
            reason=as_str(data.get("reason")) or "",
            server_version=as_int(data.get("serverVersion")),
            server_doc=as_dict(data.get("serverDoc")),
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


@dataclass(frozen=True)
class PushFailure:
    """A mutation rejected for a reason other than a version conflict."""

    op_id: str | None
    reason: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PushFailure:
        return cls(
            op_id=as_str(data.get("opId")),
            reason=as_str(data.get("reason")) or "unknown",
        )


@dataclass(frozen=True)
class PushResult:
    """Parsed response of ``POST /push``."""

    acknowledged_op_ids: tuple[str, ...] = ()
    conflicts: tuple[SyncConflict, ...] = ()
    failed: tuple[PushFailure, ...] = ()
    new_cursor: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, base_cursor: str | None = None) -> PushResult:
        new_cursor = as_str(data.get("newCursor"))
        return cls(
            acknowledged_op_ids=tuple(
                op_id for op_id in as_list(data.get("acknowledgedOpIds")) if isinstance(op_id, str)
            ),
            conflicts=tuple(
                SyncConflict.from_dict(c) for c in as_list(data.get("conflicts")) if as_dict(c)
            ),
            failed=tuple(
                PushFailure.from_dict(f) for f in as_list(data.get("failed")) if as_dict(f)
            ),
            new_cursor=new_cursor if new_cursor is not None else base_cursor,
        )


# ── pull ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PullRequest:
    """Request body for ``POST /pull``."""

    device_id: str
    cursor: str | None
    limit: int = DEFAULT_PULL_LIMIT

    def to_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "cursor": self.cursor, "limit": self.limit}


@dataclass(frozen=True)
class PullChange:
    """One authoritative change delivered by a pull."""

    entity: str
    type: str
    entity_id: str | None = None
    version: int | None = None
    doc: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullChange:
        return cls(
            entity=as_str(data.get("entity")) or "",
            type=as_str(data.get("type")) or "",
            entity_id=as_str(data.get("entityId")),
            version=as_int(data.get("version")),
            doc=as_dict(data.get("doc")),
        )

    @classmethod
    def upsert(cls, entity: EntityKind | str, doc: dict[str, Any]) -> PullChange:
        return cls(
            entity=str(entity),
            type=MutationType.UPSERT.value,
            entity_id=as_str(doc.get("id")),
            version=as_int(doc.get("version")),
            doc=doc,
        )

    @classmethod
    def delete(cls, entity: EntityKind | str, entity_id: str, version: int | None = None) -> PullChange:
        return cls(
            entity=str(entity),
            type=MutationType.DELETE.value,
            entity_id=entity_id,
            version=version,
        )


@dataclass(frozen=True)
class PullResult:
    """Parsed response of ``POST /pull``."""

    changes: tuple[PullChange, ...] = ()
    new_cursor: str | None = None
    has_more: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, cursor: str | None = None) -> PullResult:
        next_cursor = as_str(data.get("nextCursor"))
        if next_cursor is None:
            next_cursor = as_str(data.get("newCursor"))
        return cls(
            changes=tuple(
                PullChange.from_dict(c) for c in as_list(data.get("changes")) if as_dict(c)
            ),
            new_cursor=next_cursor if next_cursor is not None else cursor,
            has_more=data.get("hasMore") is True,
        )
