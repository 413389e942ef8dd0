"""In-memory entity record store: the device's view of synced state."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from klettrack_sync.core.entities import EntityKind
from klettrack_sync.sync.protocol import MutationType, PullChange, as_int

logger = logging.getLogger(__name__)

Record = dict[str, Any]
RecordKey = tuple[EntityKind, str]


def normalize_version(value: Any) -> int:
    """Coerce a version to a non-negative int (missing or garbage → 0)."""
    number = as_int(value)
    if number is None and isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    return max(0, number or 0)


def normalize_record(doc: Mapping[str, Any]) -> Record:
    record = dict(doc)
    record["version"] = normalize_version(record.get("version"))
    record["is_deleted"] = bool(record.get("is_deleted", False))
    return record


def _sort_key(record: Record) -> tuple[str, str]:
    name = record.get("name")
    updated = record.get("updated_at_server")
    return (
        (name if isinstance(name, str) else "").casefold(),
        updated if isinstance(updated, str) else "",
    )


class EntityRecordStore:
    """Keyed store of entity records, one bucket per :class:`EntityKind`.

    Records are plain dicts carrying at least ``id``, ``version`` and
    ``is_deleted``. Deleted records are kept as tombstones. Versions only move
    forward when applying pulled changes; :meth:`overwrite` is the single
    escape hatch, used when the user explicitly keeps the server value.
    """

    def __init__(self) -> None:
        self._records: dict[EntityKind, dict[str, Record]] = {kind: {} for kind in EntityKind}

    # ------------------------------------------------------------------
    # Pull application
    # ------------------------------------------------------------------

    def apply_pull_changes(self, changes: Iterable[PullChange | Mapping[str, Any]]) -> list[RecordKey]:
        """Apply authoritative changes in the order given.

        Unknown entity kinds and changes without an id are skipped. Returns
        the keys of records that were written.
        """
        touched: list[RecordKey] = []
        for raw in changes:
            change = raw if isinstance(raw, PullChange) else PullChange.from_dict(dict(raw))
            key = self.apply_change(change)
            if key is not None:
                touched.append(key)
        return touched

    def apply_change(self, change: PullChange) -> RecordKey | None:
        """Apply a single pulled change. Returns the written key, if any."""
        kind = EntityKind.parse(change.entity)
        if kind is None:
            logger.debug("Ignoring change for unknown entity %r", change.entity)
            return None

        if change.type == MutationType.DELETE:
            return self._apply_delete(kind, change.entity_id, change.version)
        if change.type == MutationType.UPSERT:
            return self._apply_upsert(kind, change)

        logger.warning("Ignoring change with unknown type %r for %s", change.type, kind)
        return None

    def _apply_upsert(self, kind: EntityKind, change: PullChange) -> RecordKey | None:
        doc = change.doc
        if doc is None:
            logger.warning("Upsert for %s without a document, skipping", kind)
            return None

        record_id = doc.get("id")
        if not isinstance(record_id, str) or not record_id:
            record_id = change.entity_id
        if not isinstance(record_id, str) or not record_id:
            logger.warning("Upsert for %s without an id, skipping", kind)
            return None

        incoming = dict(doc)
        incoming["id"] = record_id
        if "version" not in incoming and change.version is not None:
            incoming["version"] = change.version
        record = normalize_record(incoming)

        bucket = self._records[kind]
        existing = bucket.get(record_id)
        if existing is not None and record["version"] < existing["version"]:
            logger.debug(
                "Skipping stale upsert %s/%s v%d < v%d",
                kind,
                record_id,
                record["version"],
                existing["version"],
            )
            return None

        bucket[record_id] = record
        return (kind, record_id)

    def _apply_delete(
        self, kind: EntityKind, record_id: str | None, version: int | None
    ) -> RecordKey | None:
        if not record_id:
            logger.warning("Delete for %s without an entity id, skipping", kind)
            return None

        bucket = self._records[kind]
        existing = bucket.get(record_id)
        if existing is None:
            bucket[record_id] = {
                "id": record_id,
                "version": normalize_version(version),
                "is_deleted": True,
            }
            return (kind, record_id)

        if version is not None and version < existing["version"]:
            logger.debug("Skipping stale delete %s/%s v%d", kind, record_id, version)
            return None

        existing["is_deleted"] = True
        if version is not None:
            existing["version"] = normalize_version(version)
        return (kind, record_id)

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------

    def upsert_local(self, entity: EntityKind | str, doc: Mapping[str, Any]) -> Record | None:
        """Speculatively merge ``doc`` onto the current record (new fields win)."""
        kind = EntityKind.parse(entity)
        record_id = doc.get("id")
        if kind is None or not isinstance(record_id, str) or not record_id:
            return None

        bucket = self._records[kind]
        merged = normalize_record({**bucket.get(record_id, {}), **doc})
        bucket[record_id] = merged
        return copy.deepcopy(merged)

    def overwrite(self, entity: EntityKind | str, doc: Mapping[str, Any]) -> RecordKey | None:
        """Replace a record unconditionally, even with a lower version."""
        kind = EntityKind.parse(entity)
        record_id = doc.get("id")
        if kind is None or not isinstance(record_id, str) or not record_id:
            return None
        self._records[kind][record_id] = normalize_record(doc)
        return (kind, record_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity: EntityKind | str, record_id: str) -> Record | None:
        kind = EntityKind.parse(entity)
        if kind is None:
            return None
        record = self._records[kind].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def active(self, entity: EntityKind | str) -> list[Record]:
        """Non-deleted records ordered by name (case-insensitive), then server update time."""
        return [r for r in self.all(entity) if not r["is_deleted"]]

    def all(self, entity: EntityKind | str) -> list[Record]:
        """All records including tombstones, in listing order."""
        kind = EntityKind.parse(entity)
        if kind is None:
            return []
        return [copy.deepcopy(r) for r in sorted(self._records[kind].values(), key=_sort_key)]

    def version(self, entity: EntityKind | str, record_id: str) -> int:
        kind = EntityKind.parse(entity)
        if kind is None:
            return 0
        record = self._records[kind].get(record_id)
        return record["version"] if record is not None else 0

    def counts(self) -> dict[str, int]:
        return {kind.value: len(bucket) for kind, bucket in self._records.items() if bucket}

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Clear every bucket (sign-out / account switch)."""
        for bucket in self._records.values():
            bucket.clear()

    def load(self, records: Iterable[tuple[EntityKind, Record]]) -> None:
        """Restore previously persisted records, replacing current contents."""
        self.reset()
        for kind, doc in records:
            record_id = doc.get("id")
            if isinstance(record_id, str) and record_id:
                self._records[kind][record_id] = normalize_record(doc)

    def records_for(self, keys: Iterable[RecordKey]) -> list[tuple[EntityKind, Record]]:
        """Current records for the given keys (missing keys are skipped)."""
        result = []
        for kind, record_id in dict.fromkeys(keys):
            record = self._records[kind].get(record_id)
            if record is not None:
                result.append((kind, copy.deepcopy(record)))
        return result

    def snapshot(self) -> dict[EntityKind, dict[str, Record]]:
        return copy.deepcopy(self._records)
