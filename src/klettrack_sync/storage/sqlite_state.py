"""SQLite persistence for the local sync state."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from klettrack_sync.core.entities import EntityKind
from klettrack_sync.sync.protocol import Mutation
from klettrack_sync.utils.timeutils import parse_iso, to_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    device_id TEXT,
    user_id TEXT,
    cursor TEXT,
    last_successful_sync_at TEXT,
    enabled INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS records (
    entity TEXT NOT NULL,
    id TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    doc TEXT NOT NULL,
    PRIMARY KEY (entity, id)
);

CREATE TABLE IF NOT EXISTS mutations (
    position INTEGER NOT NULL,
    op_id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_mutations_position ON mutations(position);

CREATE TABLE IF NOT EXISTS conflicts (
    op_id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
"""


@dataclass
class PersistedSyncState:
    """Everything :meth:`SQLiteSyncState.load` restores."""

    device_id: str | None = None
    user_id: str | None = None
    cursor: str | None = None
    last_successful_sync_at: datetime | None = None
    enabled: bool = True
    records: list[tuple[EntityKind, dict[str, Any]]] = field(default_factory=list)
    mutations: list[Mutation] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)


class SQLiteSyncState:
    """Durable store for records, the mutation queue, conflicts and the cursor.

    Writes that must succeed or fail together run inside a single
    transaction: :meth:`commit_pull` stores the touched records with the new
    cursor, :meth:`save_queue` rewrites the queue with its conflicts.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.executescript(SCHEMA)

        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self._conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        await self._conn.execute("INSERT OR IGNORE INTO sync_state (id) VALUES (1)")
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteSyncState:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self) -> PersistedSyncState:
        conn = self._ensure_conn()
        state = PersistedSyncState()

        async with conn.execute(
            """SELECT device_id, user_id, cursor, last_successful_sync_at, enabled
               FROM sync_state WHERE id = 1"""
        ) as cursor:
            row = await cursor.fetchone()
        if row is not None:
            state.device_id = row["device_id"]
            state.user_id = row["user_id"]
            state.cursor = row["cursor"]
            state.last_successful_sync_at = parse_iso(row["last_successful_sync_at"])
            state.enabled = bool(row["enabled"])

        async with conn.execute("SELECT entity, id, doc FROM records") as cursor:
            async for row in cursor:
                kind = EntityKind.parse(row["entity"])
                doc = _loads(row["doc"], f"record {row['entity']}/{row['id']}")
                if kind is not None and isinstance(doc, dict):
                    state.records.append((kind, doc))

        async with conn.execute("SELECT op_id, data FROM mutations ORDER BY position") as cursor:
            async for row in cursor:
                data = _loads(row["data"], f"mutation {row['op_id']}")
                mutation = Mutation.from_dict(data) if isinstance(data, dict) else None
                if mutation is not None:
                    state.mutations.append(mutation)

        async with conn.execute("SELECT op_id, data FROM conflicts") as cursor:
            async for row in cursor:
                data = _loads(row["data"], f"conflict {row['op_id']}")
                if isinstance(data, dict):
                    state.conflicts.append(data)

        return state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit_pull(
        self,
        records: Iterable[tuple[EntityKind, dict[str, Any]]],
        cursor: str | None,
        last_successful_sync_at: datetime | None = None,
    ) -> None:
        """Store pulled records and advance the cursor in one transaction."""
        conn = self._ensure_conn()
        try:
            await conn.executemany(
                """INSERT OR REPLACE INTO records (entity, id, version, is_deleted, doc)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (
                        kind.value,
                        doc["id"],
                        doc.get("version", 0),
                        1 if doc.get("is_deleted") else 0,
                        json.dumps(doc, default=str),
                    )
                    for kind, doc in records
                ],
            )
            await conn.execute(
                """UPDATE sync_state
                   SET cursor = ?, last_successful_sync_at = COALESCE(?, last_successful_sync_at)
                   WHERE id = 1""",
                (
                    cursor,
                    to_iso(last_successful_sync_at) if last_successful_sync_at else None,
                ),
            )
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

    async def save_records(self, records: Iterable[tuple[EntityKind, dict[str, Any]]]) -> None:
        """Store records written outside a pull (local edits, keep-server)."""
        await self.commit_pull(records, await self.get_cursor())

    async def save_queue(
        self, mutations: Iterable[Mutation], conflicts: Iterable[dict[str, Any]] = ()
    ) -> None:
        """Replace the persisted queue and conflict list in one transaction."""
        conn = self._ensure_conn()
        try:
            await conn.execute("DELETE FROM mutations")
            await conn.executemany(
                "INSERT INTO mutations (position, op_id, data) VALUES (?, ?, ?)",
                [(i, m.op_id, json.dumps(m.to_dict())) for i, m in enumerate(mutations)],
            )
            await conn.execute("DELETE FROM conflicts")
            await conn.executemany(
                "INSERT OR REPLACE INTO conflicts (op_id, data) VALUES (?, ?)",
                [(c.get("opId", ""), json.dumps(c, default=str)) for c in conflicts],
            )
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

    async def get_cursor(self) -> str | None:
        conn = self._ensure_conn()
        async with conn.execute("SELECT cursor FROM sync_state WHERE id = 1") as cursor:
            row = await cursor.fetchone()
        return row["cursor"] if row is not None else None

    async def save_identity(self, device_id: str | None, user_id: str | None, enabled: bool) -> None:
        conn = self._ensure_conn()
        await conn.execute(
            "UPDATE sync_state SET device_id = ?, user_id = ?, enabled = ? WHERE id = 1",
            (device_id, user_id, 1 if enabled else 0),
        )
        await conn.commit()

    async def clear(self, *, keep_identity: bool = True) -> None:
        """Drop records, queue, conflicts and cursor (account switch / sign-out)."""
        conn = self._ensure_conn()
        try:
            await conn.execute("DELETE FROM records")
            await conn.execute("DELETE FROM mutations")
            await conn.execute("DELETE FROM conflicts")
            if keep_identity:
                await conn.execute(
                    "UPDATE sync_state SET cursor = NULL, last_successful_sync_at = NULL WHERE id = 1"
                )
            else:
                await conn.execute(
                    """UPDATE sync_state
                       SET cursor = NULL, last_successful_sync_at = NULL, user_id = NULL
                       WHERE id = 1"""
                )
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise


def _loads(raw: str | None, what: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON for %s, skipping", what)
        return None
