"""Ordered queue of local writes awaiting acknowledgment."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from klettrack_sync.core.entities import EntityKind
from klettrack_sync.sync.protocol import Mutation, MutationType
from klettrack_sync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def _key(op_id: str) -> str:
    return op_id.strip().lower()


class MutationQueue:
    """Pending mutations in enqueue order.

    Mutations move through three states: pending (eligible for the next
    push snapshot), blocked (conflicted, waiting for a user decision) and
    gone (acknowledged, rejected or discarded). All operations take an
    internal lock so local edits from other threads append atomically.

    Enqueuing a mutation replaces any earlier mutation for the same
    ``(entity, entity_id)``; a newer delete must never be resurrected by an
    older upsert still sitting in the queue.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Mutation] = {}
        self._revision = 0

    @property
    def revision(self) -> int:
        """Counter bumped whenever a mutation becomes pushable; used to detect edits made mid-cycle."""
        return self._revision

    def enqueue(
        self,
        entity: EntityKind | str,
        entity_id: str,
        mutation_type: MutationType | str,
        base_version: int,
        payload: dict[str, Any] | None = None,
        *,
        updated_at_client: datetime | None = None,
        op_id: str | None = None,
    ) -> Mutation:
        """Append a new mutation and return it.

        Raises:
            ValueError: If the entity kind, id or mutation type is invalid.
        """
        kind = EntityKind.parse(entity)
        if kind is None:
            raise ValueError(f"Unsupported sync entity: {entity!r}")
        if not entity_id or not entity_id.strip():
            raise ValueError("Entity id must not be empty")

        mutation = Mutation(
            op_id=_key(op_id) if op_id else str(uuid.uuid4()),
            entity=kind,
            entity_id=entity_id.strip(),
            type=MutationType(mutation_type),
            base_version=max(0, int(base_version)),
            payload=dict(payload or {}),
            updated_at_client=updated_at_client or utcnow(),
        )

        with self._lock:
            replaced = [
                op
                for op, existing in self._items.items()
                if existing.entity == kind and existing.entity_id == mutation.entity_id
            ]
            for op in replaced:
                del self._items[op]
            self._items[mutation.op_id] = mutation
            self._revision += 1

        if replaced:
            logger.debug(
                "Coalesced %d pending mutation(s) for %s/%s", len(replaced), kind, mutation.entity_id
            )
        return mutation

    def snapshot(self, limit: int | None = None) -> list[Mutation]:
        """Pending (non-blocked) mutations in queue order."""
        with self._lock:
            pending = [m for m in self._items.values() if not m.blocked]
        return pending[:limit] if limit is not None else pending

    def get(self, op_id: str) -> Mutation | None:
        with self._lock:
            return self._items.get(_key(op_id))

    def acknowledge(self, op_ids: Iterable[str]) -> int:
        """Remove acknowledged mutations. Returns how many were removed."""
        removed = 0
        with self._lock:
            for op_id in op_ids:
                if self._items.pop(_key(op_id), None) is not None:
                    removed += 1
        return removed

    def reject(self, op_id: str, reason: str) -> Mutation | None:
        """Drop a mutation the authority refused; returns it for reporting."""
        with self._lock:
            mutation = self._items.pop(_key(op_id), None)
        if mutation is None:
            return None
        return replace(mutation, last_error=reason, attempts=mutation.attempts + 1)

    def block(self, op_id: str, reason: str) -> bool:
        """Hold a conflicted mutation back from future pushes until resolved."""
        with self._lock:
            mutation = self._items.get(_key(op_id))
            if mutation is None:
                return False
            self._items[mutation.op_id] = replace(
                mutation, blocked=True, last_error=reason, attempts=mutation.attempts + 1
            )
        return True

    def rebase(self, op_id: str, base_version: int) -> Mutation | None:
        """Unblock a mutation with a new base version (the "keep mine" path)."""
        with self._lock:
            mutation = self._items.get(_key(op_id))
            if mutation is None:
                return None
            rebased = replace(
                mutation,
                base_version=max(0, base_version),
                blocked=False,
                attempts=0,
                last_error=None,
            )
            self._items[mutation.op_id] = rebased
            self._revision += 1
        return rebased

    def discard(self, op_id: str) -> Mutation | None:
        """Remove a mutation without sending it (the "keep server" path)."""
        with self._lock:
            return self._items.pop(_key(op_id), None)

    def all(self) -> list[Mutation]:
        with self._lock:
            return list(self._items.values())

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for m in self._items.values() if not m.blocked)

    @property
    def blocked_count(self) -> int:
        with self._lock:
            return sum(1 for m in self._items.values() if m.blocked)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, op_id: object) -> bool:
        if not isinstance(op_id, str):
            return False
        with self._lock:
            return _key(op_id) in self._items

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def load(self, mutations: Iterable[Mutation]) -> None:
        """Restore persisted mutations, preserving their order."""
        with self._lock:
            self._items = {m.op_id: m for m in mutations}
