"""Sync orchestrator: drives push/pull cycles for one device."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from klettrack_sync.config import SyncSettings
from klettrack_sync.core.entities import EntityKind
from klettrack_sync.storage.mutation_queue import MutationQueue
from klettrack_sync.storage.record_store import EntityRecordStore
from klettrack_sync.storage.sqlite_state import SQLiteSyncState
from klettrack_sync.sync.api_client import SyncAPIClient
from klettrack_sync.sync.conflicts import (
    ConflictEntry,
    ConflictResolver,
    Resolution,
    ResolutionOutcome,
)
from klettrack_sync.sync.debounce import SyncDebouncer
from klettrack_sync.sync.errors import ConfigurationError, MutationRejectedError, UnauthorizedError
from klettrack_sync.sync.protocol import (
    Mutation,
    MutationType,
    PullChange,
    PullRequest,
    PushRequest,
    PushResult,
)
from klettrack_sync.sync.telemetry import ConflictAuditLog, TriggerMetrics
from klettrack_sync.utils.timeutils import to_iso, utcnow

logger = logging.getLogger(__name__)

MAX_AUTOMATIC_RETRIES = 5
MAX_AUTOMATIC_RETRY_DELAY = 60.0


class SyncPhase(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the orchestrator's state for display."""

    phase: SyncPhase
    conflict_count: int = 0
    message: str | None = None
    last_successful_sync_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "conflict_count": self.conflict_count,
            "message": self.message,
            "last_successful_sync_at": to_iso(self.last_successful_sync_at)
            if self.last_successful_sync_at
            else None,
        }


@dataclass
class SyncCycleResult:
    """What one push/pull cycle did."""

    cursor: str | None = None
    pushed: int = 0
    acknowledged: list[str] = field(default_factory=list)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    rejected: list[MutationRejectedError] = field(default_factory=list)
    pulled: int = 0
    applied: int = 0
    pages: int = 0
    skipped_push: bool = False
    skipped: bool = False
    coalesced: bool = False


def _chunks(items: list[Mutation], size: int) -> list[list[Mutation]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class SyncOrchestrator:
    """
    Runs sync cycles against the authority, one at a time.

    A cycle snapshots the pending mutations, pushes them in batches, then
    pulls every page of changes since the push cursor and applies them to
    the record store. The cursor advances only after the whole pull has
    been applied and, when persistence is attached, committed together with
    the touched records. Only then are the push results folded into the
    queue: acknowledged and rejected mutations leave, conflicted ones are
    blocked and handed to the resolver. A cycle that fails anywhere leaves
    the queue and the cursor as they were.

    A cycle requested while another is running joins it if the running
    cycle has not started pulling and the queue has not changed since its
    snapshot; otherwise it waits and runs afterwards. Cancelling a caller
    never cancels the cycle it is waiting on.

    Usage:
        async with SyncAPIClient(url, get_token) as api:
            orchestrator = SyncOrchestrator(api, device_id=get_device_id(data_dir))
            await orchestrator.enqueue_local_mutation("plans", plan_id, "upsert", doc)
            result = await orchestrator.sync("manual")
    """

    def __init__(
        self,
        api: SyncAPIClient | None,
        *,
        device_id: str,
        store: EntityRecordStore | None = None,
        queue: MutationQueue | None = None,
        state: SQLiteSyncState | None = None,
        audit_log: ConflictAuditLog | None = None,
        settings: SyncSettings | None = None,
        debouncer: SyncDebouncer | None = None,
        user_id: str | None = None,
    ) -> None:
        self._api = api
        self._device_id = device_id
        self._store = store if store is not None else EntityRecordStore()
        self._queue = queue if queue is not None else MutationQueue()
        self._state = state
        self._settings = settings or SyncSettings()
        self._debouncer = debouncer
        self._retry_debouncer = SyncDebouncer()
        self._resolver = ConflictResolver(
            self._queue,
            self._store,
            audit_log=audit_log,
            after_resolve=self._after_resolve,
        )

        self._user_id = user_id
        self._enabled = True
        self._cursor: str | None = None
        self._last_successful_sync_at: datetime | None = None
        self._phase = SyncPhase.IDLE
        self._message: str | None = None
        self._consecutive_failures = 0
        self._metrics = TriggerMetrics()

        self._cycle_lock = asyncio.Lock()
        self._current: asyncio.Task[SyncCycleResult] | None = None
        self._snapshot_revision = -1
        self._pull_started = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def store(self) -> EntityRecordStore:
        return self._store

    @property
    def queue(self) -> MutationQueue:
        return self._queue

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def metrics(self) -> TriggerMetrics:
        return self._metrics

    @property
    def cursor(self) -> str | None:
        return self._cursor

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_syncing(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            phase=self._phase,
            conflict_count=len(self._resolver),
            message=self._message,
            last_successful_sync_at=self._last_successful_sync_at,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore records, queue, conflicts and cursor from persistence."""
        if self._state is None:
            return
        persisted = await self._state.load()
        self._store.load(persisted.records)
        self._queue.load(persisted.mutations)
        self._resolver.restore(ConflictEntry.from_conflict(c) for c in persisted.conflicts)
        self._cursor = persisted.cursor
        self._last_successful_sync_at = persisted.last_successful_sync_at
        self._enabled = persisted.enabled
        if self._user_id is None:
            self._user_id = persisted.user_id
        self._phase = self._settled_phase()
        logger.info(
            "Loaded sync state: %d records, %d queued, %d conflicts",
            len(persisted.records),
            len(persisted.mutations),
            len(persisted.conflicts),
        )

    async def close(self) -> None:
        if self._debouncer is not None:
            self._debouncer.cancel()
        self._retry_debouncer.cancel()
        if self._current is not None and not self._current.done():
            self._current.cancel()
            try:
                await self._current
            except asyncio.CancelledError:
                pass

    async def set_sync_enabled(self, enabled: bool, user_id: str | None = None) -> None:
        """Turn sync on or off. Enabling for a different user wipes local state."""
        if enabled and user_id and self._user_id and user_id != self._user_id:
            logger.info("Sync account changed, clearing local sync state")
            await self.reset_local_state()
        if user_id:
            self._user_id = user_id

        self._enabled = enabled
        if not enabled:
            if self._debouncer is not None:
                self._debouncer.cancel()
            self._retry_debouncer.cancel()
        self._message = None
        self._phase = self._settled_phase()

        if self._state is not None:
            await self._state.save_identity(self._device_id, self._user_id, self._enabled)

    async def sign_out(self, *, clear_local_data: bool = False) -> None:
        """Disable sync for a signed-out user, optionally dropping local state."""
        if clear_local_data:
            await self.reset_local_state()
        await self.set_sync_enabled(False)
        self._user_id = None
        if self._state is not None:
            await self._state.save_identity(self._device_id, None, False)

    async def reset_local_state(self) -> None:
        """Forget cursor, queue, conflicts and records."""
        self._queue.clear()
        self._resolver.clear()
        self._store.reset()
        self._cursor = None
        self._last_successful_sync_at = None
        self._consecutive_failures = 0
        if self._state is not None:
            await self._state.clear()

    # ------------------------------------------------------------------
    # Local edits
    # ------------------------------------------------------------------

    async def enqueue_local_mutation(
        self,
        entity: EntityKind | str,
        entity_id: str,
        mutation_type: MutationType | str,
        payload: dict[str, Any] | None = None,
        *,
        base_version: int | None = None,
        apply_locally: bool = True,
    ) -> Mutation:
        """Queue a local write for the next push.

        ``base_version`` defaults to the version currently in the store. With
        ``apply_locally`` the change is also written to the store right away
        so reads reflect it before the authority acknowledges.

        Raises:
            ValueError: If the entity kind or id is invalid.
        """
        if base_version is None:
            base_version = self._store.version(entity, entity_id.strip())
        mutation = self._queue.enqueue(entity, entity_id, mutation_type, base_version, payload)

        touched = None
        if apply_locally:
            if mutation.type == MutationType.DELETE:
                doc: dict[str, Any] = {"id": mutation.entity_id, "is_deleted": True}
            else:
                doc = {**mutation.payload, "id": mutation.entity_id}
            if self._store.upsert_local(mutation.entity, doc) is not None:
                touched = (mutation.entity, mutation.entity_id)

        dropped = self._resolver.discard_stale()
        if dropped:
            logger.debug("Dropped %d conflict(s) superseded by a local edit", dropped)

        if self._state is not None:
            if touched is not None:
                await self._state.save_records(self._store.records_for([touched]))
            await self._persist_queue()

        self._request_sync("local_edit")
        return mutation

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, conflict: ConflictEntry | str, choice: Resolution | str
    ) -> ResolutionOutcome:
        outcome = await self._resolver.resolve(conflict, choice)
        self._phase = self._settled_phase()
        return outcome

    async def resolve_all(self, choice: Resolution | str) -> int:
        resolved = await self._resolver.resolve_all(choice)
        self._phase = self._settled_phase()
        return resolved

    async def _after_resolve(self, outcome: ResolutionOutcome) -> None:
        if self._state is not None:
            kind = EntityKind.parse(outcome.entity)
            if outcome.applied_server_doc and kind is not None:
                await self._state.save_records(self._store.records_for([(kind, outcome.entity_id)]))
            await self._persist_queue()
        self._request_sync("conflict_resolved")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def sync(self, reason: str = "manual") -> SyncCycleResult:
        """Run one push/pull cycle (or join the one already running).

        Raises:
            SyncError: When authorization or transport fails; the queue and
                the cursor are left as they were before the cycle.
        """
        self._metrics.record_trigger(reason)
        if not self._enabled:
            logger.debug("Sync disabled, ignoring %s trigger", reason)
            return SyncCycleResult(cursor=self._cursor, skipped=True)

        running = self._current
        if (
            running is not None
            and not running.done()
            and not self._pull_started
            and self._queue.revision == self._snapshot_revision
        ):
            logger.debug("Coalescing %s trigger into the running cycle", reason)
            result = await asyncio.shield(running)
            return replace(result, coalesced=True)

        # The lock is released by the cycle task itself, so a cancelled caller
        # cannot let a second cycle start while this one is still running.
        await self._cycle_lock.acquire()
        try:
            snapshot = self._queue.snapshot()
            self._snapshot_revision = self._queue.revision
            self._pull_started = False
            task = asyncio.get_running_loop().create_task(self._run_cycle(snapshot, reason))
        except BaseException:
            self._cycle_lock.release()
            raise
        task.add_done_callback(self._cycle_finished)
        self._current = task
        return await asyncio.shield(task)

    def _cycle_finished(self, task: asyncio.Task[SyncCycleResult]) -> None:
        self._cycle_lock.release()
        if not task.cancelled():
            # Mark the outcome retrieved; callers that are still waiting get it via shield.
            task.exception()

    async def _run_cycle(self, snapshot: list[Mutation], reason: str) -> SyncCycleResult:
        self._phase = SyncPhase.SYNCING
        self._message = None
        try:
            result = await self._execute(snapshot)
        except asyncio.CancelledError:
            logger.info("Sync cycle (%s) cancelled", reason)
            self._phase = self._settled_phase()
            raise
        except Exception as e:
            self._consecutive_failures += 1
            self._metrics.record_failure()
            self._phase = SyncPhase.FAILED
            self._message = str(e)
            logger.warning("Sync cycle (%s) failed: %s", reason, e)
            self._schedule_retry(e)
            raise

        self._consecutive_failures = 0
        self._last_successful_sync_at = utcnow()
        self._phase = self._settled_phase()
        logger.info(
            "Sync cycle (%s): pushed %d, acknowledged %d, conflicts %d, rejected %d, applied %d/%d",
            reason,
            result.pushed,
            len(result.acknowledged),
            len(result.conflicts),
            len(result.rejected),
            result.applied,
            result.pulled,
        )
        return result

    async def _execute(self, snapshot: list[Mutation]) -> SyncCycleResult:
        if self._api is None:
            raise ConfigurationError("No sync endpoint configured.")
        result = SyncCycleResult(cursor=self._cursor)
        cursor = self._cursor

        responses: list[tuple[list[Mutation], PushResult]] = []
        if snapshot:
            for batch in _chunks(snapshot, max(1, self._settings.push_batch_size)):
                response = await self._api.push(
                    PushRequest(device_id=self._device_id, base_cursor=cursor, mutations=tuple(batch))
                )
                responses.append((batch, response))
                cursor = response.new_cursor
        else:
            result.skipped_push = True

        self._pull_started = True
        changes: list[PullChange] = []
        page_cursor = cursor
        while True:
            page = await self._api.pull(
                PullRequest(
                    device_id=self._device_id,
                    cursor=page_cursor,
                    limit=self._settings.pull_limit,
                )
            )
            result.pages += 1
            changes.extend(page.changes)
            page_cursor = page.new_cursor
            if not page.has_more:
                break
            if result.pages >= self._settings.max_pull_pages:
                logger.warning(
                    "Stopped pulling after %d pages; remaining changes wait for the next cycle",
                    result.pages,
                )
                break

        touched = self._store.apply_pull_changes(changes)
        result.pulled = len(changes)
        result.applied = len(touched)

        if self._state is not None:
            await self._state.commit_pull(self._store.records_for(touched), page_cursor, utcnow())
        self._cursor = page_cursor
        result.cursor = page_cursor

        # Push outcomes reach the queue only once the pull is committed.
        for batch, response in responses:
            self._apply_push_result(batch, response, result)
        self._resolver.discard_stale()
        if responses:
            await self._persist_queue()
        return result

    def _apply_push_result(
        self, batch: list[Mutation], response: PushResult, result: SyncCycleResult
    ) -> None:
        result.pushed += len(batch)

        removed = self._queue.acknowledge(response.acknowledged_op_ids)
        result.acknowledged.extend(response.acknowledged_op_ids)
        if removed != len(response.acknowledged_op_ids):
            logger.debug(
                "%d acknowledged op(s) were no longer queued",
                len(response.acknowledged_op_ids) - removed,
            )

        for failure in response.failed:
            if failure.op_id is None:
                logger.warning("Push reported a failure without an op id: %s", failure.reason)
                result.rejected.append(MutationRejectedError("unknown", failure.reason))
                continue
            mutation = self._queue.reject(failure.op_id, failure.reason)
            logger.warning("Mutation %s rejected: %s", failure.op_id, failure.reason)
            result.rejected.append(
                MutationRejectedError(
                    failure.op_id,
                    failure.reason,
                    entity=mutation.entity.value if mutation is not None else "",
                    entity_id=mutation.entity_id if mutation is not None else "",
                )
            )

        if response.conflicts:
            result.conflicts.extend(self._resolver.register(response.conflicts))

    async def _persist_queue(self) -> None:
        if self._state is None:
            return
        await self._state.save_queue(
            self._queue.all(), [entry.to_dict() for entry in self._resolver.pending]
        )

    def _settled_phase(self) -> SyncPhase:
        if not self._enabled:
            return SyncPhase.DISABLED
        if len(self._resolver):
            return SyncPhase.CONFLICT
        return SyncPhase.IDLE

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _request_sync(self, reason: str) -> None:
        if self._debouncer is None or not self._enabled:
            return
        self._debouncer.schedule(self._settings.debounce_seconds, lambda: self.sync(reason))

    def _schedule_retry(self, error: Exception) -> None:
        if not self._settings.auto_retry or not self._enabled:
            return
        if isinstance(error, (UnauthorizedError, ConfigurationError)):
            return
        if self._consecutive_failures > MAX_AUTOMATIC_RETRIES:
            logger.info("Giving up automatic retries after %d failures", self._consecutive_failures)
            return
        delay = self.automatic_retry_delay_seconds(self._consecutive_failures)
        logger.info("Retrying sync in %.2fs", delay)
        self._retry_debouncer.schedule(delay, lambda: self.sync("automatic_retry"))

    @staticmethod
    def automatic_retry_delay_seconds(
        failure_count: int,
        max_delay: float = MAX_AUTOMATIC_RETRY_DELAY,
        jitter: float | None = None,
    ) -> float:
        """Backoff before the next automatic retry (``failure_count`` is 1-based)."""
        base = min(2.0 ** max(0, failure_count - 1), max_delay)
        if jitter is None:
            jitter = random.uniform(0, 0.25)
        return min(base + min(max(jitter, 0.0), 0.25), max_delay)
