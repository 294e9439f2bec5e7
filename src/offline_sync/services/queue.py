"""Pending-operation queue.

Ready = attempts < max_attempts, next_retry_at_ms <= now and no open conflict.
Ready items come back ordered by (priority, created_at_ms, seq) so repeated
runs over the same queue contents are deterministic.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Any, Literal

from sqlmodel.ext.asyncio.session import AsyncSession

from offline_sync.domain.backoff import BackoffPolicy
from offline_sync.domain.outcomes import Outcome
from offline_sync.errors import ConflictDetected, ExhaustedRetries, NotFoundError
from offline_sync.models import ConflictRecord, PendingOperation, SyncAction, SyncPriority
from offline_sync.repositories import sync_repo
from offline_sync.repositories.store import DurableStore, QueryOptions
from offline_sync.services import event_log
from offline_sync.services.event_log import EventLog
from offline_sync.services.metadata import SyncMetadataManager
from offline_sync.sync_utils import DAY_MS, Clock, new_id, now_ms

logger = logging.getLogger(__name__)

ItemStatus = Literal["pending", "failed", "conflict", "all"]

_DEFAULT_PRIORITY: dict[SyncAction, SyncPriority] = {
    SyncAction.DELETE: SyncPriority.CRITICAL,
    SyncAction.CREATE: SyncPriority.HIGH,
    SyncAction.UPDATE: SyncPriority.NORMAL,
}


def default_priority(action: SyncAction | str) -> SyncPriority:
    return _DEFAULT_PRIORITY[SyncAction(action)]


@dataclass(frozen=True)
class EnqueueOptions:
    priority: SyncPriority | int | None = None
    max_attempts: int | None = None
    delay_ms: int = 0


@dataclass(frozen=True)
class NewOperation:
    action: SyncAction
    entity_type: str
    entity_id: str
    payload: dict[str, Any]
    priority: SyncPriority
    max_attempts: int
    delay_ms: int = 0


@dataclass(frozen=True)
class QueueStats:
    total_items: int
    # attempts < max_attempts; includes items blocked by a conflict.
    pending_items: int
    failed_items: int
    conflict_items: int
    average_wait_time_ms: float
    oldest_item_ms: int | None
    newest_item_ms: int | None


@dataclass(frozen=True)
class AttemptResult:
    operation: PendingOperation
    removed: bool = False
    conflict: ConflictRecord | None = None


class PendingOperationQueue:
    def __init__(
        self,
        store: DurableStore,
        *,
        metadata: SyncMetadataManager,
        events: EventLog,
        backoff: BackoffPolicy | None = None,
        default_max_attempts: int = 3,
        clock: Clock = now_ms,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        self._store = store
        self._metadata = metadata
        self._events = events
        self._backoff = backoff or BackoffPolicy()
        self._default_max_attempts = default_max_attempts
        self._clock = clock
        self._rng = rng

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def prepare(
        self,
        action: SyncAction | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        options: EnqueueOptions | None = None,
    ) -> NewOperation:
        """Validate an operation before anything is written."""
        opts = options or EnqueueOptions()
        action = SyncAction(action)
        entity_type = (entity_type or "").strip()
        entity_id = (entity_id or "").strip()
        if not entity_type:
            raise ValueError("entity_type is required")
        if not entity_id:
            raise ValueError("entity_id is required")
        if payload is not None and not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
        priority = (
            SyncPriority(opts.priority) if opts.priority is not None else default_priority(action)
        )
        max_attempts = (
            opts.max_attempts if opts.max_attempts is not None else self._default_max_attempts
        )
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if opts.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        return NewOperation(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=dict(payload or {}),
            priority=priority,
            max_attempts=max_attempts,
            delay_ms=opts.delay_ms,
        )

    async def add(self, session: AsyncSession, new: NewOperation) -> PendingOperation:
        """Insert a prepared operation inside the caller's transaction."""
        now = self._clock()
        op = PendingOperation(
            id=new_id(),
            action=new.action.value,
            entity_type=new.entity_type,
            entity_id=new.entity_id,
            payload=dict(new.payload),
            priority=int(new.priority),
            attempts=0,
            max_attempts=new.max_attempts,
            next_retry_at_ms=now + new.delay_ms,
            created_at_ms=now,
        )
        op.seq = sync_repo.next_seq()
        session.add(op)
        await session.flush()
        await session.refresh(op, attribute_names=["seq"])
        meta = await sync_repo.get_or_create_metadata(session)
        meta.total_offline_actions = int(meta.total_offline_actions) + 1
        meta.pending_count = int(meta.pending_count) + 1
        session.add(meta)
        return op

    async def announce(self, op: PendingOperation) -> None:
        logger.info(
            "operation enqueued id=%s action=%s entity_type=%s entity_id=%s priority=%s",
            op.id,
            op.action,
            op.entity_type,
            op.entity_id,
            op.priority,
        )
        await self._events.log(
            event_log.OPERATION_ENQUEUED,
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            details={"operation_id": op.id, "action": op.action, "priority": op.priority},
        )

    async def enqueue(
        self,
        action: SyncAction | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        options: EnqueueOptions | None = None,
    ) -> PendingOperation:
        new = self.prepare(action, entity_type, entity_id, payload, options)

        async def _enqueue(session: AsyncSession) -> PendingOperation:
            return await self.add(session, new)

        op = await self._store.run(_enqueue)
        await self.announce(op)
        return op

    async def get(self, op_id: str) -> PendingOperation | None:
        return await self._store.get(PendingOperation, op_id)

    async def get_ready(
        self,
        now: int | None = None,
        *,
        entity_types: Collection[str] | None = None,
        max_priority: int | None = None,
        limit: int | None = None,
    ) -> list[PendingOperation]:
        at = self._clock() if now is None else now

        async def _ready(session: AsyncSession) -> list[PendingOperation]:
            return await sync_repo.list_ready(
                session, at, entity_types=entity_types, max_priority=max_priority, limit=limit
            )

        return await self._store.run(_ready)

    async def record_attempt(
        self, op_id: str, outcome: Outcome, *, now: int | None = None
    ) -> AttemptResult:
        at = self._clock() if now is None else now

        async def _record(session: AsyncSession) -> AttemptResult:
            op = await session.get(PendingOperation, op_id)
            if op is None:
                raise NotFoundError(f"pending operation not found: {op_id}")
            if outcome.kind != "success":
                if op.in_conflict:
                    raise ConflictDetected(
                        f"operation {op_id} is blocked by conflict {op.conflict_id}"
                    )
                if op.exhausted:
                    raise ExhaustedRetries(f"operation {op_id} used all {op.max_attempts} attempts")

            if outcome.kind == "success":
                await session.delete(op)
                return AttemptResult(operation=op, removed=True)

            op.last_attempt_at_ms = at
            op.last_error = outcome.error

            if outcome.kind == "conflict":
                # Attempts stay untouched; the conflict blocks the item instead.
                conflict = ConflictRecord(
                    conflict_id=new_id(),
                    operation_id=op.id,
                    action=op.action,
                    entity_type=op.entity_type,
                    entity_id=op.entity_id,
                    local_data=dict(op.payload or {}),
                    server_data=outcome.server_data,
                    created_at_ms=at,
                )
                session.add(conflict)
                op.conflict_id = conflict.conflict_id
                session.add(op)
                return AttemptResult(operation=op, conflict=conflict)

            if outcome.kind == "terminal":
                op.attempts = op.max_attempts
            else:
                op.attempts = min(op.attempts + 1, op.max_attempts)
            op.next_retry_at_ms = self._backoff.next_retry_at_ms(
                attempts=op.attempts, max_attempts=op.max_attempts, now_ms=at, rng=self._rng
            )
            session.add(op)
            return AttemptResult(operation=op)

        result = await self._store.run(_record)
        await self._log_attempt(result, outcome)
        return result

    async def _log_attempt(self, result: AttemptResult, outcome: Outcome) -> None:
        op = result.operation
        if result.removed:
            await self._events.log(
                event_log.OPERATION_SYNCED,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                details={"operation_id": op.id, "action": op.action},
            )
            return
        if result.conflict is not None:
            logger.warning(
                "conflict detected op_id=%s entity_type=%s entity_id=%s conflict_id=%s",
                op.id,
                op.entity_type,
                op.entity_id,
                result.conflict.conflict_id,
            )
            await self._events.log(
                event_log.CONFLICT_DETECTED,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                details={"operation_id": op.id, "conflict_id": result.conflict.conflict_id},
            )
            return
        logger.info(
            "operation attempt failed op_id=%s kind=%s attempts=%s/%s status=%s error=%s",
            op.id,
            outcome.kind,
            op.attempts,
            op.max_attempts,
            outcome.status_code,
            outcome.error,
        )
        await self._events.log(
            event_log.OPERATION_FAILED,
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            details={
                "operation_id": op.id,
                "attempts": op.attempts,
                "max_attempts": op.max_attempts,
                "status_code": outcome.status_code,
                "exhausted": op.exhausted,
            },
            error=outcome.error,
        )

    async def clear_conflict(
        self, op_id: str, *, payload: dict[str, Any] | None = None
    ) -> PendingOperation:
        """Unblock a conflicted item so the next run sends it again (optionally with new data)."""
        at = self._clock()

        async def _clear(session: AsyncSession) -> PendingOperation:
            op = await session.get(PendingOperation, op_id)
            if op is None:
                raise NotFoundError(f"pending operation not found: {op_id}")
            op.conflict_id = None
            op.next_retry_at_ms = at
            if payload is not None:
                op.payload = dict(payload)
            session.add(op)
            return op

        return await self._store.run(_clear)

    async def remove(self, op_id: str) -> bool:
        return await self._store.delete(PendingOperation, op_id)

    async def refresh_metadata(self) -> None:
        await self._metadata.refresh()

    async def clear(self) -> int:
        removed = await self._store.clear(PendingOperation)
        await self._metadata.refresh()
        return removed

    async def count_pending(self) -> int:
        return await self._store.run(sync_repo.count_pending)

    async def get_items_by_status(self, status: ItemStatus = "all") -> list[PendingOperation]:
        items = await self._store.get_all(
            PendingOperation, QueryOptions(order_by=("priority", "created_at_ms", "seq"))
        )
        if status == "pending":
            return [op for op in items if not op.exhausted and not op.in_conflict]
        if status == "failed":
            return [op for op in items if op.exhausted]
        if status == "conflict":
            return [op for op in items if op.in_conflict]
        if status == "all":
            return items
        raise ValueError(f"unknown status: {status}")

    async def stats(self) -> QueueStats:
        items = await self._store.get_all(PendingOperation)
        now = self._clock()
        created = [op.created_at_ms for op in items]
        return QueueStats(
            total_items=len(items),
            pending_items=sum(1 for op in items if not op.exhausted),
            failed_items=sum(1 for op in items if op.exhausted),
            conflict_items=sum(1 for op in items if op.in_conflict),
            average_wait_time_ms=(sum(now - c for c in created) / len(created)) if created else 0.0,
            oldest_item_ms=min(created) if created else None,
            newest_item_ms=max(created) if created else None,
        )

    async def cleanup(self, max_age_days: int) -> int:
        """Drop permanently failed items created before the cutoff."""
        if max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")
        cutoff = self._clock() - max_age_days * DAY_MS

        async def _cleanup(session: AsyncSession) -> int:
            stale = await sync_repo.list_exhausted(session, created_before_ms=cutoff)
            for op in stale:
                await session.delete(op)
            return len(stale)

        removed = await self._store.run(_cleanup)
        if removed:
            logger.info("queue cleanup removed=%s max_age_days=%s", removed, max_age_days)
        await self._metadata.refresh()
        return removed

    async def retry_failed(self, op_ids: Collection[str] | None = None) -> int:
        """Give exhausted items a fresh attempt budget, ready immediately."""
        at = self._clock()

        async def _retry(session: AsyncSession) -> int:
            failed = await sync_repo.list_exhausted(session, ids=op_ids)
            for op in failed:
                op.attempts = 0
                op.next_retry_at_ms = at
                session.add(op)
            return len(failed)

        reset = await self._store.run(_retry)
        if reset:
            logger.info("retrying failed operations count=%s", reset)
        await self._metadata.refresh()
        return reset

    async def rebind_entity_id(self, entity_type: str, old_id: str, new_id_: str) -> int:
        """Point queued operations at the server id once a create has been accepted."""
        if old_id == new_id_:
            return 0

        async def _rebind(session: AsyncSession) -> int:
            ops = await sync_repo.list_operations_for_entity(session, entity_type, old_id)
            for op in ops:
                op.entity_id = new_id_
                session.add(op)
            return len(ops)

        return await self._store.run(_rebind)
