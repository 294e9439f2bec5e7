from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from sqlmodel.ext.asyncio.session import AsyncSession

from offline_sync.errors import NotFoundError
from offline_sync.models import OfflineRecord, PendingOperation, RecordStatus, SyncAction
from offline_sync.repositories import sync_repo
from offline_sync.repositories.store import DurableStore, QueryOptions
from offline_sync.services import event_log
from offline_sync.services.event_log import EventLog
from offline_sync.services.queue import EnqueueOptions, PendingOperationQueue
from offline_sync.sync_utils import DAY_MS, Clock, new_temp_id, now_ms

logger = logging.getLogger(__name__)


async def _drop_unsent(session: AsyncSession, record: OfflineRecord) -> int:
    """Remove a record the remote never saw, with its queued operations.

    Returns 0 and leaves everything in place when the remote may already know
    the entity.
    """
    if record.server_id is not None or record.status == RecordStatus.SYNCING.value:
        return 0
    queued = await sync_repo.list_operations_for_entity(session, record.entity_type, record.id)
    if not any(op.action == SyncAction.CREATE.value for op in queued):
        return 0
    if any(op.in_conflict for op in queued):
        return 0
    for op in queued:
        await session.delete(op)
    await session.delete(record)
    return len(queued)


class OfflineRecordStore:
    """Entity snapshots written locally before the remote authority has them.

    A record is linked to its queued operations by entity type and id. Dropping
    an operation never drops the record; only a confirmed remote delete or an
    explicit local delete does.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        queue: PendingOperationQueue,
        events: EventLog,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._queue = queue
        self._events = events
        self._clock = clock

    async def save(
        self,
        entity_type: str,
        data: dict[str, Any],
        *,
        record_id: str | None = None,
        action: SyncAction | str = SyncAction.CREATE,
        enqueue: bool = True,
        options: EnqueueOptions | None = None,
    ) -> tuple[OfflineRecord, PendingOperation | None]:
        """Write the record and its queued operation in one transaction.

        Deleting a record whose create has not left the queue yet drops both
        locally and sends nothing.
        """
        entity_type = (entity_type or "").strip()
        if not entity_type:
            raise ValueError("entity_type is required")
        action = SyncAction(action)
        rid = record_id or new_temp_id(self._clock)
        new_op = (
            self._queue.prepare(action, entity_type, rid, data, options) if enqueue else None
        )
        at = self._clock()

        async def _save(
            session: AsyncSession,
        ) -> tuple[OfflineRecord, PendingOperation | None, int]:
            record = await session.get(OfflineRecord, rid)
            if record is not None and record.entity_type != entity_type:
                raise ValueError(
                    f"record {rid} belongs to {record.entity_type}, not {entity_type}"
                )
            if action == SyncAction.DELETE and record is not None:
                dropped = await _drop_unsent(session, record)
                if dropped:
                    return record, None, dropped

            if record is None:
                record = OfflineRecord(
                    id=rid,
                    entity_type=entity_type,
                    data=dict(data),
                    status=RecordStatus.PENDING.value,
                    created_at_ms=at,
                )
            else:
                record.data = dict(data)
                record.status = RecordStatus.PENDING.value
            session.add(record)

            op: PendingOperation | None = None
            if new_op is not None:
                # Updates and deletes of an already accepted create target the server id.
                if action != SyncAction.CREATE and record.server_id:
                    target = replace(new_op, entity_id=record.server_id)
                else:
                    target = new_op
                op = await self._queue.add(session, target)
            return record, op, 0

        record, op, dropped = await self._store.run(_save)
        if dropped:
            logger.info(
                "dropped unsent record id=%s entity_type=%s operations=%s",
                rid,
                entity_type,
                dropped,
            )
            await self._events.log(
                event_log.RECORD_DELETED,
                entity_type=entity_type,
                entity_id=rid,
                details={"unsent_operations": dropped},
            )
            await self._queue.refresh_metadata()
            return record, None

        await self._events.log(
            event_log.RECORD_SAVED,
            entity_type=entity_type,
            entity_id=rid,
            details={"action": action.value},
        )
        if op is not None:
            await self._queue.announce(op)
        return record, op

    async def get(self, record_id: str) -> OfflineRecord | None:
        return await self._store.get(OfflineRecord, record_id)

    async def find_for_entity(self, entity_type: str, entity_id: str) -> OfflineRecord | None:
        """Look a record up by its local id, falling back to the server-assigned id.

        Ids are only unique within an entity type.
        """
        record = await self._store.get(OfflineRecord, entity_id)
        if record is not None and record.entity_type == entity_type:
            return record
        matches = await self._store.get_by_index(
            OfflineRecord,
            "server_id",
            entity_id,
            QueryOptions(limit=1, filters={"entity_type": entity_type}),
        )
        return matches[0] if matches else None

    async def list_records(
        self,
        *,
        entity_type: str | None = None,
        status: RecordStatus | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[OfflineRecord]:
        filters: dict[str, Any] = {}
        if entity_type:
            filters["entity_type"] = entity_type
        if status is not None:
            filters["status"] = RecordStatus(status).value
        return await self._store.get_all(
            OfflineRecord,
            QueryOptions(limit=limit, offset=offset, order_by=("created_at_ms",), filters=filters),
        )

    async def by_status(self, status: RecordStatus | str) -> list[OfflineRecord]:
        return await self._store.get_by_index(
            OfflineRecord,
            "status",
            RecordStatus(status).value,
            QueryOptions(order_by=("created_at_ms",)),
        )

    async def update_status(
        self,
        record_id: str,
        status: RecordStatus | str,
        *,
        error: str | None = None,
        server_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> OfflineRecord:
        status = RecordStatus(status)
        at = self._clock()

        async def _update(session: AsyncSession) -> OfflineRecord:
            record = await session.get(OfflineRecord, record_id)
            if record is None:
                raise NotFoundError(f"offline record not found: {record_id}")
            record.status = status.value
            if status == RecordStatus.SYNCED:
                record.synced_at_ms = at
                record.last_error = None
            elif status in (RecordStatus.RETRY, RecordStatus.ERROR):
                record.retry_count = int(record.retry_count) + 1
                record.last_error = error
            elif error is not None:
                record.last_error = error
            if server_id:
                record.server_id = server_id
            if data is not None:
                record.data = dict(data)
            session.add(record)
            return record

        return await self._store.run(_update)

    async def delete(self, record_id: str) -> bool:
        removed = await self._store.delete(OfflineRecord, record_id)
        if removed:
            await self._events.log(event_log.RECORD_DELETED, entity_id=record_id)
        return removed

    async def purge_synced(self, older_than_days: int) -> int:
        cutoff = self._clock() - older_than_days * DAY_MS

        async def _purge(session: AsyncSession) -> int:
            rows = await sync_repo.list_synced_records_before(session, cutoff)
            for row in rows:
                await session.delete(row)
            return len(rows)

        removed = await self._store.run(_purge)
        if removed:
            logger.info("purged synced records count=%s older_than_days=%s", removed, older_than_days)
        return removed

    async def count(self, status: RecordStatus | str | None = None) -> int:
        filters = {"status": RecordStatus(status).value} if status is not None else None
        return await self._store.count(OfflineRecord, filters)
