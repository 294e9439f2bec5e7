from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

from sqlmodel.ext.asyncio.session import AsyncSession

from offline_sync.errors import ConflictResolutionError, NotFoundError
from offline_sync.models import ConflictRecord, RecordStatus, Resolution
from offline_sync.repositories import sync_repo
from offline_sync.repositories.store import DurableStore, QueryOptions
from offline_sync.services import event_log
from offline_sync.services.event_log import EventLog
from offline_sync.services.metadata import SyncMetadataManager
from offline_sync.services.queue import PendingOperationQueue
from offline_sync.services.record_store import OfflineRecordStore
from offline_sync.sync_utils import DAY_MS, Clock, now_ms

logger = logging.getLogger(__name__)

SYSTEM_RESOLVER = "system"


@dataclass(frozen=True)
class ConflictStats:
    total: int
    pending: int
    resolved: int
    by_resolution: dict[str, int] = field(default_factory=dict)
    by_entity_type: dict[str, int] = field(default_factory=dict)


class ConflictManager:
    """Conflicts are detected, never merged on their own.

    Default policy: entity types listed as server-wins (reference data) are
    resolved in favour of the server as soon as they are detected; everything
    else stays pending until someone picks a resolution.

    Resolution effects on the blocked operation:
    - local:  unblock it and send the local payload again.
    - merge:  replace its payload with the merged data, then unblock it.
    - server: drop it; the local record takes the server copy.
    - manual: drop it; the record is left for the caller to handle.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        queue: PendingOperationQueue,
        records: OfflineRecordStore,
        metadata: SyncMetadataManager,
        events: EventLog,
        server_wins_entity_types: Collection[str] = frozenset(),
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._queue = queue
        self._records = records
        self._metadata = metadata
        self._events = events
        self._server_wins = frozenset(server_wins_entity_types)
        self._clock = clock

    def is_server_wins(self, entity_type: str) -> bool:
        return entity_type in self._server_wins

    async def get(self, conflict_id: str) -> ConflictRecord | None:
        return await self._store.get(ConflictRecord, conflict_id)

    async def list_pending(self, *, entity_type: str | None = None) -> list[ConflictRecord]:
        rows = await self._store.get_all(ConflictRecord, QueryOptions(order_by=("created_at_ms",)))
        return [
            c
            for c in rows
            if not c.resolved and (entity_type is None or c.entity_type == entity_type)
        ]

    async def list_resolved(self, limit: int = 50) -> list[ConflictRecord]:
        rows = await self._store.get_all(
            ConflictRecord, QueryOptions(order_by=("resolved_at_ms",), descending=True)
        )
        return [c for c in rows if c.resolved][:limit]

    async def stats(self) -> ConflictStats:
        rows = await self._store.get_all(ConflictRecord)
        resolved = [c for c in rows if c.resolved]
        return ConflictStats(
            total=len(rows),
            pending=len(rows) - len(resolved),
            resolved=len(resolved),
            by_resolution=dict(Counter(str(c.resolution) for c in resolved)),
            by_entity_type=dict(Counter(c.entity_type for c in rows)),
        )

    async def apply_default_policy(self, conflict: ConflictRecord) -> ConflictRecord:
        if not self.is_server_wins(conflict.entity_type):
            return conflict
        return await self.resolve(
            conflict.conflict_id, Resolution.SERVER, resolved_by=SYSTEM_RESOLVER
        )

    async def resolve(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        *,
        resolved_by: str = "user",
        merged_data: dict[str, Any] | None = None,
    ) -> ConflictRecord:
        resolution = Resolution(resolution)
        conflict = await self._store.get(ConflictRecord, conflict_id)
        if conflict is None:
            raise NotFoundError(f"conflict not found: {conflict_id}")
        if conflict.resolved:
            raise ConflictResolutionError(f"conflict already resolved: {conflict_id}")
        if resolution == Resolution.MERGE and merged_data is None:
            raise ConflictResolutionError("merge resolution requires merged_data")

        op = await self._queue.get(conflict.operation_id)
        record = await self._records.find_for_entity(conflict.entity_type, conflict.entity_id)

        if resolution == Resolution.LOCAL:
            if op is not None:
                await self._queue.clear_conflict(op.id)
            if record is not None:
                await self._records.update_status(record.id, RecordStatus.PENDING)
        elif resolution == Resolution.MERGE:
            if op is not None:
                await self._queue.clear_conflict(op.id, payload=merged_data)
            if record is not None:
                await self._records.update_status(
                    record.id, RecordStatus.PENDING, data=merged_data
                )
        elif resolution == Resolution.SERVER:
            if op is not None:
                await self._queue.remove(op.id)
            if record is not None:
                await self._records.update_status(
                    record.id, RecordStatus.SYNCED, data=conflict.server_data
                )
        else:
            if op is not None:
                await self._queue.remove(op.id)

        at = self._clock()

        async def _mark(session: AsyncSession) -> ConflictRecord:
            row = await session.get(ConflictRecord, conflict_id)
            if row is None:
                raise NotFoundError(f"conflict not found: {conflict_id}")
            row.resolution = resolution.value
            row.resolved_at_ms = at
            row.resolved_by = resolved_by
            session.add(row)
            return row

        resolved = await self._store.run(_mark)
        logger.info(
            "conflict resolved conflict_id=%s resolution=%s resolved_by=%s",
            conflict_id,
            resolution.value,
            resolved_by,
        )
        await self._events.log(
            event_log.CONFLICT_RESOLVED,
            entity_type=resolved.entity_type,
            entity_id=resolved.entity_id,
            details={
                "conflict_id": conflict_id,
                "resolution": resolution.value,
                "resolved_by": resolved_by,
            },
        )
        await self._metadata.refresh()
        return resolved

    async def cleanup(self, max_age_days: int) -> int:
        """Drop resolved conflicts older than the cutoff; open ones are kept."""
        cutoff = self._clock() - max_age_days * DAY_MS

        async def _cleanup(session: AsyncSession) -> int:
            rows = await sync_repo.list_resolved_conflicts_before(session, cutoff)
            for row in rows:
                await session.delete(row)
            return len(rows)

        return await self._store.run(_cleanup)
