from __future__ import annotations

from sqlmodel.ext.asyncio.session import AsyncSession

from offline_sync.models import SyncMetadataRow
from offline_sync.repositories import sync_repo
from offline_sync.repositories.store import DurableStore
from offline_sync.sync_utils import Clock, now_ms


async def _recount(session: AsyncSession, row: SyncMetadataRow) -> None:
    row.pending_count = await sync_repo.count_pending(session)
    row.error_count = await sync_repo.count_exhausted(session)
    row.conflict_count = await sync_repo.count_unresolved_conflicts(session)


class SyncMetadataManager:
    """Singleton metadata row. Counts are a cached projection; refresh() recomputes them."""

    def __init__(self, store: DurableStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock

    async def get(self) -> SyncMetadataRow:
        return await self._store.run(sync_repo.get_or_create_metadata)

    async def update(self, **changes: object) -> SyncMetadataRow:
        async def _update(session: AsyncSession) -> SyncMetadataRow:
            row = await sync_repo.get_or_create_metadata(session)
            for name, value in changes.items():
                if name == "id" or name not in SyncMetadataRow.model_fields:
                    raise ValueError(f"unknown metadata field: {name}")
                setattr(row, name, value)
            session.add(row)
            return row

        return await self._store.run(_update)

    async def refresh(self) -> SyncMetadataRow:
        async def _refresh(session: AsyncSession) -> SyncMetadataRow:
            row = await sync_repo.get_or_create_metadata(session)
            await _recount(session, row)
            session.add(row)
            return row

        return await self._store.run(_refresh)

    async def set_online(self, is_online: bool) -> SyncMetadataRow:
        return await self.update(is_online=is_online, last_online_check_ms=self._clock())

    async def record_sync_run(self, *, synced_count: int, is_online: bool) -> SyncMetadataRow:
        """Stamp a finished run and recompute the cached counts in one transaction."""

        async def _record(session: AsyncSession) -> SyncMetadataRow:
            row = await sync_repo.get_or_create_metadata(session)
            row.last_sync_ms = self._clock()
            row.successful_syncs = int(row.successful_syncs) + int(synced_count)
            row.is_online = is_online
            await _recount(session, row)
            session.add(row)
            return row

        return await self._store.run(_record)
