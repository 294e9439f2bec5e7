from __future__ import annotations

import logging
from typing import Any

from offline_sync.errors import NetworkError, RemoteRejected
from offline_sync.integrations.remote_api import RemoteAuthority
from offline_sync.models import ReferenceCacheEntry
from offline_sync.repositories.store import DurableStore, KeyRange
from offline_sync.services import event_log
from offline_sync.services.event_log import EventLog
from offline_sync.sync_utils import DAY_MS, Clock, now_ms

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"


class ReferenceCache:
    """Read-mostly reference data (regions, qualities, ...) kept for offline use."""

    def __init__(
        self,
        store: DurableStore,
        *,
        remote: RemoteAuthority,
        events: EventLog,
        max_age_ms: int = DAY_MS,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._remote = remote
        self._events = events
        self._max_age_ms = max_age_ms
        self._clock = clock

    async def save(self, ref_type: str, items: list[Any]) -> ReferenceCacheEntry:
        return await self._store.put(
            ReferenceCacheEntry(
                type=ref_type,
                items=list(items),
                version=CACHE_VERSION,
                last_updated_ms=self._clock(),
            )
        )

    async def get(self, ref_type: str) -> ReferenceCacheEntry | None:
        return await self._store.get(ReferenceCacheEntry, ref_type)

    async def get_items(self, ref_type: str) -> list[Any]:
        entry = await self.get(ref_type)
        return list(entry.items) if entry is not None else []

    async def is_stale(self, ref_type: str, max_age_ms: int | None = None) -> bool:
        entry = await self.get(ref_type)
        if entry is None:
            return True
        limit = self._max_age_ms if max_age_ms is None else max_age_ms
        return self._clock() - entry.last_updated_ms > limit

    async def refresh(
        self,
        ref_type: str,
        *,
        online: bool = True,
        force: bool = False,
        max_age_ms: int | None = None,
    ) -> list[Any]:
        """Return fresh items, fetching from the remote when stale.

        A failed fetch falls back to whatever is cached; offline never fetches.
        """
        if not online:
            return await self.get_items(ref_type)
        if not force and not await self.is_stale(ref_type, max_age_ms):
            cached = await self.get_items(ref_type)
            if cached:
                return cached

        try:
            items = await self._remote.fetch_collection(ref_type)
        except (NetworkError, RemoteRejected) as e:
            logger.warning("reference refresh failed type=%s error=%s", ref_type, e)
            return await self.get_items(ref_type)

        await self.save(ref_type, items)
        await self._events.log(
            event_log.REFERENCE_REFRESHED, entity_type=ref_type, details={"count": len(items)}
        )
        return items

    async def cleanup(self, max_age_days: int) -> int:
        cutoff = self._clock() - max_age_days * DAY_MS
        old = await self._store.get_by_index(
            ReferenceCacheEntry, "last_updated_ms", KeyRange.upper_bound(cutoff, open_=True)
        )
        return await self._store.delete_many(ReferenceCacheEntry, [e.type for e in old])
