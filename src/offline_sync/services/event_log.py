from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from offline_sync.models import SyncEvent
from offline_sync.repositories.store import DurableStore, KeyRange, QueryOptions
from offline_sync.sync_utils import DAY_MS, Clock, now_ms

logger = logging.getLogger(__name__)

SYNC_STARTED = "sync_started"
SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"
SYNC_ABORTED = "sync_aborted"
CONFLICT_DETECTED = "conflict_detected"
CONFLICT_RESOLVED = "conflict_resolved"
OPERATION_ENQUEUED = "operation_enqueued"
OPERATION_SYNCED = "operation_synced"
OPERATION_FAILED = "operation_failed"
RECORD_SAVED = "record_saved"
RECORD_DELETED = "record_deleted"
REFERENCE_REFRESHED = "reference_refreshed"

ChangeListener = Callable[[SyncEvent], None]


class EventLog:
    """Append-only audit log that doubles as the change feed.

    Read models subscribe here instead of patching shared state themselves.
    """

    def __init__(self, store: DurableStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def log(
        self,
        event_type: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> SyncEvent:
        event = await self._store.put(
            SyncEvent(
                type=event_type,
                timestamp_ms=self._clock(),
                entity_type=entity_type,
                entity_id=entity_id,
                details=dict(details or {}),
                error=error,
            )
        )
        self._publish(event)
        return event

    def _publish(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # Listeners are observers; a broken one must not break the writer.
                logger.warning("change listener failed event_type=%s", event.type, exc_info=True)

    async def recent(self, limit: int = 50, *, event_type: str | None = None) -> list[SyncEvent]:
        filters: dict[str, Any] = {"type": event_type} if event_type else {}
        return await self._store.get_all(
            SyncEvent,
            QueryOptions(
                limit=limit, order_by=("timestamp_ms", "id"), descending=True, filters=filters
            ),
        )

    async def cleanup(self, max_age_days: int) -> int:
        cutoff = self._clock() - max_age_days * DAY_MS
        old = await self._store.get_by_index(
            SyncEvent, "timestamp_ms", KeyRange.upper_bound(cutoff, open_=True)
        )
        return await self._store.delete_many(SyncEvent, [e.id for e in old if e.id is not None])
