from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from offline_sync.config import Settings
from offline_sync.db import Database
from offline_sync.domain.backoff import BackoffPolicy
from offline_sync.domain.codecs import CodecRegistry
from offline_sync.errors import StorageUnavailable, SyncDisabledError
from offline_sync.integrations.remote_api import HttpxRemoteAuthority, RemoteAuthority, TokenProvider
from offline_sync.models import (
    ConflictRecord,
    OfflineRecord,
    PendingOperation,
    Resolution,
    SyncAction,
    SyncEvent,
)
from offline_sync.repositories.store import DurableStore
from offline_sync.services.conflicts import ConflictManager, ConflictStats
from offline_sync.services.connectivity import ConnectivityMonitor, Quality
from offline_sync.services.event_log import ChangeListener, EventLog
from offline_sync.services.metadata import SyncMetadataManager
from offline_sync.services.orchestrator import (
    SyncCallbacks,
    SyncOptions,
    SyncOrchestrator,
    SyncResult,
    SyncState,
)
from offline_sync.services.queue import EnqueueOptions, ItemStatus, PendingOperationQueue, QueueStats
from offline_sync.services.record_store import OfflineRecordStore
from offline_sync.services.reference_cache import ReferenceCache
from offline_sync.sync_utils import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineStatus:
    is_online: bool
    is_syncing: bool
    pending_count: int
    last_sync_ms: int | None
    next_auto_sync_ms: int | None
    sync_enabled: bool
    quality: Quality
    state: SyncState


@dataclass(frozen=True)
class CleanupReport:
    operations: int
    records: int
    conflicts: int
    events: int
    reference: int


class OfflineSyncEngine:
    """One engine instance per store.

    Everything is built from the injected settings and database handle, so
    several engines (per test, per tenant) can live side by side. When the local
    store cannot be opened the engine stays up with sync disabled and every
    store-backed call raises SyncDisabledError.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        database: Database | None = None,
        remote: RemoteAuthority | None = None,
        token_provider: TokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        codecs: CodecRegistry | None = None,
        clock: Clock = now_ms,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self.database = database or Database(settings.database_url)
        self.codecs = codecs or CodecRegistry()
        self.remote: RemoteAuthority = remote or HttpxRemoteAuthority.from_settings(
            settings, token_provider=token_provider, client=http_client
        )
        self._clock = clock

        self.store = DurableStore(self.database)
        self.events = EventLog(self.store, clock=clock)
        self.metadata = SyncMetadataManager(self.store, clock=clock)
        self.queue = PendingOperationQueue(
            self.store,
            metadata=self.metadata,
            events=self.events,
            backoff=BackoffPolicy.from_settings(settings),
            default_max_attempts=settings.max_retry_attempts,
            clock=clock,
            rng=rng,
        )
        self.records = OfflineRecordStore(
            self.store, queue=self.queue, events=self.events, clock=clock
        )
        self.conflicts = ConflictManager(
            self.store,
            queue=self.queue,
            records=self.records,
            metadata=self.metadata,
            events=self.events,
            server_wins_entity_types=settings.server_wins_entity_types_set(),
            clock=clock,
        )
        self.reference = ReferenceCache(
            self.store,
            remote=self.remote,
            events=self.events,
            max_age_ms=settings.reference_max_age_seconds * 1000,
            clock=clock,
        )
        self.connectivity = ConnectivityMonitor(
            self.remote,
            metadata=self.metadata,
            probe_interval_seconds=settings.probe_interval_seconds,
            probe_timeout_seconds=settings.probe_timeout_seconds,
            good_latency_threshold_ms=settings.good_latency_threshold_ms,
            clock=clock,
        )
        self.orchestrator = SyncOrchestrator(
            queue=self.queue,
            records=self.records,
            conflicts=self.conflicts,
            metadata=self.metadata,
            events=self.events,
            remote=self.remote,
            connectivity=self.connectivity,
            terminal_status_codes=settings.terminal_status_codes_set(),
            batch_size=settings.sync_batch_size,
            inter_batch_delay_seconds=settings.sync_inter_batch_delay_seconds,
            auto_sync_interval_seconds=settings.auto_sync_interval_seconds,
            reconnect_debounce_seconds=settings.reconnect_debounce_seconds,
            clock=clock,
        )

        self._sync_enabled = False
        self._disabled_reason: str | None = None

    @property
    def sync_enabled(self) -> bool:
        return self._sync_enabled

    @property
    def disabled_reason(self) -> str | None:
        return self._disabled_reason

    @property
    def callbacks(self) -> SyncCallbacks:
        return self.orchestrator.callbacks

    async def start(self, *, monitor: bool = True, auto_sync: bool = True) -> bool:
        """Open the store and start background work. Returns whether sync is enabled."""
        try:
            await self.store.init()
            await self.metadata.refresh()
        except StorageUnavailable as e:
            self._sync_enabled = False
            self._disabled_reason = str(e)
            logger.error("local store unavailable, sync disabled error=%s", e)
            return False

        self._sync_enabled = True
        self._disabled_reason = None
        if monitor:
            self.connectivity.start()
        if auto_sync:
            self.orchestrator.start_auto_sync()
        logger.info("offline sync engine started database=%s", self.database.database_url)
        return True

    async def stop(self) -> None:
        await self.orchestrator.stop_auto_sync()
        await self.connectivity.stop()
        await self.database.dispose()

    def _require_enabled(self) -> None:
        if not self._sync_enabled:
            raise SyncDisabledError(self._disabled_reason or "sync engine not started")

    async def enqueue(
        self,
        action: SyncAction | str,
        entity_type: str,
        entity_id: str,
        payload: Any = None,
        options: EnqueueOptions | None = None,
    ) -> PendingOperation:
        self._require_enabled()
        encoded = self.codecs.encode(entity_type, payload) if payload is not None else None
        return await self.queue.enqueue(action, entity_type, entity_id, encoded, options)

    async def save_offline_record(
        self,
        entity_type: str,
        data: Any,
        *,
        record_id: str | None = None,
        action: SyncAction | str = SyncAction.CREATE,
        enqueue: bool = True,
        options: EnqueueOptions | None = None,
    ) -> tuple[OfflineRecord, PendingOperation | None]:
        self._require_enabled()
        return await self.records.save(
            entity_type,
            self.codecs.encode(entity_type, data),
            record_id=record_id,
            action=action,
            enqueue=enqueue,
            options=options,
        )

    def decode_payload(self, op: PendingOperation) -> Any:
        return self.codecs.decode(op.entity_type, dict(op.payload or {}))

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        self._require_enabled()
        return await self.orchestrator.sync(options)

    def abort(self) -> bool:
        return self.orchestrator.abort()

    async def get_status(self) -> EngineStatus:
        pending = 0
        last_sync_ms: int | None = None
        if self._sync_enabled:
            pending = await self.queue.count_pending()
            last_sync_ms = (await self.metadata.get()).last_sync_ms
        return EngineStatus(
            is_online=self.connectivity.is_online,
            is_syncing=self.orchestrator.is_syncing,
            pending_count=pending,
            last_sync_ms=last_sync_ms,
            next_auto_sync_ms=self.orchestrator.next_auto_sync_ms,
            sync_enabled=self._sync_enabled,
            quality=self.connectivity.quality,
            state=self.orchestrator.state,
        )

    async def get_stats(self) -> QueueStats:
        self._require_enabled()
        return await self.queue.stats()

    async def list_operations(self, status: ItemStatus = "all") -> list[PendingOperation]:
        self._require_enabled()
        return await self.queue.get_items_by_status(status)

    async def retry_failed(self, op_ids: list[str] | None = None) -> int:
        self._require_enabled()
        return await self.queue.retry_failed(op_ids)

    async def cleanup(self, max_age_days: int | None = None) -> CleanupReport:
        self._require_enabled()
        days = self.settings.max_offline_storage_days if max_age_days is None else max_age_days
        report = CleanupReport(
            operations=await self.queue.cleanup(days),
            records=await self.records.purge_synced(days),
            conflicts=await self.conflicts.cleanup(days),
            events=await self.events.cleanup(days),
            reference=await self.reference.cleanup(days),
        )
        logger.info("cleanup finished max_age_days=%s report=%s", days, report)
        return report

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    async def list_records(
        self, *, entity_type: str | None = None, status: str | None = None, limit: int | None = None
    ) -> list[OfflineRecord]:
        self._require_enabled()
        return await self.records.list_records(entity_type=entity_type, status=status, limit=limit)

    async def list_conflicts(self, *, resolved: bool = False) -> list[ConflictRecord]:
        self._require_enabled()
        if resolved:
            return await self.conflicts.list_resolved()
        return await self.conflicts.list_pending()

    async def conflict_stats(self) -> ConflictStats:
        self._require_enabled()
        return await self.conflicts.stats()

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        *,
        resolved_by: str = "user",
        merged_data: dict[str, Any] | None = None,
    ) -> ConflictRecord:
        self._require_enabled()
        return await self.conflicts.resolve(
            conflict_id, resolution, resolved_by=resolved_by, merged_data=merged_data
        )

    async def recent_events(self, limit: int = 50, *, event_type: str | None = None) -> list[SyncEvent]:
        self._require_enabled()
        return await self.events.recent(limit, event_type=event_type)

    async def get_reference_data(self, ref_type: str, *, force: bool = False) -> list[Any]:
        self._require_enabled()
        return await self.reference.refresh(
            ref_type, online=self.connectivity.is_online, force=force
        )
