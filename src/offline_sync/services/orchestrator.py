"""Sync orchestrator: drains the pending-operation queue against the remote authority.

Runs are single flight. Batches and the items inside them execute strictly one
after another; every queue decision is persisted before the next call goes out.
A queued item is only removed after the remote confirmed it, so an interrupted
run (abort, crash) never loses or duplicates work: the next run simply starts
from whatever the queue holds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Any, Literal

from offline_sync.domain.outcomes import Outcome, RemoteResponse, classify_response
from offline_sync.errors import (
    ConflictDetected,
    ExhaustedRetries,
    NetworkError,
    NotFoundError,
    OfflineError,
    RemoteRejected,
    StorageError,
    SyncInProgressError,
)
from offline_sync.integrations.remote_api import RemoteAuthority
from offline_sync.models import (
    ConflictRecord,
    PendingOperation,
    RecordStatus,
    SyncAction,
    SyncMetadataRow,
)
from offline_sync.services import event_log
from offline_sync.services.conflicts import ConflictManager
from offline_sync.services.connectivity import ConnectivityMonitor
from offline_sync.services.event_log import EventLog
from offline_sync.services.metadata import SyncMetadataManager
from offline_sync.services.queue import PendingOperationQueue
from offline_sync.services.record_store import OfflineRecordStore
from offline_sync.sync_utils import Clock, chunked, now_ms

logger = logging.getLogger(__name__)

SyncState = Literal["idle", "running", "completed", "aborted", "failed"]


@dataclass(frozen=True)
class SyncOptions:
    entity_types: tuple[str, ...] | None = None
    # Only items with priority <= max_priority (1 = critical only).
    max_priority: int | None = None
    batch_size: int | None = None
    # Skip the connectivity gate (manual sync against a monitor that has not probed yet).
    force: bool = False


@dataclass
class SyncResult:
    success: bool = False
    synced_count: int = 0
    error_count: int = 0
    conflicts: list[ConflictRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    aborted: bool = False


@dataclass
class SyncCallbacks:
    on_sync_start: Callable[[], None] | None = None
    on_sync_progress: Callable[[int], None] | None = None
    on_sync_complete: Callable[[SyncMetadataRow], None] | None = None
    on_sync_error: Callable[[str], None] | None = None
    on_conflict_detected: Callable[[ConflictRecord], None] | None = None


class SyncOrchestrator:
    def __init__(
        self,
        *,
        queue: PendingOperationQueue,
        records: OfflineRecordStore,
        conflicts: ConflictManager,
        metadata: SyncMetadataManager,
        events: EventLog,
        remote: RemoteAuthority,
        connectivity: ConnectivityMonitor,
        terminal_status_codes: Collection[int] = frozenset(),
        batch_size: int = 10,
        inter_batch_delay_seconds: float = 1.0,
        auto_sync_interval_seconds: float = 60.0,
        reconnect_debounce_seconds: float = 2.0,
        callbacks: SyncCallbacks | None = None,
        clock: Clock = now_ms,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._queue = queue
        self._records = records
        self._conflicts = conflicts
        self._metadata = metadata
        self._events = events
        self._remote = remote
        self._connectivity = connectivity
        self._terminal_status_codes = frozenset(terminal_status_codes)
        self._batch_size = batch_size
        self._inter_batch_delay = inter_batch_delay_seconds
        self._auto_interval = auto_sync_interval_seconds
        self._debounce = reconnect_debounce_seconds
        self.callbacks = callbacks or SyncCallbacks()
        self._clock = clock

        self._running = False
        self._state: SyncState = "idle"
        self._abort_event: asyncio.Event | None = None
        self._last_result: SyncResult | None = None

        self._auto_task: asyncio.Task[None] | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._next_auto_sync_ms: int | None = None
        self._remove_listener: Callable[[], None] | None = None

    @property
    def is_syncing(self) -> bool:
        return self._running

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    @property
    def next_auto_sync_ms(self) -> int | None:
        return self._next_auto_sync_ms if self.auto_sync_enabled else None

    @property
    def auto_sync_enabled(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.warning("sync callback failed callback=%s", name, exc_info=True)

    def abort(self) -> bool:
        """Stop the current run. Returns False when nothing is running."""
        if not self._running or self._abort_event is None:
            return False
        logger.info("sync abort requested")
        self._abort_event.set()
        return True

    def _aborted(self) -> bool:
        return self._abort_event is not None and self._abort_event.is_set()

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        opts = options or SyncOptions()
        if self._running:
            raise SyncInProgressError()
        if not opts.force and not self._connectivity.is_online:
            raise OfflineError()

        self._running = True
        self._state = "running"
        self._abort_event = asyncio.Event()
        started = time.monotonic()
        result = SyncResult()
        try:
            self._notify("on_sync_start")
            await self._events.log(event_log.SYNC_STARTED)
            await self._run(opts, result)

            result.aborted = self._aborted()
            result.success = not result.aborted and result.error_count == 0
            result.duration_ms = int((time.monotonic() - started) * 1000)
            # Metadata goes last: every confirmed item is already off the queue.
            meta = await self._metadata.record_sync_run(
                synced_count=result.synced_count, is_online=self._connectivity.is_online
            )
            self._state = "aborted" if result.aborted else "completed"
            await self._events.log(
                event_log.SYNC_ABORTED if result.aborted else event_log.SYNC_COMPLETED,
                details={
                    "synced_count": result.synced_count,
                    "error_count": result.error_count,
                    "conflicts": len(result.conflicts),
                    "duration_ms": result.duration_ms,
                },
            )
            logger.info(
                "sync finished state=%s synced=%s errors=%s conflicts=%s duration_ms=%s",
                self._state,
                result.synced_count,
                result.error_count,
                len(result.conflicts),
                result.duration_ms,
            )
            self._notify("on_sync_complete", meta)
            return result
        except StorageError as e:
            self._state = "failed"
            result.success = False
            result.errors.append(str(e))
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("sync failed on local store error=%s", e)
            self._notify("on_sync_error", str(e))
            try:
                await self._events.log(event_log.SYNC_FAILED, error=str(e))
            except StorageError:
                logger.warning("could not record sync failure event", exc_info=True)
            raise
        finally:
            self._last_result = result
            self._running = False
            self._abort_event = None

    async def _run(self, opts: SyncOptions, result: SyncResult) -> None:
        ready = await self._queue.get_ready(
            entity_types=opts.entity_types, max_priority=opts.max_priority
        )
        total = len(ready)
        if total == 0:
            self._notify("on_sync_progress", 100)
            return

        logger.info("sync started ready=%s", total)
        batches = chunked(ready, opts.batch_size or self._batch_size)
        done = 0
        for index, batch in enumerate(batches):
            for selected in batch:
                if self._aborted():
                    return
                # Earlier items in this run may have rebound or resolved it.
                op = await self._queue.get(selected.id)
                if op is None or op.in_conflict or op.exhausted:
                    done += 1
                    continue
                outcome = await self._execute(op)
                if outcome is None:
                    return
                await self._apply_outcome(op, outcome, result)
                done += 1
                self._notify("on_sync_progress", int(done * 100 / total))
            if index < len(batches) - 1 and await self._pause_between_batches():
                return

    async def _pause_between_batches(self) -> bool:
        """Sleep the inter-batch delay; True when an abort arrived meanwhile."""
        if self._abort_event is None:
            return False
        if self._inter_batch_delay > 0:
            try:
                async with asyncio.timeout(self._inter_batch_delay):
                    await self._abort_event.wait()
            except TimeoutError:
                pass
        return self._aborted()

    async def _dispatch(self, op: PendingOperation) -> RemoteResponse:
        action = SyncAction(op.action)
        if action == SyncAction.CREATE:
            return await self._remote.create(op.entity_type, dict(op.payload or {}))
        if action == SyncAction.UPDATE:
            return await self._remote.update(op.entity_type, op.entity_id, dict(op.payload or {}))
        return await self._remote.delete(op.entity_type, op.entity_id)

    async def _execute(self, op: PendingOperation) -> Outcome | None:
        """Run one remote call, racing it against abort. None means it was cancelled."""
        record = await self._records.find_for_entity(op.entity_type, op.entity_id)
        if record is not None:
            await self._mark_record(record.id, RecordStatus.SYNCING)

        call = asyncio.ensure_future(self._dispatch(op))
        if self._abort_event is None:
            abort_wait: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        else:
            abort_wait = asyncio.ensure_future(self._abort_event.wait())
        try:
            await asyncio.wait({call, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            abort_wait.cancel()

        if not call.done():
            call.cancel()
            await asyncio.wait({call})
            if not call.cancelled() and call.exception() is not None:
                logger.debug(
                    "cancelled remote call raised while unwinding", exc_info=call.exception()
                )
            logger.info("remote call cancelled by abort op_id=%s", op.id)
            if record is not None:
                # Left for the next run; the queue item is untouched.
                await self._mark_record(record.id, RecordStatus.PENDING)
            return None

        try:
            response = call.result()
        except (NetworkError, RemoteRejected) as e:
            return Outcome.retryable(str(e), status_code=getattr(e, "status_code", None))
        except Exception as e:
            logger.warning("remote call raised op_id=%s", op.id, exc_info=True)
            return Outcome.retryable(f"{type(e).__name__}: {e}")
        return classify_response(
            op.action, response, terminal_status_codes=self._terminal_status_codes
        )

    async def _mark_record(self, record_id: str, status: RecordStatus, **changes: Any) -> None:
        try:
            await self._records.update_status(record_id, status, **changes)
        except NotFoundError:
            # Deleted locally while its operation was being sent.
            logger.info(
                "record gone before status update record_id=%s status=%s",
                record_id,
                status.value,
            )

    async def _apply_outcome(self, op: PendingOperation, outcome: Outcome, result: SyncResult) -> None:
        try:
            attempt = await self._queue.record_attempt(op.id, outcome)
        except (NotFoundError, ConflictDetected, ExhaustedRetries) as e:
            # Resolved or removed while the remote call was in flight.
            logger.info("dropping outcome op_id=%s reason=%s", op.id, e)
            return
        record = await self._records.find_for_entity(op.entity_type, op.entity_id)

        if outcome.kind == "success":
            result.synced_count += 1
            if SyncAction(op.action) == SyncAction.DELETE:
                if record is not None:
                    await self._records.delete(record.id)
                return
            server_id = outcome.server_id
            if record is not None:
                await self._mark_record(record.id, RecordStatus.SYNCED, server_id=server_id)
            if SyncAction(op.action) == SyncAction.CREATE and server_id and server_id != op.entity_id:
                rebound = await self._queue.rebind_entity_id(op.entity_type, op.entity_id, server_id)
                if rebound:
                    logger.info(
                        "rebound queued operations temp_id=%s server_id=%s count=%s",
                        op.entity_id,
                        server_id,
                        rebound,
                    )
            return

        if attempt.conflict is not None:
            if record is not None:
                await self._mark_record(
                    record.id, RecordStatus.CONFLICT, error=outcome.error
                )
            self._notify("on_conflict_detected", attempt.conflict)
            result.conflicts.append(await self._conflicts.apply_default_policy(attempt.conflict))
            return

        result.error_count += 1
        result.errors.append(f"{op.action} {op.entity_type}/{op.entity_id}: {outcome.error}")
        if record is not None:
            status = RecordStatus.ERROR if attempt.operation.exhausted else RecordStatus.RETRY
            await self._mark_record(record.id, status, error=outcome.error)

    # Auto-sync

    def start_auto_sync(self) -> None:
        if self.auto_sync_enabled:
            return
        self._remove_listener = self._connectivity.add_listener(self._on_connectivity_change)
        self._auto_task = asyncio.create_task(self._auto_loop(), name="auto-sync")

    async def stop_auto_sync(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        tasks = [t for t in (self._auto_task, self._debounce_task) if t is not None]
        self._auto_task = None
        self._debounce_task = None
        self._next_auto_sync_ms = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _auto_loop(self) -> None:
        while True:
            self._next_auto_sync_ms = self._clock() + int(self._auto_interval * 1000)
            await asyncio.sleep(self._auto_interval)
            await self._auto_tick()

    async def _auto_tick(self) -> None:
        if not self._connectivity.is_online or self._running:
            return
        try:
            await self.sync()
        except (SyncInProgressError, OfflineError) as e:
            logger.debug("auto sync skipped reason=%s", e)
        except Exception:
            logger.warning("auto sync failed", exc_info=True)

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced_sync(), name="reconnect-sync")

    async def _debounced_sync(self) -> None:
        await asyncio.sleep(self._debounce)
        await self._auto_tick()
