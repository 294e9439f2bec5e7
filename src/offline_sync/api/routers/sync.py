from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from offline_sync.api.deps import get_engine
from offline_sync.api.schemas import (
    AbortOut,
    CleanupOut,
    CleanupRequest,
    ConflictOut,
    EventOut,
    QueueStatsOut,
    StatusOut,
    SyncRequest,
    SyncResultOut,
)
from offline_sync.engine import OfflineSyncEngine
from offline_sync.services.orchestrator import SyncOptions

router = APIRouter(tags=["sync"])


@router.get("/status", response_model=StatusOut)
async def get_status(engine: OfflineSyncEngine = Depends(get_engine)) -> StatusOut:
    status = await engine.get_status()
    return StatusOut(**asdict(status))


@router.get("/stats", response_model=QueueStatsOut)
async def get_stats(engine: OfflineSyncEngine = Depends(get_engine)) -> QueueStatsOut:
    stats = await engine.get_stats()
    return QueueStatsOut(**asdict(stats))


@router.post("/sync", response_model=SyncResultOut)
async def run_sync(
    req: SyncRequest | None = None, engine: OfflineSyncEngine = Depends(get_engine)
) -> SyncResultOut:
    req = req or SyncRequest()
    result = await engine.sync(
        SyncOptions(
            entity_types=tuple(req.entity_types) if req.entity_types else None,
            max_priority=req.max_priority,
            batch_size=req.batch_size,
            force=req.force,
        )
    )
    return SyncResultOut(
        success=result.success,
        synced_count=result.synced_count,
        error_count=result.error_count,
        conflicts=[ConflictOut.model_validate(c, from_attributes=True) for c in result.conflicts],
        errors=result.errors,
        duration_ms=result.duration_ms,
        aborted=result.aborted,
    )


@router.post("/abort", response_model=AbortOut)
async def abort_sync(engine: OfflineSyncEngine = Depends(get_engine)) -> AbortOut:
    return AbortOut(aborted=engine.abort())


@router.post("/cleanup", response_model=CleanupOut)
async def cleanup(
    req: CleanupRequest | None = None, engine: OfflineSyncEngine = Depends(get_engine)
) -> CleanupOut:
    report = await engine.cleanup((req or CleanupRequest()).max_age_days)
    return CleanupOut(**asdict(report))


@router.get("/events", response_model=list[EventOut])
async def list_events(
    limit: int = Query(default=50, ge=1, le=500),
    event_type: str | None = Query(default=None, alias="type"),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> list[EventOut]:
    events = await engine.recent_events(limit, event_type=event_type)
    return [EventOut.model_validate(e, from_attributes=True) for e in events]
