from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from offline_sync.api.deps import get_engine
from offline_sync.api.schemas import ConflictOut, ReferenceDataOut, ResolveConflictRequest
from offline_sync.engine import OfflineSyncEngine

router = APIRouter(tags=["conflicts"])


@router.get("/conflicts", response_model=list[ConflictOut])
async def list_conflicts(
    resolved: bool = Query(default=False),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> list[ConflictOut]:
    conflicts = await engine.list_conflicts(resolved=resolved)
    return [ConflictOut.model_validate(c, from_attributes=True) for c in conflicts]


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictOut)
async def resolve_conflict(
    req: ResolveConflictRequest,
    conflict_id: str = Path(min_length=1, max_length=36),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> ConflictOut:
    conflict = await engine.resolve_conflict(
        conflict_id,
        req.resolution,
        resolved_by=req.resolved_by,
        merged_data=req.merged_data,
    )
    return ConflictOut.model_validate(conflict, from_attributes=True)


@router.get("/reference/{ref_type}", response_model=ReferenceDataOut)
async def get_reference_data(
    ref_type: str = Path(min_length=1, max_length=64),
    force: bool = Query(default=False),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> ReferenceDataOut:
    items = await engine.get_reference_data(ref_type, force=force)
    return ReferenceDataOut(type=ref_type, items=items)
