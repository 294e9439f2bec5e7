from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, status

from offline_sync.api.deps import get_engine
from offline_sync.api.schemas import (
    EnqueueRequest,
    OperationOut,
    RecordOut,
    RetryOut,
    RetryRequest,
)
from offline_sync.engine import OfflineSyncEngine
from offline_sync.models import RecordStatus
from offline_sync.services.queue import EnqueueOptions

router = APIRouter(tags=["operations"])


@router.post("/operations", response_model=OperationOut, status_code=status.HTTP_201_CREATED)
async def enqueue_operation(
    req: EnqueueRequest, engine: OfflineSyncEngine = Depends(get_engine)
) -> OperationOut:
    op = await engine.enqueue(
        req.action,
        req.entity_type,
        req.entity_id,
        req.payload,
        EnqueueOptions(priority=req.priority, max_attempts=req.max_attempts, delay_ms=req.delay_ms),
    )
    return OperationOut.model_validate(op, from_attributes=True)


@router.get("/operations", response_model=list[OperationOut])
async def list_operations(
    item_status: Literal["pending", "failed", "conflict", "all"] = Query(
        default="all", alias="status"
    ),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> list[OperationOut]:
    ops = await engine.list_operations(item_status)
    return [OperationOut.model_validate(op, from_attributes=True) for op in ops]


@router.post("/operations/retry", response_model=RetryOut)
async def retry_failed(
    req: RetryRequest | None = None, engine: OfflineSyncEngine = Depends(get_engine)
) -> RetryOut:
    return RetryOut(reset=await engine.retry_failed((req or RetryRequest()).ids))


@router.get("/records", response_model=list[RecordOut])
async def list_records(
    entity_type: str | None = Query(default=None, max_length=64),
    record_status: RecordStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=1000),
    engine: OfflineSyncEngine = Depends(get_engine),
) -> list[RecordOut]:
    records = await engine.list_records(
        entity_type=entity_type,
        status=record_status.value if record_status is not None else None,
        limit=limit,
    )
    return [RecordOut.model_validate(r, from_attributes=True) for r in records]
