from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from offline_sync.models import Resolution, SyncAction


class ErrorResponse(BaseModel):
    """Error body shared by every route of the control API."""

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None


class StatusOut(BaseModel):
    is_online: bool
    is_syncing: bool
    pending_count: int
    last_sync_ms: int | None = None
    next_auto_sync_ms: int | None = None
    sync_enabled: bool
    quality: Literal["good", "poor", "offline"]
    state: str


class QueueStatsOut(BaseModel):
    total_items: int
    pending_items: int
    failed_items: int
    conflict_items: int
    average_wait_time_ms: float
    oldest_item_ms: int | None = None
    newest_item_ms: int | None = None


class SyncRequest(BaseModel):
    entity_types: list[str] | None = None
    max_priority: int | None = Field(default=None, ge=1, le=4)
    batch_size: int | None = Field(default=None, ge=1, le=500)
    force: bool = False


class ConflictOut(BaseModel):
    conflict_id: str
    operation_id: str
    action: str
    entity_type: str
    entity_id: str
    local_data: dict[str, Any] = Field(default_factory=dict)
    server_data: dict[str, Any] | None = None
    resolution: str | None = None
    resolved_at_ms: int | None = None
    resolved_by: str | None = None
    created_at_ms: int


class SyncResultOut(BaseModel):
    success: bool
    synced_count: int
    error_count: int
    conflicts: list[ConflictOut] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int
    aborted: bool


class AbortOut(BaseModel):
    aborted: bool


class EnqueueRequest(BaseModel):
    action: SyncAction
    entity_type: str = Field(min_length=1, max_length=64)
    entity_id: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = Field(default=None, ge=1, le=4)
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    delay_ms: int = Field(default=0, ge=0)


class OperationOut(BaseModel):
    id: str
    seq: int
    action: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int
    attempts: int
    max_attempts: int
    next_retry_at_ms: int
    created_at_ms: int
    last_attempt_at_ms: int | None = None
    last_error: str | None = None
    conflict_id: str | None = None


class RetryRequest(BaseModel):
    # None retries every exhausted operation.
    ids: list[str] | None = None


class RetryOut(BaseModel):
    reset: int


class CleanupRequest(BaseModel):
    max_age_days: int | None = Field(default=None, ge=0)


class CleanupOut(BaseModel):
    operations: int
    records: int
    conflicts: int
    events: int
    reference: int


class RecordOut(BaseModel):
    id: str
    entity_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    status: str
    created_at_ms: int
    synced_at_ms: int | None = None
    retry_count: int
    last_error: str | None = None
    server_id: str | None = None


class ResolveConflictRequest(BaseModel):
    resolution: Resolution
    resolved_by: str = Field(default="user", min_length=1, max_length=128)
    merged_data: dict[str, Any] | None = None


class EventOut(BaseModel):
    id: int | None = None
    type: str
    timestamp_ms: int
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ReferenceDataOut(BaseModel):
    type: str
    items: list[Any] = Field(default_factory=list)
