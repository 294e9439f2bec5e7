# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from sqlalchemy import Column, Text
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


# Bumped whenever a table or index is added; stored in the metadata row.
SCHEMA_VERSION = 2

METADATA_KEY = "sync_metadata"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


class RecordStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"
    RETRY = "retry"


class Resolution(str, Enum):
    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"
    MANUAL = "manual"


class OfflineRecord(SQLModel, table=True):
    __tablename__ = "offline_records"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=128)
    entity_type: str = Field(index=True, min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    status: str = Field(default=RecordStatus.PENDING.value, index=True, max_length=20)

    created_at_ms: int = Field(default=0, index=True)
    synced_at_ms: Optional[int] = Field(default=None, index=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    # Filled in once the remote authority assigns its own id to a client-side create.
    server_id: Optional[str] = Field(default=None, index=True, max_length=128)


class PendingOperation(SQLModel, table=True):
    __tablename__ = "pending_operations"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    # Enqueue order; breaks created_at ties within the same millisecond.
    seq: int = Field(default=0, index=True)

    action: str = Field(max_length=20)
    entity_type: str = Field(index=True, min_length=1, max_length=64)
    entity_id: str = Field(index=True, min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))

    priority: int = Field(default=int(SyncPriority.NORMAL), index=True)
    attempts: int = Field(default=0, index=True)
    max_attempts: int = Field(default=3)
    next_retry_at_ms: int = Field(default=0, index=True)

    created_at_ms: int = Field(default=0, index=True)
    last_attempt_at_ms: Optional[int] = Field(default=None)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    # Set while an unresolved conflict blocks the operation.
    conflict_id: Optional[str] = Field(default=None, index=True, max_length=36)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def in_conflict(self) -> bool:
        return self.conflict_id is not None


class SyncMetadataRow(SQLModel, table=True):
    __tablename__ = "sync_metadata"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(default=METADATA_KEY, primary_key=True, max_length=32)
    last_sync_ms: Optional[int] = Field(default=None)
    pending_count: int = Field(default=0)
    conflict_count: int = Field(default=0)
    error_count: int = Field(default=0)
    is_online: bool = Field(default=False)
    last_online_check_ms: Optional[int] = Field(default=None)
    total_offline_actions: int = Field(default=0)
    successful_syncs: int = Field(default=0)
    schema_version: int = Field(default=SCHEMA_VERSION)


class ConflictRecord(SQLModel, table=True):
    __tablename__ = "conflicts"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    conflict_id: str = Field(primary_key=True, min_length=1, max_length=36)
    operation_id: str = Field(index=True, max_length=36)
    action: str = Field(max_length=20)
    entity_type: str = Field(index=True, max_length=64)
    entity_id: str = Field(index=True, max_length=128)

    local_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    server_data: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(SAJSON, nullable=True)
    )

    resolution: Optional[str] = Field(default=None, index=True, max_length=20)
    resolved_at_ms: Optional[int] = Field(default=None, index=True)
    resolved_by: Optional[str] = Field(default=None, max_length=128)
    created_at_ms: int = Field(default=0, index=True)

    @property
    def resolved(self) -> bool:
        return self.resolution is not None


class ReferenceCacheEntry(SQLModel, table=True):
    __tablename__ = "reference_cache"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    type: str = Field(primary_key=True, min_length=1, max_length=64)
    items: list[Any] = Field(default_factory=list, sa_column=Column(SAJSON))
    version: str = Field(default="1.0", max_length=32)
    last_updated_ms: int = Field(default=0, index=True)


class SyncEvent(SQLModel, table=True):
    __tablename__ = "events"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True, max_length=40)
    timestamp_ms: int = Field(default=0, index=True)

    entity_type: Optional[str] = Field(default=None, max_length=64)
    entity_id: Optional[str] = Field(default=None, max_length=128)
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
