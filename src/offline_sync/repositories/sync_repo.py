from __future__ import annotations

from collections.abc import Collection
from typing import Any, cast

from sqlalchemy import func
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import (
    METADATA_KEY,
    SCHEMA_VERSION,
    ConflictRecord,
    OfflineRecord,
    PendingOperation,
    RecordStatus,
    SyncMetadataRow,
)


def _col(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], cast(object, attr))


async def get_or_create_metadata(session: AsyncSession) -> SyncMetadataRow:
    row = await session.get(SyncMetadataRow, METADATA_KEY)
    if row is None:
        row = SyncMetadataRow(id=METADATA_KEY, schema_version=SCHEMA_VERSION)
        session.add(row)
        await session.flush()
    return row


def next_seq() -> Any:
    """Max seq plus one, evaluated inside the INSERT so concurrent writers never share a value."""
    return select(func.coalesce(func.max(_col(PendingOperation.seq)), 0) + 1).scalar_subquery()


async def list_ready(
    session: AsyncSession,
    now_ms: int,
    *,
    entity_types: Collection[str] | None = None,
    max_priority: int | None = None,
    limit: int | None = None,
) -> list[PendingOperation]:
    stmt = (
        select(PendingOperation)
        .where(_col(PendingOperation.next_retry_at_ms) <= now_ms)
        .where(_col(PendingOperation.attempts) < _col(PendingOperation.max_attempts))
        .where(_col(PendingOperation.conflict_id).is_(None))
    )
    if entity_types:
        stmt = stmt.where(_col(PendingOperation.entity_type).in_(list(entity_types)))
    if max_priority is not None:
        stmt = stmt.where(_col(PendingOperation.priority) <= max_priority)
    stmt = stmt.order_by(
        _col(PendingOperation.priority).asc(),
        _col(PendingOperation.created_at_ms).asc(),
        _col(PendingOperation.seq).asc(),
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await session.exec(stmt)).all())


async def count_pending(session: AsyncSession) -> int:
    result = await session.exec(
        select(func.count())
        .select_from(PendingOperation)
        .where(_col(PendingOperation.attempts) < _col(PendingOperation.max_attempts))
    )
    return int(result.one())


async def count_exhausted(session: AsyncSession) -> int:
    result = await session.exec(
        select(func.count())
        .select_from(PendingOperation)
        .where(_col(PendingOperation.attempts) >= _col(PendingOperation.max_attempts))
    )
    return int(result.one())


async def count_unresolved_conflicts(session: AsyncSession) -> int:
    result = await session.exec(
        select(func.count())
        .select_from(ConflictRecord)
        .where(_col(ConflictRecord.resolution).is_(None))
    )
    return int(result.one())


async def list_exhausted(
    session: AsyncSession,
    *,
    created_before_ms: int | None = None,
    ids: Collection[str] | None = None,
) -> list[PendingOperation]:
    stmt = select(PendingOperation).where(
        _col(PendingOperation.attempts) >= _col(PendingOperation.max_attempts)
    )
    if created_before_ms is not None:
        stmt = stmt.where(_col(PendingOperation.created_at_ms) < created_before_ms)
    if ids is not None:
        stmt = stmt.where(_col(PendingOperation.id).in_(list(ids)))
    return list((await session.exec(stmt)).all())


async def list_operations_for_entity(
    session: AsyncSession, entity_type: str, entity_id: str
) -> list[PendingOperation]:
    result = await session.exec(
        select(PendingOperation)
        .where(PendingOperation.entity_type == entity_type)
        .where(PendingOperation.entity_id == entity_id)
        .order_by(_col(PendingOperation.seq).asc())
    )
    return list(result.all())


async def list_synced_records_before(
    session: AsyncSession, cutoff_ms: int
) -> list[OfflineRecord]:
    result = await session.exec(
        select(OfflineRecord)
        .where(OfflineRecord.status == RecordStatus.SYNCED.value)
        .where(_col(OfflineRecord.synced_at_ms) < cutoff_ms)
    )
    return list(result.all())


async def list_resolved_conflicts_before(
    session: AsyncSession, cutoff_ms: int
) -> list[ConflictRecord]:
    result = await session.exec(
        select(ConflictRecord)
        .where(_col(ConflictRecord.resolution).is_not(None))
        .where(_col(ConflictRecord.resolved_at_ms) < cutoff_ms)
    )
    return list(result.all())
