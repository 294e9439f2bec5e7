"""Durable store: typed tables with CRUD and index-range queries.

Every call opens its own session and commits before returning, so each call is
atomic on its own. Nothing spans calls; callers that read then write must not
assume isolation between the two.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar, cast

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..db import Database
from ..errors import StorageError, StorageUnavailable
from ..models import (
    ConflictRecord,
    OfflineRecord,
    PendingOperation,
    ReferenceCacheEntry,
    SyncEvent,
    SyncMetadataRow,
)

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT", bound=SQLModel)
R = TypeVar("R")


TABLES: dict[str, type[SQLModel]] = {
    "offline_records": OfflineRecord,
    "pending_operations": PendingOperation,
    "sync_metadata": SyncMetadataRow,
    "conflicts": ConflictRecord,
    "reference_cache": ReferenceCacheEntry,
    "events": SyncEvent,
}


@dataclass(frozen=True)
class KeyRange:
    """Bounds for an index query; None means unbounded on that side."""

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False

    @classmethod
    def upper_bound(cls, value: Any, *, open_: bool = False) -> "KeyRange":
        return cls(upper=value, upper_open=open_)

    @classmethod
    def lower_bound(cls, value: Any, *, open_: bool = False) -> "KeyRange":
        return cls(lower=value, lower_open=open_)

    @classmethod
    def bound(cls, lower: Any, upper: Any) -> "KeyRange":
        return cls(lower=lower, upper=upper)


@dataclass(frozen=True)
class QueryOptions:
    limit: int | None = None
    offset: int = 0
    # Column names, applied in order.
    order_by: tuple[str, ...] = ()
    descending: bool = False
    # Equality post-filters: column name -> value.
    filters: dict[str, Any] = field(default_factory=dict)


def _column(model: type[SQLModel], name: str) -> ColumnElement[Any]:
    table = cast(Any, model).__table__
    if name not in table.c:
        raise StorageError(f"unknown column {model.__name__}.{name}")
    return cast(ColumnElement[Any], table.c[name])


def _is_indexed(model: type[SQLModel], name: str) -> bool:
    table = cast(Any, model).__table__
    if name in [c.name for c in table.primary_key.columns]:
        return True
    return any(name in [c.name for c in ix.columns] for ix in table.indexes)


def _primary_key_of(row: SQLModel) -> Any:
    table = cast(Any, type(row)).__table__
    values = tuple(getattr(row, c.name) for c in table.primary_key.columns)
    return values[0] if len(values) == 1 else values


class DurableStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def database(self) -> Database:
        return self._db

    async def init(self) -> None:
        await self._db.init()

    async def run(self, work: Callable[[AsyncSession], Awaitable[R]]) -> R:
        """Run `work` in one session and commit it as a single transaction."""
        try:
            async with self._db.session_scope() as session:
                result = await work(session)
                await session.commit()
                return result
        except StorageError:
            raise
        except (SQLAlchemyError, OSError) as e:
            logger.warning("durable store operation failed error=%s", e)
            raise StorageUnavailable(f"local store operation failed: {e}") from e

    async def put(self, row: RowT) -> RowT:
        async def _put(session: AsyncSession) -> RowT:
            merged = await session.merge(row)
            await session.flush()
            return merged

        return await self.run(_put)

    async def get(self, model: type[RowT], key: Any) -> RowT | None:
        async def _get(session: AsyncSession) -> RowT | None:
            return await session.get(model, key)

        return await self.run(_get)

    async def get_all(self, model: type[RowT], query: QueryOptions | None = None) -> list[RowT]:
        q = query or QueryOptions()
        stmt = select(model)
        for name, value in q.filters.items():
            stmt = stmt.where(_column(model, name) == value)
        stmt = self._apply_paging(model, stmt, q)

        async def _get_all(session: AsyncSession) -> list[RowT]:
            return list((await session.exec(stmt)).all())

        return await self.run(_get_all)

    async def get_by_index(
        self,
        model: type[RowT],
        index: str,
        value: Any | KeyRange,
        query: QueryOptions | None = None,
    ) -> list[RowT]:
        if not _is_indexed(model, index):
            raise StorageError(f"{model.__name__}.{index} is not indexed")
        q = query or QueryOptions()
        column = _column(model, index)
        stmt = select(model)
        if isinstance(value, KeyRange):
            if value.lower is not None:
                stmt = stmt.where(column > value.lower if value.lower_open else column >= value.lower)
            if value.upper is not None:
                stmt = stmt.where(column < value.upper if value.upper_open else column <= value.upper)
        else:
            stmt = stmt.where(column == value)
        for name, filter_value in q.filters.items():
            stmt = stmt.where(_column(model, name) == filter_value)
        stmt = self._apply_paging(model, stmt, q)

        async def _get_by_index(session: AsyncSession) -> list[RowT]:
            return list((await session.exec(stmt)).all())

        return await self.run(_get_by_index)

    async def delete(self, model: type[RowT], key: Any) -> bool:
        async def _delete(session: AsyncSession) -> bool:
            row = await session.get(model, key)
            if row is None:
                return False
            await session.delete(row)
            return True

        return await self.run(_delete)

    async def delete_many(self, model: type[RowT], keys: list[Any]) -> int:
        if not keys:
            return 0

        async def _delete_many(session: AsyncSession) -> int:
            removed = 0
            for key in keys:
                row = await session.get(model, key)
                if row is None:
                    continue
                await session.delete(row)
                removed += 1
            return removed

        return await self.run(_delete_many)

    async def count(self, model: type[RowT], filters: dict[str, Any] | None = None) -> int:
        stmt = select(func.count()).select_from(model)
        for name, value in (filters or {}).items():
            stmt = stmt.where(_column(model, name) == value)

        async def _count(session: AsyncSession) -> int:
            return int((await session.exec(stmt)).one())

        return await self.run(_count)

    async def clear(self, model: type[RowT]) -> int:
        rows = await self.get_all(model)
        return await self.delete_many(model, [_primary_key_of(r) for r in rows])

    @staticmethod
    def _apply_paging(model: type[SQLModel], stmt: Any, q: QueryOptions) -> Any:
        for name in q.order_by:
            column = _column(model, name)
            stmt = stmt.order_by(column.desc() if q.descending else column.asc())
        if q.offset:
            stmt = stmt.offset(int(q.offset))
        if q.limit is not None:
            stmt = stmt.limit(int(q.limit))
        return stmt


def table_model(name: str) -> type[SQLModel]:
    try:
        return TABLES[name]
    except KeyError as e:
        raise StorageError(f"unknown table {name}") from e
