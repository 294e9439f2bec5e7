from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from offline_sync import models  # noqa: F401  # registers the tables on SQLModel.metadata
from offline_sync.db_urls import normalize_database_url_for_async, sqlite_file_path
from offline_sync.errors import StorageUnavailable

logger = logging.getLogger(__name__)


def _create_async_engine(database_url: str) -> AsyncEngine:
    url = normalize_database_url_for_async(database_url)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def _create_schema(conn: Connection) -> None:
    # create_all only adds missing tables; indexes added to an existing table in a
    # later schema version are created separately so existing rows are kept.
    SQLModel.metadata.create_all(conn, checkfirst=True)
    for table in SQLModel.metadata.sorted_tables:
        for index in table.indexes:
            index.create(conn, checkfirst=True)


class Database:
    """Handle on the local durable store.

    One instance per engine; nothing here is module global so several engines
    (tests, tenants) can live side by side.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = _create_async_engine(self.database_url)
        return self._engine

    async def init(self) -> None:
        """Open the store and create the schema. Safe to call repeatedly."""
        async with self._init_lock:
            if self._initialized:
                return

            path = sqlite_file_path(self.database_url)
            if path is not None:
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise StorageUnavailable(f"cannot create store directory: {e}") from e

            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(_create_schema)
            except (SQLAlchemyError, OSError) as e:
                logger.error("local store unavailable url=%s error=%s", self.database_url, e)
                raise StorageUnavailable(f"cannot open local store: {e}") from e

            self._session_maker = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )
            self._initialized = True

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        if self._session_maker is None:
            await self.init()
        assert self._session_maker is not None
        async with self._session_maker() as session:
            yield session

    async def dispose(self) -> None:
        # Shut down aiosqlite worker threads while the event loop is still alive.
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_maker = None
        self._initialized = False
