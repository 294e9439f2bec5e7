from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest

from offline_sync.config import Settings
from offline_sync.db import Database
from offline_sync.engine import OfflineSyncEngine
from tests.support import FakeClock, FakeRemote, make_settings


@pytest.fixture
def anyio_backend() -> str:
    # The engine schedules asyncio tasks directly.
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _make


@pytest.fixture
async def engine(
    tmp_path: Path, clock: FakeClock, remote: FakeRemote
) -> AsyncGenerator[OfflineSyncEngine, None]:
    s = make_settings(tmp_path)
    eng = OfflineSyncEngine(
        s, database=Database(s.database_url), remote=remote, clock=clock, rng=lambda: 0.0
    )
    assert await eng.start(monitor=False, auto_sync=False)
    await eng.connectivity.force_online()
    yield eng
    # Dispose while the loop is alive so aiosqlite threads do not leak.
    await eng.stop()
