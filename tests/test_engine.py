from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel

from offline_sync.db import Database
from offline_sync.domain.codecs import CodecRegistry, PayloadCodecError, PydanticCodec
from offline_sync.engine import OfflineSyncEngine
from offline_sync.errors import SyncDisabledError
from offline_sync.models import RecordStatus, SyncEvent
from tests.support import FakeClock, FakeRemote, make_settings

DAY_MS = 24 * 60 * 60 * 1000


class Price(BaseModel):
    product: str
    amount: float


@pytest.mark.anyio
async def test_unopenable_store_disables_sync(
    tmp_path: Path, clock: FakeClock, remote: FakeRemote
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    s = make_settings(tmp_path, database_url=f"sqlite:///{blocker / 'nested' / 'store.db'}")
    eng = OfflineSyncEngine(s, database=Database(s.database_url), remote=remote, clock=clock)
    try:
        assert await eng.start() is False
        assert eng.sync_enabled is False
        assert eng.disabled_reason
        assert eng.connectivity.running is False
        assert eng.orchestrator.auto_sync_enabled is False

        status = await eng.get_status()
        assert status.sync_enabled is False
        assert status.pending_count == 0

        with pytest.raises(SyncDisabledError):
            await eng.enqueue("create", "price", "temp-1", {})
        with pytest.raises(SyncDisabledError):
            await eng.sync()
        with pytest.raises(SyncDisabledError):
            await eng.save_offline_record("price", {})
        with pytest.raises(SyncDisabledError):
            await eng.cleanup()
        assert eng.abort() is False
    finally:
        await eng.stop()


@pytest.mark.anyio
async def test_not_started_engine_is_disabled(tmp_path: Path, remote: FakeRemote) -> None:
    s = make_settings(tmp_path)
    eng = OfflineSyncEngine(s, remote=remote)
    with pytest.raises(SyncDisabledError, match="not started"):
        await eng.get_stats()
    await eng.stop()


@pytest.mark.anyio
async def test_start_runs_background_work(
    tmp_path: Path, clock: FakeClock, remote: FakeRemote
) -> None:
    s = make_settings(tmp_path)
    eng = OfflineSyncEngine(s, database=Database(s.database_url), remote=remote, clock=clock)
    assert await eng.start() is True
    try:
        assert eng.connectivity.running
        assert eng.orchestrator.auto_sync_enabled
    finally:
        await eng.stop()
    assert eng.connectivity.running is False
    assert eng.orchestrator.auto_sync_enabled is False


@pytest.mark.anyio
async def test_codecs_apply_on_enqueue(
    tmp_path: Path, clock: FakeClock, remote: FakeRemote
) -> None:
    codecs = CodecRegistry()
    codecs.register("price", PydanticCodec(Price))
    s = make_settings(tmp_path)
    eng = OfflineSyncEngine(
        s, database=Database(s.database_url), remote=remote, codecs=codecs, clock=clock
    )
    assert await eng.start(monitor=False, auto_sync=False)
    try:
        op = await eng.enqueue("update", "price", "p1", Price(product="rice", amount=2))
        assert op.payload == {"product": "rice", "amount": 2.0}
        decoded = eng.decode_payload(op)
        assert isinstance(decoded, Price)
        assert decoded.product == "rice"

        with pytest.raises(PayloadCodecError):
            await eng.enqueue("update", "price", "p2", {"amount": 1})
        with pytest.raises(PayloadCodecError):
            await eng.save_offline_record("region", ["not", "an", "object"])

        delete = await eng.enqueue("delete", "price", "p3")
        assert delete.payload == {}
    finally:
        await eng.stop()


@pytest.mark.anyio
async def test_status_tracks_queue_and_runs(engine: OfflineSyncEngine, clock: FakeClock) -> None:
    await engine.enqueue("update", "price", "p1", {})
    status = await engine.get_status()
    assert status.pending_count == 1
    assert status.last_sync_ms is None
    assert status.is_online is True
    assert status.quality == "good"
    assert status.state == "idle"
    assert status.next_auto_sync_ms is None

    await engine.sync()
    status = await engine.get_status()
    assert status.pending_count == 0
    assert status.last_sync_ms == clock.now
    assert status.state == "completed"


@pytest.mark.anyio
async def test_list_helpers(engine: OfflineSyncEngine) -> None:
    await engine.save_offline_record("price", {"amount": 1}, record_id="p1", enqueue=False)
    await engine.enqueue("update", "price", "p1", {"amount": 1})

    assert [r.id for r in await engine.list_records(entity_type="price")] == ["p1"]
    assert [r.id for r in await engine.list_records(status=RecordStatus.SYNCED.value)] == []
    assert len(await engine.list_operations("pending")) == 1
    assert await engine.list_conflicts() == []
    assert await engine.list_conflicts(resolved=True) == []
    assert (await engine.conflict_stats()).total == 0
    assert await engine.retry_failed() == 0


@pytest.mark.anyio
async def test_cleanup_report(
    engine: OfflineSyncEngine, clock: FakeClock, remote: FakeRemote
) -> None:
    await engine.save_offline_record("price", {"amount": 1}, record_id="p1")
    await engine.reference.save("region", [{"id": 1}])
    await engine.sync()

    clock.advance(31 * DAY_MS)
    report = await engine.cleanup()
    assert report.records == 1
    assert report.reference == 1
    assert report.operations == 0
    assert report.conflicts == 0
    assert report.events > 0
    assert await engine.records.get("p1") is None

    assert (await engine.cleanup(0)).events == 0


@pytest.mark.anyio
async def test_subscribe_returns_unsubscribe(engine: OfflineSyncEngine) -> None:
    seen: list[SyncEvent] = []
    unsubscribe = engine.subscribe(seen.append)
    await engine.save_offline_record("price", {"amount": 1})
    assert [e.type for e in seen] == ["record_saved", "operation_enqueued"]

    unsubscribe()
    await engine.save_offline_record("price", {"amount": 2})
    assert len(seen) == 2
