from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
from pydantic import BaseModel

from offline_sync.api.app import create_app
from offline_sync.db import Database
from offline_sync.domain.codecs import PydanticCodec
from offline_sync.engine import OfflineSyncEngine
from tests.support import FakeClock, FakeRemote, make_settings, respond_all


class Price(BaseModel):
    product: str
    amount: float


@pytest.fixture
async def client(engine: OfflineSyncEngine) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(engine, manage_engine=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _assert_error(r: httpx.Response, status_code: int, error: str) -> dict[str, object]:
    assert r.status_code == status_code, r.text
    body = r.json()
    assert body["error"] == error
    assert isinstance(body["message"], str)
    assert body["request_id"] == r.headers["x-request-id"]
    return body


@pytest.mark.anyio
async def test_status_and_request_id(client: httpx.AsyncClient) -> None:
    r = await client.get("/status")
    assert r.status_code == 200
    body = r.json()
    assert body["is_online"] is True
    assert body["sync_enabled"] is True
    assert body["pending_count"] == 0
    assert body["state"] == "idle"
    assert r.headers["x-request-id"]

    r = await client.get("/status", headers={"X-Request-Id": "req-123"})
    assert r.headers["x-request-id"] == "req-123"


@pytest.mark.anyio
async def test_enqueue_list_and_stats(client: httpx.AsyncClient) -> None:
    r = await client.post(
        "/operations",
        json={"action": "create", "entity_type": "price", "entity_id": "temp-1", "payload": {"a": 1}},
    )
    assert r.status_code == 201, r.text
    op = r.json()
    assert op["priority"] == 2
    assert op["attempts"] == 0
    assert op["payload"] == {"a": 1}

    r = await client.get("/operations", params={"status": "pending"})
    assert [o["id"] for o in r.json()] == [op["id"]]
    r = await client.get("/operations", params={"status": "failed"})
    assert r.json() == []

    r = await client.get("/stats")
    assert r.json()["total_items"] == 1
    assert r.json()["pending_items"] == 1


@pytest.mark.anyio
async def test_validation_errors_use_the_common_shape(client: httpx.AsyncClient) -> None:
    r = await client.post(
        "/operations", json={"action": "upsert", "entity_type": "price", "entity_id": "p1"}
    )
    body = _assert_error(r, 422, "validation_error")
    assert isinstance(body["details"], list)

    r = await client.get("/operations", params={"status": "lost"})
    _assert_error(r, 422, "validation_error")


@pytest.mark.anyio
async def test_unknown_route_is_not_found(client: httpx.AsyncClient) -> None:
    r = await client.get("/nope")
    _assert_error(r, 404, "not_found")


@pytest.mark.anyio
async def test_invalid_payload_for_registered_codec(
    engine: OfflineSyncEngine, client: httpx.AsyncClient
) -> None:
    engine.codecs.register("price", PydanticCodec(Price))
    r = await client.post(
        "/operations",
        json={"action": "update", "entity_type": "price", "entity_id": "p1", "payload": {"amount": 1}},
    )
    _assert_error(r, 400, "invalid_payload")

    r = await client.post(
        "/operations",
        json={
            "action": "update",
            "entity_type": "price",
            "entity_id": "p1",
            "payload": {"product": "rice", "amount": "2"},
        },
    )
    assert r.status_code == 201
    assert r.json()["payload"] == {"product": "rice", "amount": 2.0}


@pytest.mark.anyio
async def test_sync_and_events(
    engine: OfflineSyncEngine, client: httpx.AsyncClient, remote: FakeRemote
) -> None:
    await engine.save_offline_record("price", {"amount": 1})

    r = await client.post("/sync")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["synced_count"] == 1
    assert body["aborted"] is False

    r = await client.get("/records", params={"status": "synced"})
    records = r.json()
    assert len(records) == 1
    assert records[0]["server_id"] == "srv-1"

    r = await client.get("/events", params={"type": "sync_completed"})
    events = r.json()
    assert len(events) == 1
    assert events[0]["details"]["synced_count"] == 1

    r = await client.post("/abort")
    assert r.json() == {"aborted": False}


@pytest.mark.anyio
async def test_offline_sync_is_unavailable(
    engine: OfflineSyncEngine, client: httpx.AsyncClient
) -> None:
    await engine.connectivity.force_offline()
    r = await client.post("/sync")
    _assert_error(r, 503, "offline")

    r = await client.post("/sync", json={"force": True})
    assert r.status_code == 200


@pytest.mark.anyio
async def test_conflict_endpoints(
    engine: OfflineSyncEngine, client: httpx.AsyncClient, remote: FakeRemote
) -> None:
    await engine.save_offline_record("price", {"amount": 1}, record_id="p1", action="update")
    remote.handler = respond_all(409, {"server": {"amount": 5}})

    r = await client.post("/sync")
    conflicts = r.json()["conflicts"]
    assert len(conflicts) == 1
    conflict_id = conflicts[0]["conflict_id"]

    r = await client.get("/conflicts")
    assert [c["conflict_id"] for c in r.json()] == [conflict_id]

    r = await client.post(f"/conflicts/{conflict_id}/resolve", json={"resolution": "merge"})
    _assert_error(r, 400, "bad_request")

    r = await client.post(
        f"/conflicts/{conflict_id}/resolve",
        json={"resolution": "merge", "merged_data": {"amount": 3}, "resolved_by": "bob"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["resolution"] == "merge"
    assert r.json()["resolved_by"] == "bob"

    r = await client.post(f"/conflicts/{conflict_id}/resolve", json={"resolution": "local"})
    _assert_error(r, 400, "bad_request")

    r = await client.post("/conflicts/missing/resolve", json={"resolution": "local"})
    _assert_error(r, 404, "not_found")

    r = await client.get("/conflicts", params={"resolved": "true"})
    assert [c["conflict_id"] for c in r.json()] == [conflict_id]
    assert (await client.get("/conflicts")).json() == []


@pytest.mark.anyio
async def test_retry_cleanup_and_reference(
    client: httpx.AsyncClient, remote: FakeRemote
) -> None:
    r = await client.post("/operations/retry")
    assert r.json() == {"reset": 0}
    r = await client.post("/operations/retry", json={"ids": ["a", "b"]})
    assert r.json() == {"reset": 0}

    r = await client.post("/cleanup", json={"max_age_days": 0})
    assert r.status_code == 200
    assert set(r.json()) == {"operations", "records", "conflicts", "events", "reference"}

    remote.collections["region"] = [{"id": 1, "name": "North"}]
    r = await client.get("/reference/region")
    assert r.json() == {"type": "region", "items": [{"id": 1, "name": "North"}]}


@pytest.mark.anyio
async def test_disabled_engine_reports_unavailable(
    tmp_path: Path, clock: FakeClock, remote: FakeRemote
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    s = make_settings(tmp_path, database_url=f"sqlite:///{blocker / 'store.db'}")
    eng = OfflineSyncEngine(s, database=Database(s.database_url), remote=remote, clock=clock)
    assert await eng.start(monitor=False, auto_sync=False) is False

    app = create_app(eng, manage_engine=False)
    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as c:
            r = await c.get("/status")
            assert r.status_code == 200
            assert r.json()["sync_enabled"] is False

            r = await c.post("/sync", json={"force": True})
            _assert_error(r, 503, "sync_disabled")
            r = await c.get("/operations")
            _assert_error(r, 503, "sync_disabled")
    finally:
        await eng.stop()
