from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from offline_sync.config import Settings
from offline_sync.domain.outcomes import RemoteResponse
from offline_sync.errors import NetworkError

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


Handler = Callable[[str, str, Any, Any], Any]


class FakeRemote:
    """Scripted remote authority. `handler` decides every create/update/delete."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str | None]] = []
        self.payloads: list[dict[str, Any] | None] = []
        self.handler: Handler = self._default_handler
        self.collections: dict[str, list[dict[str, Any]] | Exception] = {}
        self.probe_latency_ms: float = 10.0
        self.probe_error: Exception | None = None
        self.probe_delay_seconds: float = 0.0
        # When set, remote calls park until the gate opens.
        self.gate: asyncio.Event | None = None
        self.call_started = asyncio.Event()
        self._created = 0

    def _default_handler(
        self, method: str, entity_type: str, entity_id: str | None, payload: dict[str, Any] | None
    ) -> RemoteResponse:
        if method == "create":
            self._created += 1
            return RemoteResponse(201, {"id": f"srv-{self._created}"})
        if method == "update":
            return RemoteResponse(200, {"id": entity_id})
        return RemoteResponse(204)

    async def _call(
        self, method: str, entity_type: str, entity_id: str | None, payload: dict[str, Any] | None
    ) -> RemoteResponse:
        self.calls.append((method, entity_type, entity_id))
        self.payloads.append(payload)
        self.call_started.set()
        if self.gate is not None:
            await self.gate.wait()
        result = self.handler(method, entity_type, entity_id, payload)
        if isinstance(result, Exception):
            raise result
        return result

    async def create(self, entity_type: str, payload: dict[str, Any]) -> RemoteResponse:
        return await self._call("create", entity_type, None, payload)

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResponse:
        return await self._call("update", entity_type, entity_id, payload)

    async def delete(self, entity_type: str, entity_id: str) -> RemoteResponse:
        return await self._call("delete", entity_type, entity_id, None)

    async def fetch_collection(self, entity_type: str) -> list[dict[str, Any]]:
        value = self.collections.get(entity_type, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def probe(self, *, timeout_seconds: float | None = None) -> float:
        if self.probe_delay_seconds:
            await asyncio.sleep(self.probe_delay_seconds)
        if self.probe_error is not None:
            raise self.probe_error
        return self.probe_latency_ms


def respond_all(status_code: int, body: Any = None) -> Handler:
    def _handler(
        method: str, entity_type: str, entity_id: str | None, payload: dict[str, Any] | None
    ) -> RemoteResponse:
        return RemoteResponse(status_code, body)

    return _handler


def fail_network(
    method: str, entity_type: str, entity_id: str | None, payload: dict[str, Any] | None
) -> Exception:
    return NetworkError("connection refused")


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": f"sqlite:///{tmp_path / 'offline_sync.db'}",
        "sync_inter_batch_delay_seconds": 0,
        "reconnect_debounce_seconds": 0,
        "probe_interval_seconds": 3600,
        "auto_sync_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # pyright: ignore[reportCallIssue]
