from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from offline_sync.config import Settings
from offline_sync.domain.outcomes import RemoteResponse
from offline_sync.errors import NetworkError, RemoteRejected

logger = logging.getLogger(__name__)

# Called per request; the host owns credentials and the engine never stores them.
TokenProvider = Callable[[], str | None]


class RemoteAuthority(Protocol):
    async def create(self, entity_type: str, payload: dict[str, Any]) -> RemoteResponse: ...

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResponse: ...

    async def delete(self, entity_type: str, entity_id: str) -> RemoteResponse: ...

    async def fetch_collection(self, entity_type: str) -> list[dict[str, Any]]: ...

    async def probe(self, *, timeout_seconds: float | None = None) -> float:
        """Return round-trip latency in ms; raise NetworkError when unreachable."""
        ...


def _extract_list(data: object) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [x for x in data if isinstance(x, dict)]
    if isinstance(data, dict):
        for key in ("items", "data", "results"):
            value = data.get(key)
            if isinstance(value, list):
                return [x for x in value if isinstance(x, dict)]
    return []


def _to_remote_response(resp: httpx.Response) -> RemoteResponse:
    try:
        body: Any = resp.json() if resp.content else None
    except ValueError:
        body = None
    return RemoteResponse(status_code=resp.status_code, body=body, text=resp.text)


class HttpxRemoteAuthority:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        collection_template: str = "/api/v1/{entity_type}s",
        collection_paths: Mapping[str, str] | None = None,
        probe_path: str = "/actuator/health",
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._template = collection_template
        self._paths = dict(collection_paths or {})
        self._probe_path = probe_path
        self._token_provider = token_provider
        self._client = client

    @classmethod
    def from_settings(
        cls,
        s: Settings,
        *,
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "HttpxRemoteAuthority":
        return cls(
            base_url=s.remote_base_url,
            timeout_seconds=s.remote_request_timeout_seconds,
            collection_template=s.remote_collection_template,
            collection_paths=s.remote_collection_paths_map(),
            probe_path=s.probe_path,
            token_provider=token_provider,
            client=client,
        )

    def collection_path(self, entity_type: str) -> str:
        path = self._paths.get(entity_type)
        if path is None:
            path = self._template.format(entity_type=entity_type)
        return "/" + path.strip("/")

    def _item_path(self, entity_type: str, entity_id: str) -> str:
        return f"{self.collection_path(entity_type)}/{quote(entity_id, safe='')}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token_provider is not None:
            token = (self._token_provider() or "").strip()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        effective_timeout = self._timeout if timeout is None else timeout
        try:
            if self._client is not None:
                return await self._client.request(
                    method, url, headers=self._headers(), json=json, timeout=effective_timeout
                )
            async with httpx.AsyncClient(timeout=effective_timeout) as client:
                return await client.request(method, url, headers=self._headers(), json=json)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out after {effective_timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    async def create(self, entity_type: str, payload: dict[str, Any]) -> RemoteResponse:
        resp = await self._request("POST", self.collection_path(entity_type), json=payload)
        return _to_remote_response(resp)

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResponse:
        resp = await self._request("PUT", self._item_path(entity_type, entity_id), json=payload)
        return _to_remote_response(resp)

    async def delete(self, entity_type: str, entity_id: str) -> RemoteResponse:
        resp = await self._request("DELETE", self._item_path(entity_type, entity_id))
        return _to_remote_response(resp)

    async def fetch_collection(self, entity_type: str) -> list[dict[str, Any]]:
        resp = await self._request("GET", self.collection_path(entity_type))
        if not 200 <= resp.status_code < 300:
            raise RemoteRejected(resp.status_code, f"GET {entity_type} failed: {resp.text[:200]}")
        try:
            return _extract_list(resp.json())
        except ValueError as e:
            raise RemoteRejected(resp.status_code, f"GET {entity_type} returned non-JSON") from e

    async def probe(self, *, timeout_seconds: float | None = None) -> float:
        started = time.perf_counter()
        resp = await self._request("HEAD", "/" + self._probe_path.strip("/"), timeout=timeout_seconds)
        latency_ms = (time.perf_counter() - started) * 1000
        if resp.status_code >= 400:
            # Reachable but unhealthy; the monitor grades this as poor quality.
            raise RemoteRejected(resp.status_code, f"probe returned HTTP {resp.status_code}")
        logger.debug("probe ok status=%s latency_ms=%.1f", resp.status_code, latency_ms)
        return latency_ms
