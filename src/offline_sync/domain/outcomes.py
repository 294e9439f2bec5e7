from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from typing import Any, Literal

from offline_sync.models import SyncAction


OutcomeKind = Literal["success", "conflict", "retryable", "terminal"]


@dataclass(frozen=True)
class RemoteResponse:
    status_code: int
    body: Any = None
    text: str = ""


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    error: str | None = None
    status_code: int | None = None
    # Create only: id assigned by the remote authority.
    server_id: str | None = None
    # Conflict only: the server's copy, when the remote sent one.
    server_data: dict[str, Any] | None = None

    @classmethod
    def success(cls, *, server_id: str | None = None, status_code: int | None = None) -> "Outcome":
        return cls(kind="success", server_id=server_id, status_code=status_code)

    @classmethod
    def retryable(cls, error: str, *, status_code: int | None = None) -> "Outcome":
        return cls(kind="retryable", error=error, status_code=status_code)

    @classmethod
    def terminal(cls, error: str, *, status_code: int | None = None) -> "Outcome":
        return cls(kind="terminal", error=error, status_code=status_code)

    @classmethod
    def conflict(
        cls, *, server_data: dict[str, Any] | None = None, status_code: int | None = 409
    ) -> "Outcome":
        return cls(
            kind="conflict",
            error="conflict detected",
            server_data=server_data,
            status_code=status_code,
        )


def extract_server_id(body: Any) -> str | None:
    # Common shapes:
    # - {"id": 1} / {"id": "abc"}
    # - {"data": {"id": 1}}
    # - {"name": "prices/1"}
    if not isinstance(body, dict):
        return None
    for candidate in (body, body.get("data")):
        if not isinstance(candidate, dict):
            continue
        value = candidate.get("id")
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    name = body.get("name")
    if isinstance(name, str) and "/" in name:
        return name.rsplit("/", 1)[-1] or None
    return None


def _extract_server_data(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    for key in ("server", "serverData", "current"):
        value = body.get(key)
        if isinstance(value, dict):
            return dict(value)
    return dict(body) or None


def _error_message(response: RemoteResponse) -> str:
    body = response.body
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return f"HTTP {response.status_code}"


def classify_response(
    action: SyncAction | str,
    response: RemoteResponse,
    *,
    terminal_status_codes: Collection[int] = frozenset(),
) -> Outcome:
    """Pure outcome classifier.

    - No DB/network/time.
    - 2xx succeeds; 404 on delete succeeds (already gone).
    - 409 is a conflict and never consumes an attempt.
    - Anything else is retryable unless its status is listed as terminal.
    """

    status_code = int(response.status_code)

    if 200 <= status_code < 300:
        server_id = extract_server_id(response.body) if action == SyncAction.CREATE else None
        return Outcome.success(server_id=server_id, status_code=status_code)

    if action == SyncAction.DELETE and status_code == 404:
        # Idempotent delete.
        return Outcome.success(status_code=status_code)

    if status_code == 409:
        return Outcome.conflict(server_data=_extract_server_data(response.body))

    message = _error_message(response)
    if status_code in terminal_status_codes:
        return Outcome.terminal(message, status_code=status_code)
    return Outcome.retryable(message, status_code=status_code)
