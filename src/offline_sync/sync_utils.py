from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import TypeVar

T = TypeVar("T")

# Injected wherever "now" matters so tests can move time forward.
Clock = Callable[[], int]

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def new_temp_id(clock: Clock = now_ms) -> str:
    # Client-side id for creates; swapped for the server id once the create is accepted.
    return f"temp-{clock()}-{uuid.uuid4().hex[:9]}"


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
