from __future__ import annotations

from typing import cast

from fastapi import Request

from offline_sync.engine import OfflineSyncEngine


def get_engine(request: Request) -> OfflineSyncEngine:
    return cast(OfflineSyncEngine, request.app.state.engine)
