from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import cast

from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from offline_sync.api.error_handlers import register_error_handlers
from offline_sync.api.routers import conflicts, operations, sync
from offline_sync.engine import OfflineSyncEngine


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id_header: bytes | None = None
        for key, value in cast(list[tuple[bytes, bytes]], scope.get("headers") or []):
            if key.lower() == b"x-request-id":
                value = value.strip()
                if value:
                    request_id_header = value
                break

        if request_id_header is None:
            request_id = str(uuid.uuid4())
            request_id_header = request_id.encode("ascii")
        else:
            # latin-1 is a 1-1 mapping for bytes -> str.
            request_id = request_id_header.decode("latin-1")

        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = cast(list[tuple[bytes, bytes]], message.get("headers", []))
                headers = [(k, v) for (k, v) in headers if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id_header))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


def create_app(engine: OfflineSyncEngine, *, manage_engine: bool = True) -> FastAPI:
    """Control API over one engine.

    With manage_engine the app lifespan starts and stops the engine; tests that
    drive the engine themselves pass False.
    """

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_engine:
            await engine.start()
        try:
            yield
        finally:
            if manage_engine:
                # Shut down aiosqlite worker threads while the loop is still alive.
                await engine.stop()

    app = FastAPI(title=engine.settings.app_name, lifespan=_lifespan)
    app.state.engine = engine
    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)

    app.include_router(sync.router)
    app.include_router(operations.router)
    app.include_router(conflicts.router)
    return app
