"""Uniform error bodies for the control API.

Every failure comes back as {error, message, request_id, details} instead of
FastAPI's default {"detail": ...}, so the UI layer parses one shape.
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from offline_sync.api.schemas import ErrorResponse
from offline_sync.domain.codecs import PayloadCodecError
from offline_sync.errors import (
    ConflictResolutionError,
    NotFoundError,
    OfflineError,
    OfflineSyncError,
    StorageUnavailable,
    SyncDisabledError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)


def _map_http_status_to_error(status_code: int) -> str:
    mapping: dict[int, str] = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        503: "unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


# Most specific first; the first isinstance match wins.
_ENGINE_ERRORS: list[tuple[type[Exception], int, str]] = [
    (SyncInProgressError, 409, "sync_in_progress"),
    (OfflineError, 503, "offline"),
    (SyncDisabledError, 503, "sync_disabled"),
    (StorageUnavailable, 503, "storage_unavailable"),
    (NotFoundError, 404, "not_found"),
    (ConflictResolutionError, 400, "bad_request"),
    (PayloadCodecError, 400, "invalid_payload"),
]


def _error_response(
    request: Request, status_code: int, error: str, message: str, details: object | None = None
) -> JSONResponse:
    payload = ErrorResponse(
        error=error,
        message=message,
        request_id=getattr(request.state, "request_id", None),
        details=details,
    )
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(payload, exclude_none=True)
    )


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)
    details: object | None = None
    message = str(http_exc.detail)
    if isinstance(http_exc.detail, dict):
        msg = http_exc.detail.get("message")
        if isinstance(msg, str):
            message = msg
            details = http_exc.detail.get("details")
        else:
            details = http_exc.detail
    response = _error_response(
        request,
        http_exc.status_code,
        _map_http_status_to_error(http_exc.status_code),
        message,
        details,
    )
    if http_exc.headers:
        response.headers.update(http_exc.headers)
    return response


async def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_exc = cast(RequestValidationError, exc)
    return _error_response(
        request, 422, "validation_error", "Request validation error", validation_exc.errors()
    )


async def _engine_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, status_code, error in _ENGINE_ERRORS:
        if isinstance(exc, exc_type):
            return _error_response(request, status_code, error, str(exc))
    return await _unhandled_exception_handler(request, exc)


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return _error_response(request, 500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(OfflineSyncError, _engine_exception_handler)
    app.add_exception_handler(PayloadCodecError, _engine_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
