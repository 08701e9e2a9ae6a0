"""Domain exceptions and the JSON error envelope.

Failed requests answer with::

    {"error": {"code": "MONITOR_NOT_FOUND", "message": "...", "request_id": "..."}}

Validation failures add a ``details`` list; ingest auth failures may add
``retry_after``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

# Fallback codes for HTTPExceptions raised with a plain string detail
DEFAULT_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


class RainwatchError(Exception):
    """Base class for errors that map onto a structured API response."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class RainfallValidationError(RainwatchError):
    """A rainfall sample or coverage window failed validation."""

    status_code = 400


class MonitorNotFoundError(RainwatchError):
    status_code = 404
    code = "MONITOR_NOT_FOUND"


class InvalidTransitionError(RainwatchError):
    """A monitor was asked to move along an edge the state machine forbids."""

    status_code = 409
    code = "INVALID_STATE_TRANSITION"


class UpstreamError(RainwatchError):
    status_code = 502
    code = "UPSTREAM_ERROR"


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> JSONResponse:
    error = {"code": code, "message": message, **extra}
    error["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


async def _domain_error(request: Request, exc: RainwatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return error_response(request, exc.status_code, exc.code, exc.message)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        detail = dict(exc.detail)
        code = detail.pop("code", DEFAULT_CODES.get(exc.status_code, "ERROR"))
        message = detail.pop("message", "")
        return error_response(request, exc.status_code, code, message, headers, **detail)
    return error_response(
        request,
        exc.status_code,
        DEFAULT_CODES.get(exc.status_code, "ERROR"),
        str(exc.detail),
        headers,
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return error_response(
        request,
        422,
        "VALIDATION_ERROR",
        f"Request failed validation ({len(details)} problem(s)).",
        details=details,
    )


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.exception("Unhandled error on %s %s (req=%s)", request.method, request.url.path, request_id)
    return error_response(
        request,
        500,
        "INTERNAL_ERROR",
        "Unexpected server error; quote the request_id when reporting it.",
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RainwatchError, _domain_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unhandled_error)
