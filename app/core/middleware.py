"""
FastAPI Middleware

Request plumbing shared by every ledger route:

- CorrelationIdMiddleware accepts a caller's X-Correlation-ID when it is a
  plain token and otherwise issues a fresh one
- RequestLoggingMiddleware writes one record per request; health checks
  log at DEBUG
- SecurityHeadersMiddleware adds nosniff, HSTS outside DEBUG and no-store
  on API responses (they carry balances)

The exception handlers give every error the same envelope:
``{"error": {"code", "message", "retryable", "details"}}``.
"""
import re
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")
_QUIET_PATHS = frozenset({"/health", "/health/ready"})


def _incoming_correlation_id(request: Request) -> str | None:
    value = request.headers.get(CORRELATION_HEADER)
    if value and _CORRELATION_ID_RE.match(value):
        return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to the request and echoes it on the response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Left set after the response so the outer 500 handler still sees it
        correlation_id = set_correlation_id(_incoming_correlation_id(request))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log record per request with status and duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.monotonic()
        path = request.url.path
        request_data = {
            "method": request.method,
            "path": path,
            "client_host": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {path} raised {type(e).__name__}",
                extra_data={
                    **request_data,
                    "duration_seconds": round(time.monotonic() - started, 4),
                },
                exc_info=True
            )
            raise

        status = response.status_code
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        elif path in _QUIET_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log(
            f"{request.method} {path} -> {status}",
            extra_data={
                **request_data,
                "status_code": status,
                "duration_seconds": round(time.monotonic() - started, 4),
            }
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    HSTS is skipped in DEBUG so local runs over plain HTTP keep working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        if not self._debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


def _error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    *,
    retryable: bool = False,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code.value,
                "message": message,
                "retryable": retryable,
                "details": details or {},
            }
        },
        headers={CORRELATION_HEADER: get_correlation_id(), **(headers or {})},
    )


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Ledger and domain errors; 5xx log at ERROR, the rest at WARNING"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.error_code.value} on {request.url.path}: {exc.message}",
        extra_data={
            "error_code": exc.error_code.value,
            "details": exc.details,
            "retryable": exc.retryable,
            "path": request.url.path,
        }
    )

    headers = {}
    if exc.retryable and exc.status_code == 503:
        headers["Retry-After"] = "1"

    return _error_response(
        exc.status_code,
        exc.error_code,
        exc.message,
        retryable=exc.retryable,
        details=exc.details,
        headers=headers,
    )


async def request_validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies use the same 400 envelope as ValidationException"""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors}
    )
    return _error_response(
        400,
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        details={"errors": errors},
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.url.path}",
        extra_data={
            "exception_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # Last added is outermost: SecurityHeaders -> CorrelationId -> RequestLogging -> app
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
