"""
Middleware and exception handlers for the QueryPilot FastAPI application.

This module contains:
- HTTP middleware for trace ids and request logging
- Centralized exception handlers mapping QueryPilotException to ErrorResponse

Exception Handling Strategy:
- Every QueryPilotException subclass becomes a JSON ErrorResponse with its http_status
- Responses include trace_id for debugging
- 4xx are logged as warnings, 5xx as errors

Usage in main.py:
    from .api.middleware import register_exception_handlers
    register_exception_handlers(app)
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domain.errors import QueryPilotException, TransientProviderError
from ..domain.responses import ErrorResponse
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id, generate_trace_id, set_trace_id

logger = get_module_logger()

# Seconds a client should wait once the provider stayed rate limited through every retry
PROVIDER_RETRY_AFTER_SECONDS = 120


# =============================================================================
# Middleware Functions
# =============================================================================


async def trace_id_middleware(request: Request, call_next: Callable) -> Response:
    """
    Take the trace id from X-Trace-ID or generate one, and echo it back.
    """
    trace_id = request.headers.get("X-Trace-ID") or generate_trace_id()
    set_trace_id(trace_id)

    response = await call_next(request)
    response.headers["X-Trace-ID"] = trace_id
    return response


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    """
    Log each request and its outcome; adds an X-Process-Time header (ms).
    """
    start_time = datetime.now(timezone.utc)
    trace_id = current_trace_id()

    logger.info(
        "HTTP request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None,
        trace_id=trace_id,
    )

    response = await call_next(request)

    duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    response.headers["X-Process-Time"] = str(round(duration_ms, 2))

    logger.info(
        "HTTP request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
        trace_id=trace_id,
    )
    return response


# =============================================================================
# Exception Handlers
# =============================================================================


def _create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_response = ErrorResponse(
        error=error_code.lower(),
        message=message,
        details=details,
        trace_id=current_trace_id(),
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


async def querypilot_exception_handler(request: Request, exc: QueryPilotException) -> JSONResponse:
    """
    Handler for all QueryPilotException subclasses.

    exc.http_status, exc.error_code, exc.message and exc.details map directly
    onto the response. An overloaded model provider also gets Retry-After.
    """
    headers = None
    if isinstance(exc, TransientProviderError):
        headers = {"Retry-After": str(PROVIDER_RETRY_AFTER_SECONDS)}

    log_level = "warning" if exc.http_status < 500 else "error"
    getattr(logger, log_level)(
        f"{exc.__class__.__name__}: {exc.message}",
        error_code=exc.error_code,
        http_status=exc.http_status,
        details=exc.details,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id(),
    )

    return _create_error_response(
        status_code=exc.http_status,
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details if exc.details else None,
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    logger.warning(
        "Request validation failed",
        error_count=len(errors),
        errors=errors,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id(),
    )

    return _create_error_response(
        status_code=422,
        error_code="VALIDATION_ERROR",
        message="Request validation failed",
        details={"errors": errors},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")

    log_level = "warning" if exc.status_code < 500 else "error"
    getattr(logger, log_level)(
        f"HTTP {exc.status_code}: {exc.detail}",
        error_code=error_code,
        http_status=exc.status_code,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id(),
    )

    return _create_error_response(
        status_code=exc.status_code,
        error_code=error_code,
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Fallback for unhandled exceptions. Internal details stay in the logs.
    """
    logger.error(
        "Unhandled exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id(),
        exc_info=True,
    )

    return _create_error_response(
        status_code=500,
        error_code="INTERNAL_ERROR",
        message="An internal server error occurred. Please try again later.",
    )


# =============================================================================
# Exception Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Priority (first match wins):
    1. QueryPilotException and subclasses
    2. RequestValidationError (Pydantic)
    3. StarletteHTTPException
    4. Exception (fallback)
    """
    # type: ignore needed: add_exception_handler is typed for the base Exception signature
    app.add_exception_handler(QueryPilotException, querypilot_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

    logger.info(
        "Exception handlers registered",
        handlers=["QueryPilotException", "RequestValidationError", "StarletteHTTPException", "Exception (fallback)"],
    )
