"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Design:
- RateLimitExceededError → 429 with the rate limit body and headers
- StoreError → 503 with a generic message (no backend details)
- Other AppError subclasses → 400 / 500
- Unexpected Exception → generic 500 (safety net)
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from throttle.core.errors import (
    AppError,
    ConfigurationError,
    RateLimitExceededError,
    StoreError,
)
from throttle.core.logging import get_request_id
from throttle.core.rate_limit import rate_limited_response, store_unavailable_response

logger = logging.getLogger(__name__)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Render a rejected request raised by ``RateLimitGuard.dependency``."""
    response = rate_limited_response(exc.result, include_headers=False)
    for name, value in exc.headers.items():
        response.headers[name] = value
    return response


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Fail-closed rendering of a store outage.

    The store already logged the backend error; only the request context is
    added here so the client never sees Redis details.
    """
    logger.warning(
        "store_error_handled",
        extra={
            "error_code": exc.code,
            "request_path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    return store_unavailable_response()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - ConfigurationError → 500 Internal Server Error (server fault)
    - anything else (e.g. ValidationAppError) → 400 Bad Request

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context (client errors only)
    """
    status_code = 500 if isinstance(exc, ConfigurationError) else 400

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_id": get_request_id(),
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details and status_code < 500:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message. No stack traces or exception text reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Specific handlers are registered before the general fallback; Starlette
    resolves them by walking the exception's MRO.
    """
    app.exception_handler(RateLimitExceededError)(rate_limit_exceeded_handler)
    app.exception_handler(StoreError)(store_error_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
