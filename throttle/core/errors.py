"""Application-level exception types.

This module defines the error taxonomy shared by the store adapters, the
limiter and the HTTP layer, enabling consistent error handling, logging, and
API responses.

Note that an exhausted budget is *not* an error for the limiter itself: it is
reported as ``RateLimitResult.allowed == False``. ``RateLimitExceededError``
only exists so the per-route dependency can short-circuit a FastAPI handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep shapes flexible while encouraging
    consistent keys across the codebase.
    """

    code: str
    message: str
    hint: str
    field: str
    min_value: int
    actual_value: int
    http_status: int
    retry_after: int
    limit: int
    remaining: int
    reset_at: float
    backend: str
    operation: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when a call argument is invalid (empty identifier, bad cost)."""


class ConfigurationError(AppError):
    """Raised when a limiter is configured with an invalid window or max."""


class StoreError(AppError):
    """Raised when the counter backend is unreachable or misbehaves."""


class RateLimitExceededError(AppError):
    """Raised by the per-route dependency when a request is rejected.

    Carries the limiter result so the exception handler can render the
    429 contract (headers plus ``retryAfter`` body).
    """

    def __init__(self, result: Any, headers: dict[str, str] | None = None) -> None:
        super().__init__(
            code="rate_limit_exceeded",
            message="Too many requests",
            details={
                "limit": result.limit,
                "remaining": result.remaining,
                "retry_after": result.retry_after_seconds or 0,
            },
        )
        self.result = result
        self.headers = headers or {}
