from __future__ import annotations

import math

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from throttle.core.rate_limit import RateLimitGuard

router = APIRouter(tags=["Rate limit"])


class RateLimitStatus(BaseModel):
    """Current budget of the calling identity."""

    algorithm: str = Field(..., description="Limiting algorithm in use")
    limit: int | None = Field(..., description="Ceiling per window, null when exempt")
    remaining: int | None = Field(..., description="Budget left, null when exempt")
    reset_at: int = Field(..., description="UNIX epoch seconds when the budget next increases")
    window_ms: int = Field(..., description="Window length in milliseconds")


def _finite(value: float) -> int | None:
    return None if math.isinf(value) else int(value)


@router.get("/v1/rate-limit", response_model=RateLimitStatus)
async def rate_limit_status(request: Request) -> RateLimitStatus:
    """Report the caller's budget without spending any of it.

    The request itself passes through the global guard first, so the
    reported ``remaining`` already accounts for this call.
    """

    guard: RateLimitGuard = request.app.state.rate_limit_guard
    limiter = guard.limiter
    result = await limiter.peek(guard.identify(request), request=request)

    return RateLimitStatus(
        algorithm=limiter.config.algorithm.value,
        limit=_finite(result.limit),
        remaining=_finite(result.remaining),
        reset_at=math.ceil(result.reset_at),
        window_ms=limiter.config.window_ms,
    )
