"""Rate limiting for FastAPI: middleware and per-route dependency.

This module wires ``RateLimiter`` into the HTTP layer.

Design goals:
- Minimal coupling: the limiter knows nothing about HTTP; this module maps
  a ``RateLimitResult`` onto headers and status codes.
- Explicit failure policy: when the store is unreachable the guard either
  fails closed (503, the default) or fails open (request admitted without
  headers). Both are logged.
- No backend leakage: store error details never reach the client.

HTTP contract:
- Admitted: handler response plus ``X-RateLimit-Limit``,
  ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``.
- Rejected: 429 with the headers above, ``Retry-After`` and
  ``{"error": "Too many requests", "retryAfter": <seconds>}``.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Awaitable, Callable, Union

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from throttle.core.errors import ConfigurationError, RateLimitExceededError, StoreError
from throttle.core.limiter import RateLimiter, RateLimitResult
from throttle.core.logging import get_request_id, hash_key

logger = logging.getLogger(__name__)

IdentifierFunc = Callable[[Request], str]
CostFunc = Callable[[Request], int]
CallNext = Callable[[Request], Awaitable[Response]]


class FailMode(str, Enum):
    """What the guard does when the store raises ``StoreError``."""

    OPEN = "open"
    CLOSED = "closed"


def client_ip(request: Request, *, trust_forwarded_headers: bool = False) -> str:
    """Resolve the client IP address.

    By default only the socket peer is used. Proxy headers are consulted
    first only when trusted: the first hop of ``X-Forwarded-For``, then
    ``X-Real-IP``. Clients can set these headers freely, so trust them only
    behind a proxy that overwrites them.
    """

    if trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return request.client.host if request.client else "unknown"


def _ip_identifier(request: Request, trust: bool) -> str:
    return f"ip:{client_ip(request, trust_forwarded_headers=trust)}"


def _user_identifier(request: Request, trust: bool) -> str:
    user_id = getattr(request.state, "user_id", None) or request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    return _ip_identifier(request, trust)


def _api_key_identifier(request: Request, trust: bool) -> str:
    api_key = request.headers.get("x-api-key")
    if api_key:
        # Never use the raw credential as a storage key.
        return f"api_key:{hash_key(api_key)}"
    return _ip_identifier(request, trust)


def _auto_identifier(request: Request, trust: bool) -> str:
    """Most specific identity available: user, API key, session, then IP."""

    user_id = getattr(request.state, "user_id", None) or request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    if request.headers.get("x-api-key"):
        return _api_key_identifier(request, trust)
    session = request.cookies.get("session")
    if session:
        return f"session:{hash_key(session)}"
    return _ip_identifier(request, trust)


_IDENTIFIER_STRATEGIES: dict[str, Callable[[Request, bool], str]] = {
    "ip": _ip_identifier,
    "user": _user_identifier,
    "api_key": _api_key_identifier,
    "auto": _auto_identifier,
}


def build_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Render the ``X-RateLimit-*`` (and, when blocked, ``Retry-After``) headers."""

    headers = {
        "X-RateLimit-Limit": str(int(result.limit)),
        "X-RateLimit-Remaining": str(int(result.remaining)),
        "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after_seconds or 0)
    return headers


def rate_limited_response(result: RateLimitResult, *, include_headers: bool = True) -> JSONResponse:
    """Build the 429 response for a rejected request."""

    retry_after = result.retry_after_seconds or 0
    headers = build_rate_limit_headers(result) if include_headers else {"Retry-After": str(retry_after)}
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": "Too many requests", "retryAfter": retry_after},
        headers=headers,
    )


def store_unavailable_response() -> JSONResponse:
    """Generic 503 used when failing closed; hides backend details."""

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": {
                "code": "rate_limit_unavailable",
                "message": "Service temporarily unavailable. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


class RateLimitGuard:
    """Applies a ``RateLimiter`` to HTTP requests.

    Usage as global middleware::

        guard = RateLimitGuard(limiter, identifier="api_key")
        app.middleware("http")(guard)

    Usage on a single route::

        @router.post("/export", dependencies=[Depends(guard.dependency)])
        async def export(): ...
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        identifier: Union[str, IdentifierFunc] = "ip",
        cost: Union[int, CostFunc] = 1,
        fail_mode: FailMode | str = FailMode.CLOSED,
        include_headers: bool = True,
        trust_forwarded_headers: bool = False,
    ) -> None:
        """Initialize the guard.

        Args:
            limiter: Limiter making the decisions.
            identifier: ``"ip"``, ``"user"``, ``"api_key"``, ``"auto"`` or a
                function extracting an identifier from the request.
            cost: Units per request, or a function computing them.
            fail_mode: Policy when the store fails.
            include_headers: Emit ``X-RateLimit-*`` headers.
            trust_forwarded_headers: Use proxy headers to resolve client IPs
                (only behind a proxy that overwrites them).

        Raises:
            ConfigurationError: If ``identifier`` names an unknown strategy.
        """
        if isinstance(identifier, str):
            if identifier not in _IDENTIFIER_STRATEGIES:
                raise ConfigurationError(
                    code="invalid_identifier_strategy",
                    message=f"identifier must be one of {sorted(_IDENTIFIER_STRATEGIES)} or a callable",
                    details={"field": "identifier"},
                )
            strategy = _IDENTIFIER_STRATEGIES[identifier]
            self._identify: IdentifierFunc = lambda request: strategy(
                request, trust_forwarded_headers
            )
        else:
            self._identify = identifier

        self._limiter = limiter
        self._cost = cost
        self._fail_mode = FailMode(fail_mode)
        self._include_headers = include_headers

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def fail_mode(self) -> FailMode:
        return self._fail_mode

    def identify(self, request: Request) -> str:
        """Return the limiter identifier for ``request``."""
        return self._identify(request)

    def _cost_for(self, request: Request) -> int:
        return self._cost(request) if callable(self._cost) else self._cost

    async def evaluate(self, request: Request) -> RateLimitResult | None:
        """Run the limiter for ``request``.

        Returns:
            The limiter result, or None when the store failed and the guard
            fails open.

        Raises:
            StoreError: When the store failed and the guard fails closed.
        """
        try:
            return await self._limiter.check(
                self.identify(request), self._cost_for(request), request=request
            )
        except StoreError as exc:
            logger.error(
                "rate_limit.store_error",
                extra={
                    "fail_mode": self._fail_mode.value,
                    "error_code": exc.code,
                    "request_path": request.url.path,
                    "request_method": request.method,
                },
            )
            if self._fail_mode is FailMode.OPEN:
                return None
            raise

    def _apply_headers(self, response: Response, result: RateLimitResult | None) -> None:
        if result is None or result.skipped or not self._include_headers:
            return
        for name, value in build_rate_limit_headers(result).items():
            response.headers[name] = value

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        """HTTP middleware entry point (``app.middleware("http")(guard)``)."""
        try:
            result = await self.evaluate(request)
        except StoreError:
            return store_unavailable_response()

        if result is not None and not result.allowed:
            return rate_limited_response(result, include_headers=self._include_headers)

        response = await call_next(request)
        self._apply_headers(response, result)
        return response

    async def dependency(self, request: Request, response: Response) -> None:
        """FastAPI dependency enforcing the limit on a single route.

        Raises:
            RateLimitExceededError: When the request is rejected (rendered as 429).
            StoreError: When the store failed and the guard fails closed.
        """
        result = await self.evaluate(request)
        if result is not None and not result.allowed:
            headers = build_rate_limit_headers(result) if self._include_headers else {}
            raise RateLimitExceededError(result, headers=headers)
        self._apply_headers(response, result)
