"""Rate limiting decision engine.

``RateLimiter`` turns ``(identifier, cost)`` into an allow/deny decision using
one algorithm chosen at construction:

- ``FIXED_WINDOW``: one counter per window, every call increments it.
  O(1), but a burst straddling two windows can admit up to twice the limit.
- ``SLIDING_LOG``: one timestamp per admitted unit; never more than ``limit``
  admissions in any trailing ``window_ms`` interval. Storage grows with rate.
- ``COST_BASED``: fixed-window bookkeeping where each call spends a variable
  number of points. A call that would overflow the budget spends nothing.

The limiter holds only read-only configuration. All mutable state lives in the
injected ``Store``, so one instance can be shared by every concurrent request
and each ``check`` touches the store exactly once.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from throttle.adapters.rate_limit.base import Store
from throttle.core.errors import ConfigurationError, ValidationAppError
from throttle.core.logging import hash_key

logger = logging.getLogger(__name__)


class Algorithm(str, Enum):
    """Limiting algorithm, fixed for the lifetime of a limiter."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_LOG = "sliding_log"
    COST_BASED = "cost_based"


@dataclass(frozen=True)
class RateLimitContext:
    """Everything a ``check`` knows about the call being decided.

    Attributes:
        identifier: Raw caller identifier (IP, user id, API key...).
        cost: Units the call wants to spend.
        request: Opaque caller-supplied object (usually the HTTP request).
    """

    identifier: str
    cost: int = 1
    request: Any = None


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Ceiling resolved for this request (``math.inf`` when skipped).
        remaining: Budget left in the current window, ``0 <= remaining <= limit``.
        reset_at: UNIX epoch seconds when ``remaining`` next increases.
        retry_after_seconds: Suggested wait in seconds, only when blocked.
    """

    allowed: bool
    limit: float
    remaining: float
    reset_at: float
    retry_after_seconds: int | None = None

    @property
    def skipped(self) -> bool:
        return math.isinf(self.limit)


class LimitResolver(Protocol):
    """Resolves the ceiling for one call."""

    def resolve_limit(self, context: RateLimitContext) -> int: ...


@dataclass(frozen=True)
class StaticLimit:
    """The same ceiling for every call."""

    value: int

    def resolve_limit(self, context: RateLimitContext) -> int:
        return self.value


@dataclass(frozen=True)
class CallableLimit:
    """Ceiling computed per call, e.g. from a subscription tier."""

    func: Callable[[RateLimitContext], int]

    def resolve_limit(self, context: RateLimitContext) -> int:
        return self.func(context)


def _identity(identifier: str) -> str:
    return identifier


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable limiter configuration.

    Attributes:
        window_ms: Window length in milliseconds (> 0).
        max: Ceiling per window: an int, a ``LimitResolver`` or a
            ``RateLimitContext -> int`` function, evaluated once per check.
        algorithm: Limiting algorithm.
        key_generator: Maps a raw identifier to a storage key.
        skip: Bypass predicate; when it returns True the store is not touched.
        on_limit_reached: Observer called once per rejected check.
        key_prefix: Namespace for keys, so several limiters can share a store.
    """

    window_ms: int
    max: int | Callable[[RateLimitContext], int] | LimitResolver
    algorithm: Algorithm = Algorithm.FIXED_WINDOW
    key_generator: Callable[[str], str] = _identity
    skip: Callable[[RateLimitContext], bool] | None = None
    on_limit_reached: Callable[[RateLimitContext, RateLimitResult], None] | None = None
    key_prefix: str | None = None
    limit_resolver: LimitResolver = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not _is_positive_int(self.window_ms):
            raise ConfigurationError(
                code="invalid_window",
                message="window_ms must be a positive integer",
                details={"field": "window_ms", "min_value": 1},
            )

        if callable(self.max):
            resolver: LimitResolver = CallableLimit(self.max)
        elif isinstance(self.max, StaticLimit) and _is_positive_int(self.max.value):
            resolver = self.max
        elif hasattr(self.max, "resolve_limit") and not isinstance(self.max, StaticLimit):
            resolver = self.max
        elif _is_positive_int(self.max):
            resolver = StaticLimit(self.max)
        else:
            raise ConfigurationError(
                code="invalid_max",
                message="max must be a positive integer, a LimitResolver or a callable",
                details={"field": "max", "min_value": 1},
            )

        # Accept plain strings such as "sliding_log" from settings.
        object.__setattr__(self, "algorithm", Algorithm(self.algorithm))
        object.__setattr__(self, "limit_resolver", resolver)


class RateLimiter:
    """Admission control over a pluggable ``Store``."""

    def __init__(
        self,
        config: RateLimitConfig,
        store: Store,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            config: Validated configuration.
            store: Counter backend, possibly shared with other limiters.
            clock: Time source returning UNIX time in seconds.
        """
        self._config = config
        self._store = store
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def store(self) -> Store:
        return self._store

    def key_for(self, identifier: str) -> str:
        """Return the storage key used for ``identifier``."""
        key = self._config.key_generator(identifier)
        return f"{self._config.key_prefix}:{key}" if self._config.key_prefix else key

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _resolve_limit(self, context: RateLimitContext) -> int:
        limit = self._config.limit_resolver.resolve_limit(context)
        if not _is_positive_int(limit):
            raise ConfigurationError(
                code="invalid_max",
                message="resolved max must be a positive integer",
                details={"field": "max", "min_value": 1},
            )
        return limit

    def _skip_result(self) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=math.inf,
            remaining=math.inf,
            reset_at=self._clock(),
        )

    async def check(self, identifier: str, cost: int = 1, *, request: Any = None) -> RateLimitResult:
        """Decide whether ``identifier`` may spend ``cost`` units now.

        An exhausted budget is a normal return with ``allowed=False``.

        Args:
            identifier: Caller identifier.
            cost: Units to spend (>= 1).
            request: Optional object forwarded to ``skip`` and ``max``.

        Returns:
            RateLimitResult with the decision and header metadata.

        Raises:
            ValidationAppError: If identifier is empty or cost is invalid.
            ConfigurationError: If a dynamic max resolves to a non-positive value.
            StoreError: If the store fails (never converted into a decision).
        """
        if not identifier:
            raise ValidationAppError(
                code="invalid_identifier",
                message="identifier must be a non-empty string",
            )
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 1:
            raise ValidationAppError(
                code="invalid_cost",
                message="cost must be an integer >= 1",
                details={"field": "cost", "min_value": 1},
            )

        context = RateLimitContext(identifier=identifier, cost=cost, request=request)
        if self._config.skip is not None and self._config.skip(context):
            logger.debug("rate_limit.skipped")
            return self._skip_result()

        limit = self._resolve_limit(context)
        key = self.key_for(identifier)

        if self._config.algorithm is Algorithm.SLIDING_LOG:
            result = await self._check_sliding_log(key, cost, limit)
        else:
            result = await self._check_window(key, cost, limit)

        if result.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "key_hash": hash_key(key),
                    "algorithm": self._config.algorithm.value,
                    "limit": result.limit,
                    "remaining": result.remaining,
                    "cost": cost,
                },
            )
            return result

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": hash_key(key),
                "algorithm": self._config.algorithm.value,
                "limit": result.limit,
                "remaining": result.remaining,
                "cost": cost,
                "retry_after_s": result.retry_after_seconds,
            },
        )
        self._notify_limit_reached(context, result)
        return result

    async def _check_window(self, key: str, cost: int, limit: int) -> RateLimitResult:
        now_ms = self._now_ms()
        if self._config.algorithm is Algorithm.COST_BASED:
            count, ttl_ms = await self._store.increment(
                key, self._config.window_ms, cost, limit=limit
            )
            allowed = count <= limit
            committed = count if allowed else count - cost
        else:
            count, ttl_ms = await self._store.increment(key, self._config.window_ms, cost)
            allowed = count <= limit
            committed = count

        reset_at_ms = now_ms + ttl_ms
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - committed),
            reset_at=reset_at_ms / 1000,
            retry_after_seconds=None if allowed else _ceil_seconds(ttl_ms),
        )

    async def _check_sliding_log(self, key: str, cost: int, limit: int) -> RateLimitResult:
        now_ms = self._now_ms()
        window_ms = self._config.window_ms
        hit = await self._store.hit_log(key, now_ms, window_ms, cost, limit)

        oldest_ms = hit.oldest_ms if hit.oldest_ms is not None else now_ms
        reset_at_ms = oldest_ms + window_ms
        retry_after = None
        if not hit.admitted:
            retry_after = _ceil_seconds(window_ms - (now_ms - oldest_ms))

        return RateLimitResult(
            allowed=hit.admitted,
            limit=limit,
            remaining=max(0, limit - hit.count),
            reset_at=reset_at_ms / 1000,
            retry_after_seconds=retry_after,
        )

    def _notify_limit_reached(self, context: RateLimitContext, result: RateLimitResult) -> None:
        callback = self._config.on_limit_reached
        if callback is None:
            return
        try:
            callback(context, result)
        except Exception:
            # The decision is final; a broken observer must not turn a 429 into a 500.
            logger.exception("rate_limit.observer_failed")

    async def peek(self, identifier: str, *, request: Any = None) -> RateLimitResult:
        """Report the current budget for ``identifier`` without spending any.

        Returns:
            RateLimitResult whose ``allowed`` tells whether a cost-1 call would
            currently be admitted.
        """
        if not identifier:
            raise ValidationAppError(
                code="invalid_identifier",
                message="identifier must be a non-empty string",
            )

        context = RateLimitContext(identifier=identifier, cost=1, request=request)
        if self._config.skip is not None and self._config.skip(context):
            return self._skip_result()

        limit = self._resolve_limit(context)
        key = self.key_for(identifier)
        now_ms = self._now_ms()

        if self._config.algorithm is Algorithm.SLIDING_LOG:
            hit = await self._store.hit_log(key, now_ms, self._config.window_ms, 0, limit)
            oldest_ms = hit.oldest_ms if hit.oldest_ms is not None else now_ms
            reset_at = (oldest_ms + self._config.window_ms) / 1000
            count = hit.count
        else:
            count = await self._store.get(key) or 0
            reset_at = (now_ms + self._config.window_ms) / 1000

        remaining = max(0, limit - count)
        return RateLimitResult(
            allowed=remaining > 0,
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
        )

    async def reset(self, identifier: str) -> None:
        """Forget all usage recorded for ``identifier``."""
        key = self.key_for(identifier)
        await self._store.reset(key)
        logger.info("rate_limit.reset", extra={"key_hash": hash_key(key)})


def _ceil_seconds(ms: int) -> int:
    """Round a millisecond delay up to whole seconds, never below 1."""
    return max(1, math.ceil(ms / 1000))
