"""Named limiter presets for common endpoint classes.

Each preset carries its own ``key_prefix`` so limiters built from different
presets can share one store without their counters colliding.
"""

from __future__ import annotations

from typing import Any

from throttle.core.errors import ConfigurationError
from throttle.core.limiter import Algorithm, RateLimitConfig

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

PRESETS: dict[str, dict[str, Any]] = {
    # Login and credential endpoints: exact trailing window against brute force
    "auth": {
        "algorithm": Algorithm.SLIDING_LOG,
        "max": 5,
        "window_ms": 15 * MINUTE_MS,
        "key_prefix": "auth",
    },
    "api": {
        "algorithm": Algorithm.FIXED_WINDOW,
        "max": 100,
        "window_ms": MINUTE_MS,
        "key_prefix": "api",
    },
    "webhook": {
        "algorithm": Algorithm.SLIDING_LOG,
        "max": 1000,
        "window_ms": MINUTE_MS,
        "key_prefix": "webhook",
    },
    "search": {
        "algorithm": Algorithm.FIXED_WINDOW,
        "max": 30,
        "window_ms": MINUTE_MS,
        "key_prefix": "search",
    },
    # Sensitive operations such as password resets
    "strict": {
        "algorithm": Algorithm.FIXED_WINDOW,
        "max": 3,
        "window_ms": HOUR_MS,
        "key_prefix": "strict",
    },
    # Point budget: cheap reads cost 1, bulk exports cost more
    "export": {
        "algorithm": Algorithm.COST_BASED,
        "max": 100,
        "window_ms": MINUTE_MS,
        "key_prefix": "export",
    },
}


def preset(name: str, **overrides: Any) -> RateLimitConfig:
    """Build a ``RateLimitConfig`` from a named preset.

    Args:
        name: One of the keys of ``PRESETS``.
        **overrides: Any ``RateLimitConfig`` field to replace.

    Raises:
        ConfigurationError: If the preset does not exist.
    """
    try:
        base = PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            code="unknown_preset",
            message=f"unknown rate limit preset: {name!r}",
            details={"field": "preset"},
        ) from None
    return RateLimitConfig(**{**base, **overrides})
