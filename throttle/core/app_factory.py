"""Application factory for the FastAPI app.

Centralizes app construction (store, limiter, middleware, handlers, routers)
to improve testability: tests pass their own store/limiter instead of
monkeypatching module globals.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from throttle.adapters.rate_limit.base import Store
from throttle.adapters.rate_limit.in_memory import MemoryStore
from throttle.adapters.rate_limit.redis_store import RedisStore
from throttle.api.routes import health_router, limits_router
from throttle.core.config import RateLimitSettings, Settings, settings as default_settings
from throttle.core.exception_handlers import setup_exception_handlers
from throttle.core.limiter import RateLimitConfig, RateLimitContext, RateLimiter
from throttle.core.logging import configure_logging
from throttle.core.middleware import request_id_middleware
from throttle.core.openapi import apply_openapi_customizations
from throttle.core.rate_limit import RateLimitGuard

logger = logging.getLogger(__name__)


def build_store(rate_settings: RateLimitSettings) -> Store:
    """Create the counter backend selected by settings."""

    if rate_settings.store == "redis":
        return RedisStore.from_url(
            rate_settings.redis_url,
            timeout_seconds=rate_settings.redis_timeout_seconds,
        )
    return MemoryStore()


def build_limiter(rate_settings: RateLimitSettings, store: Store) -> RateLimiter:
    """Create the default application limiter.

    Paths listed in ``exempt_paths`` are skipped before any store access.
    """

    exempt = tuple(rate_settings.exempt_path_list())

    def _is_exempt(context: RateLimitContext) -> bool:
        request = context.request
        return bool(exempt) and request is not None and request.url.path.startswith(exempt)

    config = RateLimitConfig(
        window_ms=rate_settings.window_ms,
        max=rate_settings.max_requests,
        algorithm=rate_settings.algorithm,
        key_prefix=rate_settings.key_prefix,
        skip=_is_exempt,
    )
    return RateLimiter(config, store)


def create_app(
    app_settings: Settings | None = None,
    *,
    store: Store | None = None,
    limiter: RateLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use; defaults to the global settings.
        store: Counter backend; built from settings when omitted.
        limiter: Fully configured limiter; built from settings when omitted
            (its store then wins over ``store``).

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    cfg = app_settings or default_settings
    rate_settings = cfg.rate_limit

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    if limiter is None:
        limiter = build_limiter(rate_settings, store or build_store(rate_settings))
    active_store = limiter.store

    guard = RateLimitGuard(
        limiter,
        identifier=rate_settings.identifier,
        fail_mode=rate_settings.fail_mode,
        include_headers=rate_settings.include_headers,
        trust_forwarded_headers=rate_settings.trust_forwarded_headers,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await active_store.close()

    app = FastAPI(
        title="Throttle API",
        description=(
            "Rate limiting and request throttling engine. Supports fixed "
            "window, sliding log and cost-based limiting over an in-process "
            "or Redis-backed store."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.rate_limit_guard = guard
    app.state.store_backend = "redis" if isinstance(active_store, RedisStore) else "memory"

    # Middleware: last registered runs first, so request ids wrap the guard.
    if rate_settings.enabled:
        app.middleware("http")(guard)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(limits_router)
    app.include_router(health_router)

    apply_openapi_customizations(app, exempt_paths=rate_settings.exempt_path_list())

    logger.info(
        "app.rate_limit_configured",
        extra={
            "enabled": rate_settings.enabled,
            "algorithm": limiter.config.algorithm.value,
            "window_ms": limiter.config.window_ms,
            "store_backend": app.state.store_backend,
            "fail_mode": guard.fail_mode.value,
        },
    )
    return app
