"""Redis-backed counter store.

This is the only store that is correct for a horizontally scaled deployment:
every process talks to the same keys, and every mutation is a single
MULTI/EXEC transaction so increments from different machines never overwrite
each other.

Key layout (``namespace`` defaults to ``ratelimit``):
- fixed window / cost based: ``{namespace}:{key}`` string counter with a
  PEXPIRE equal to the remaining window.
- sliding log: ``{namespace}:{key}`` sorted set, score = admission time in ms,
  one member per admitted unit of cost.

Failures (connection refused, timeouts, unexpected replies) are raised as
``StoreError``. Whether that means admit or deny is decided by the caller.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError

from throttle.adapters.rate_limit.base import SlidingLogHit, Store
from throttle.core.errors import StoreError

logger = logging.getLogger(__name__)


class RedisStore(Store):
    """Store backed by a shared Redis (or Redis-compatible) server."""

    def __init__(self, client: Redis, *, namespace: str | None = "ratelimit") -> None:
        """Initialize the store.

        Args:
            client: ``redis.asyncio.Redis`` client (may be shared between stores).
            namespace: Prefix separating these keys from other users of the
                same server; None to use keys as given.
        """
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float = 0.5, **kwargs: Any) -> "RedisStore":
        """Build a store with its own connection pool.

        Args:
            url: Redis URL, e.g. ``redis://localhost:6379/0``.
            timeout_seconds: Socket connect/read timeout applied to every call.
            **kwargs: Forwarded to the store constructor.
        """
        client = Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, **kwargs)

    @property
    def client(self) -> Redis:
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _fail(self, operation: str, key: str, exc: Exception) -> StoreError:
        logger.error(
            "store.redis_error",
            extra={
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return StoreError(
            code="store_unavailable",
            message=f"Redis {operation} failed",
            details={"backend": "redis", "operation": operation},
        )

    async def increment(
        self,
        key: str,
        window_ms: int,
        cost: int = 1,
        *,
        limit: int | None = None,
    ) -> tuple[int, int]:
        redis_key = self._key(key)
        try:
            if limit is None:
                async with self._client.pipeline(transaction=True) as pipe:
                    _queue_increment(pipe, redis_key, window_ms, cost)
                    _, count, ttl = await pipe.execute()
            else:

                async def _conditional(pipe: Pipeline) -> tuple[int, int]:
                    raw = await pipe.get(redis_key)
                    current_ttl = await pipe.pttl(redis_key)
                    would_be = (int(raw) if raw is not None else 0) + cost
                    if would_be > limit:
                        return would_be, current_ttl if current_ttl > 0 else window_ms
                    pipe.multi()
                    _queue_increment(pipe, redis_key, window_ms, cost)
                    _, new_count, new_ttl = await pipe.execute()
                    return new_count, new_ttl

                count, ttl = await self._client.transaction(
                    _conditional, redis_key, value_from_callable=True
                )
            count = int(count)
            ttl = int(ttl)
        except (RedisError, ValueError, TypeError) as exc:
            raise self._fail("increment", key, exc) from exc

        if ttl < 0:
            # Counter without expiry (created outside this store); bound it now.
            try:
                await self._client.pexpire(redis_key, window_ms)
            except RedisError as exc:
                raise self._fail("increment", key, exc) from exc
            ttl = window_ms
        return count, ttl

    async def get(self, key: str) -> int | None:
        redis_key = self._key(key)
        try:
            kind = await self._client.type(redis_key)
            kind = kind.decode() if isinstance(kind, bytes) else kind
            if kind == "none":
                return None
            if kind == "zset":
                return await self._live_log_count(redis_key)
            raw = await self._client.get(redis_key)
            return int(raw) if raw is not None else None
        except (RedisError, ValueError, TypeError) as exc:
            raise self._fail("get", key, exc) from exc

    async def _live_log_count(self, redis_key: str) -> int:
        """Count sliding-log entries still inside their window.

        The log's PEXPIRE is set to ``window_ms`` at its newest admission, so
        an entry is live iff ``score > newest_score - pttl``.
        """
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zrange(redis_key, 0, -1, withscores=True)
            pipe.pttl(redis_key)
            entries, ttl = await pipe.execute()
        if not entries:
            return 0
        scores = [int(score) for _, score in entries]
        if ttl < 0:
            return len(scores)
        floor = max(scores) - ttl
        return sum(1 for score in scores if score > floor)

    async def reset(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as exc:
            raise self._fail("reset", key, exc) from exc

    async def hit_log(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        cost: int,
        limit: int,
    ) -> SlidingLogHit:
        redis_key = self._key(key)
        floor = now_ms - window_ms
        live_min = f"({floor}"

        async def _log(pipe: Pipeline) -> SlidingLogHit:
            # Reads only while watching: a write here would abort our own EXEC.
            live = int(await pipe.zcount(redis_key, live_min, "+inf"))
            oldest = await pipe.zrangebyscore(
                redis_key, live_min, "+inf", start=0, num=1, withscores=True
            )
            oldest_ms = int(oldest[0][1]) if oldest else None
            admitted = live + cost <= limit

            pipe.multi()
            pipe.zremrangebyscore(redis_key, "-inf", floor)
            if admitted and cost:
                token = uuid.uuid4().hex
                pipe.zadd(redis_key, {f"{now_ms}:{token}:{i}": now_ms for i in range(cost)})
                pipe.pexpire(redis_key, window_ms)
            await pipe.execute()

            if admitted and cost:
                return SlidingLogHit(
                    admitted=True,
                    count=live + cost,
                    oldest_ms=oldest_ms if oldest_ms is not None else now_ms,
                )
            return SlidingLogHit(admitted=admitted, count=live, oldest_ms=oldest_ms)

        try:
            return await self._client.transaction(_log, redis_key, value_from_callable=True)
        except (RedisError, ValueError, TypeError, IndexError) as exc:
            raise self._fail("hit_log", key, exc) from exc

    async def ping(self) -> bool:
        """Return True when the server answers PING."""
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            raise self._fail("ping", "", exc) from exc

    async def close(self) -> None:
        await self._client.aclose()


def _queue_increment(pipe: Pipeline, redis_key: str, window_ms: int, cost: int) -> None:
    """Queue start-window-if-absent, add and read-ttl on a MULTI pipeline."""
    pipe.set(redis_key, 0, px=window_ms, nx=True)
    pipe.incrby(redis_key, cost)
    pipe.pttl(redis_key)
