"""In-memory counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use ``RedisStore`` for horizontally scaled deployments.
- Atomic per event loop: every operation runs under one ``asyncio.Lock``.
- Expired records are dropped lazily on access, plus a sweep once the map
  grows beyond ``sweep_threshold`` keys (then each time it doubles).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from throttle.adapters.rate_limit.base import SlidingLogHit, Store

logger = logging.getLogger(__name__)


@dataclass
class _CounterRecord:
    count: int
    window_start: int
    expires_at: int


@dataclass
class _LogRecord:
    window_ms: int
    expires_at: int
    timestamps: deque[int] = field(default_factory=deque)

    def prune(self, now_ms: int) -> None:
        floor = now_ms - self.window_ms
        while self.timestamps and self.timestamps[0] <= floor:
            self.timestamps.popleft()


class MemoryStore(Store):
    """Store backed by a local dict of per-key records.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = 10_000,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            sweep_threshold: Number of records above which expired ones are
                swept on the next write. After each sweep the trigger moves to
                twice the surviving size. Live records are never evicted.
        """
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._sweep_at = sweep_threshold
        self._lock = asyncio.Lock()
        self._records: dict[str, _CounterRecord | _LogRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _live(self, key: str, now_ms: int) -> _CounterRecord | _LogRecord | None:
        """Return the record for key, discarding it if it has expired."""
        record = self._records.get(key)
        if record is not None and now_ms >= record.expires_at:
            del self._records[key]
            return None
        return record

    def _sweep_locked(self, now_ms: int) -> None:
        if len(self._records) <= self._sweep_at:
            return
        self._sweep_expired_locked(now_ms)
        # Rescan only once the map has doubled.
        self._sweep_at = max(self._sweep_threshold, 2 * len(self._records))

    def _sweep_expired_locked(self, now_ms: int) -> None:
        expired = [k for k, r in self._records.items() if now_ms >= r.expires_at]
        for key in expired:
            del self._records[key]
        logger.debug(
            "store.memory_sweep",
            extra={"evicted": len(expired), "size": len(self._records)},
        )

    async def increment(
        self,
        key: str,
        window_ms: int,
        cost: int = 1,
        *,
        limit: int | None = None,
    ) -> tuple[int, int]:
        async with self._lock:
            now_ms = self._now_ms()
            record = self._live(key, now_ms)
            if not isinstance(record, _CounterRecord):
                record = _CounterRecord(
                    count=0, window_start=now_ms, expires_at=now_ms + window_ms
                )

            ttl_ms = record.expires_at - now_ms
            would_be = record.count + cost
            if limit is not None and would_be > limit:
                return would_be, ttl_ms

            record.count = would_be
            self._records[key] = record
            self._sweep_locked(now_ms)
            return record.count, ttl_ms

    async def get(self, key: str) -> int | None:
        async with self._lock:
            now_ms = self._now_ms()
            record = self._live(key, now_ms)
            if record is None:
                return None
            if isinstance(record, _LogRecord):
                record.prune(now_ms)
                return len(record.timestamps)
            return record.count

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)

    async def hit_log(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        cost: int,
        limit: int,
    ) -> SlidingLogHit:
        async with self._lock:
            record = self._records.get(key)
            if not isinstance(record, _LogRecord):
                record = _LogRecord(window_ms=window_ms, expires_at=now_ms + window_ms)
            record.window_ms = window_ms
            record.prune(now_ms)

            admitted = len(record.timestamps) + cost <= limit
            if admitted and cost:
                record.timestamps.extend([now_ms] * cost)
                record.expires_at = now_ms + window_ms

            if record.timestamps:
                self._records[key] = record
                self._sweep_locked(now_ms)
            else:
                self._records.pop(key, None)

            oldest = record.timestamps[0] if record.timestamps else None
            return SlidingLogHit(admitted=admitted, count=len(record.timestamps), oldest_ms=oldest)

    async def clear(self) -> None:
        """Drop every record."""
        async with self._lock:
            self._records.clear()
            self._sweep_at = self._sweep_threshold
