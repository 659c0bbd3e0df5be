"""Counter store interface.

The limiter depends on this abstraction (not on a concrete backend) so the
same decision engine runs against per-process memory in development and a
shared Redis in horizontally scaled deployments.

All operations are coroutines because a shared backend means network I/O,
and every operation must be atomic with respect to concurrent callers on the
same key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SlidingLogHit:
    """Outcome of a sliding-log access.

    Attributes:
        admitted: Whether the requested cost was appended to the log.
        count: Live entries after the access (including appended ones).
        oldest_ms: Timestamp of the oldest live entry, None if the log is empty.
    """

    admitted: bool
    count: int
    oldest_ms: int | None


class Store(ABC):
    """Interface for rate limit counter backends."""

    @abstractmethod
    async def increment(
        self,
        key: str,
        window_ms: int,
        cost: int = 1,
        *,
        limit: int | None = None,
    ) -> tuple[int, int]:
        """Add ``cost`` to the counter of the current window for ``key``.

        A window starts on the first increment after the previous one expired
        and lasts ``window_ms``.

        Args:
            key: Fully resolved storage key.
            window_ms: Window length in milliseconds.
            cost: Units to add.
            limit: When given, commit only if the new total stays within it.
                A refused increment writes nothing and returns the would-be
                total, which is then greater than ``limit``.

        Returns:
            Tuple of (count, ttl_ms remaining in the current window).

        Raises:
            StoreError: If the backend fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> int | None:
        """Return the live count for ``key`` or None when there is no record."""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Delete any record held for ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def hit_log(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        cost: int,
        limit: int,
    ) -> SlidingLogHit:
        """Prune, count and conditionally append to a sliding log.

        Entries with a timestamp ``<= now_ms - window_ms`` are discarded, then
        ``cost`` entries stamped ``now_ms`` are appended if the live count plus
        ``cost`` stays within ``limit``. A ``cost`` of 0 only inspects.

        Raises:
            StoreError: If the backend fails.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None
