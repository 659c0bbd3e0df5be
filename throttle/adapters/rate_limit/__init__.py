"""Rate limit counter stores.

``MemoryStore`` keeps counters in the current process; ``RedisStore`` shares
them between processes and machines. Both implement ``Store`` so the limiter
and the HTTP layer never depend on a concrete backend.
"""

from throttle.adapters.rate_limit.base import SlidingLogHit, Store
from throttle.adapters.rate_limit.in_memory import MemoryStore
from throttle.adapters.rate_limit.redis_store import RedisStore

__all__ = ["MemoryStore", "RedisStore", "SlidingLogHit", "Store"]
