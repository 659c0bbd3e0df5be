"""Tests for the RateLimiter decision engine (memory store, fake clock)."""

import math
from unittest.mock import AsyncMock, Mock

import pytest

from throttle.adapters.rate_limit.in_memory import MemoryStore
from throttle.core.errors import ConfigurationError, StoreError, ValidationAppError
from throttle.core.limiter import (
    Algorithm,
    RateLimitConfig,
    RateLimitContext,
    RateLimiter,
    StaticLimit,
)


class CountingStore(MemoryStore):
    """MemoryStore that records how often each operation is called."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.calls = {"increment": 0, "get": 0, "reset": 0, "hit_log": 0}

    async def increment(self, key, window_ms, cost=1, *, limit=None):
        self.calls["increment"] += 1
        return await super().increment(key, window_ms, cost, limit=limit)

    async def get(self, key):
        self.calls["get"] += 1
        return await super().get(key)

    async def reset(self, key):
        self.calls["reset"] += 1
        return await super().reset(key)

    async def hit_log(self, key, now_ms, window_ms, cost, limit):
        self.calls["hit_log"] += 1
        return await super().hit_log(key, now_ms, window_ms, cost, limit)


def _limiter(clock, store=None, **config) -> RateLimiter:
    config.setdefault("window_ms", 60_000)
    config.setdefault("max", 5)
    return RateLimiter(
        RateLimitConfig(**config),
        store if store is not None else MemoryStore(clock=clock),
        clock=clock,
    )


class TestConfiguration:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"window_ms": 0, "max": 1},
            {"window_ms": -5, "max": 1},
            {"window_ms": 1_000, "max": 0},
            {"window_ms": 1_000, "max": -3},
            {"window_ms": 1.5, "max": 1},
        ],
    )
    def test_invalid_window_or_max_is_rejected(self, kwargs: dict) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitConfig(**kwargs)

    def test_algorithm_accepts_string_value(self) -> None:
        config = RateLimitConfig(window_ms=1_000, max=1, algorithm="sliding_log")
        assert config.algorithm is Algorithm.SLIDING_LOG

    def test_unknown_algorithm_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            RateLimitConfig(window_ms=1_000, max=1, algorithm="token_bucket")

    def test_static_max_becomes_resolver(self) -> None:
        config = RateLimitConfig(window_ms=1_000, max=7)
        assert config.limit_resolver == StaticLimit(7)

    def test_resolver_instance_is_used_as_is(self) -> None:
        resolver = StaticLimit(4)
        config = RateLimitConfig(window_ms=1_000, max=resolver)
        assert config.limit_resolver is resolver

    def test_static_resolver_with_non_positive_value_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitConfig(window_ms=1_000, max=StaticLimit(0))

    @pytest.mark.asyncio
    async def test_invalid_check_arguments(self, clock) -> None:
        limiter = _limiter(clock)

        with pytest.raises(ValidationAppError):
            await limiter.check("")
        with pytest.raises(ValidationAppError):
            await limiter.check("k", cost=0)


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_remaining_decreases_then_rejects(self, clock) -> None:
        limiter = _limiter(clock, max=5)

        remaining = [(await limiter.check("a")).remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

        blocked = await limiter.check("a")
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after_seconds is not None
        assert blocked.retry_after_seconds > 0

    @pytest.mark.asyncio
    async def test_admitted_results_have_no_retry_after(self, clock) -> None:
        result = await _limiter(clock).check("a")

        assert result.allowed is True
        assert result.limit == 5
        assert result.retry_after_seconds is None
        assert result.reset_at == pytest.approx(clock() + 60)

    @pytest.mark.asyncio
    async def test_retry_after_tracks_window_end(self, clock) -> None:
        limiter = _limiter(clock, max=1, window_ms=10_000)
        await limiter.check("a")
        clock.advance(3.2)

        blocked = await limiter.check("a")

        assert blocked.retry_after_seconds == 7
        assert blocked.reset_at == pytest.approx(1_010.0)

    @pytest.mark.asyncio
    async def test_admits_again_after_window(self, clock) -> None:
        limiter = _limiter(clock, max=3, window_ms=10_000)
        for _ in range(4):
            await limiter.check("a")

        clock.advance(10)
        result = await limiter.check("a")

        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_identifiers_do_not_share_counters(self, clock) -> None:
        limiter = _limiter(clock, max=2)
        for _ in range(5):
            await limiter.check("a")

        result = await limiter.check("b")

        assert result.allowed is True
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_remaining_always_within_bounds(self, clock) -> None:
        limiter = _limiter(clock, max=4, window_ms=5_000)
        for step in range(40):
            result = await limiter.check("a", cost=1 + step % 3)
            assert 0 <= result.remaining <= result.limit
            clock.advance(0.7)


class TestSlidingLog:
    @pytest.mark.asyncio
    async def test_trailing_window_is_exact(self, clock) -> None:
        limiter = _limiter(clock, max=10, window_ms=60_000, algorithm=Algorithm.SLIDING_LOG)
        first_admission = clock()

        for _ in range(5):
            assert (await limiter.check("a")).allowed is True
        clock.advance(30)
        results = [await limiter.check("a") for _ in range(5)]
        assert all(r.allowed for r in results)
        assert results[-1].remaining == 0

        blocked = await limiter.check("a")
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after_seconds == 30
        assert blocked.reset_at == pytest.approx(first_admission + 60)

        clock.current = first_admission + 60.001
        after = await limiter.check("a")
        assert after.allowed is True
        assert after.remaining == 4

    @pytest.mark.asyncio
    async def test_no_trailing_interval_exceeds_limit(self, clock) -> None:
        limit, window_s = 4, 10.0
        limiter = _limiter(clock, max=limit, window_ms=10_000, algorithm=Algorithm.SLIDING_LOG)
        admitted: list[float] = []

        for _ in range(60):
            if (await limiter.check("a")).allowed:
                admitted.append(clock())
            clock.advance(1.3)

        for t in admitted:
            in_window = [a for a in admitted if t - window_s < a <= t]
            assert len(in_window) <= limit

    @pytest.mark.asyncio
    async def test_cost_consumes_multiple_entries(self, clock) -> None:
        limiter = _limiter(clock, max=5, algorithm=Algorithm.SLIDING_LOG)

        assert (await limiter.check("a", cost=4)).remaining == 1
        rejected = await limiter.check("a", cost=2)

        assert rejected.allowed is False
        assert rejected.remaining == 1


class TestCostBased:
    @pytest.mark.asyncio
    async def test_rejection_does_not_spend_budget(self, clock) -> None:
        limiter = _limiter(clock, max=100, algorithm=Algorithm.COST_BASED)

        for _ in range(50):
            await limiter.check("a", cost=1)
        for _ in range(10):
            result = await limiter.check("a", cost=3)
        assert result.remaining == 20

        rejected = await limiter.check("a", cost=50)
        assert rejected.allowed is False
        assert rejected.remaining == 20
        assert rejected.retry_after_seconds > 0

        follow_up = await limiter.check("a", cost=20)
        assert follow_up.allowed is True
        assert follow_up.remaining == 0


class TestTieredLimit:
    @pytest.mark.asyncio
    async def test_resolver_object_decides_per_call(self, clock) -> None:
        class TierLimit:
            def resolve_limit(self, context: RateLimitContext) -> int:
                return 1 if context.request == "free" else 3

        limiter = _limiter(clock, max=TierLimit())

        assert (await limiter.check("u1", request="free")).remaining == 0
        assert (await limiter.check("u1", request="free")).allowed is False
        assert (await limiter.check("u1", request="pro")).remaining == 0
        assert (await limiter.check("u2", request="pro")).remaining == 2

        static = _limiter(clock, max=StaticLimit(2))
        assert (await static.check("s")).remaining == 1

    @pytest.mark.asyncio
    async def test_max_resolved_per_call_on_shared_counter(self, clock) -> None:
        tiers = {"free": 2, "pro": 5}
        resolver = Mock(side_effect=lambda ctx: tiers[ctx.request["tier"]])
        limiter = _limiter(clock, max=resolver)

        assert (await limiter.check("u1", request={"tier": "free"})).remaining == 1
        assert (await limiter.check("u1", request={"tier": "free"})).remaining == 0
        assert (await limiter.check("u1", request={"tier": "free"})).allowed is False

        upgraded = await limiter.check("u1", request={"tier": "pro"})
        assert upgraded.allowed is True
        assert upgraded.limit == 5
        assert upgraded.remaining == 1
        assert resolver.call_count == 4

    @pytest.mark.asyncio
    async def test_non_positive_resolved_max_is_configuration_error(self, clock) -> None:
        store = CountingStore(clock=clock)
        limiter = _limiter(clock, store=store, max=lambda ctx: 0)

        with pytest.raises(ConfigurationError):
            await limiter.check("a")
        assert store.calls["increment"] == 0


class TestSkip:
    @pytest.mark.asyncio
    async def test_skip_bypasses_store(self, clock) -> None:
        store = CountingStore(clock=clock)
        limiter = _limiter(clock, store=store, max=1, skip=lambda ctx: True)

        for _ in range(1000):
            result = await limiter.check("a")
            assert result.allowed is True
            assert result.remaining == math.inf
            assert result.skipped is True

        assert store.calls == {"increment": 0, "get": 0, "reset": 0, "hit_log": 0}

    @pytest.mark.asyncio
    async def test_skip_receives_context(self, clock) -> None:
        skip = Mock(return_value=False)
        limiter = _limiter(clock, skip=skip)

        await limiter.check("a", cost=2, request="req")

        skip.assert_called_once_with(RateLimitContext(identifier="a", cost=2, request="req"))


class TestObserverAndKeys:
    @pytest.mark.asyncio
    async def test_on_limit_reached_called_once_per_rejection(self, clock) -> None:
        observer = Mock()
        limiter = _limiter(clock, max=1, on_limit_reached=observer)

        await limiter.check("a")
        observer.assert_not_called()

        blocked = await limiter.check("a")
        await limiter.check("a")

        assert observer.call_count == 2
        context, result = observer.call_args_list[0].args
        assert context.identifier == "a"
        assert result == blocked

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_change_decision(self, clock) -> None:
        limiter = _limiter(clock, max=1, on_limit_reached=Mock(side_effect=RuntimeError("boom")))
        await limiter.check("a")

        assert (await limiter.check("a")).allowed is False

    @pytest.mark.asyncio
    async def test_key_generator_and_prefix(self, clock) -> None:
        store = MemoryStore(clock=clock)
        limiter = _limiter(clock, store=store, key_generator=str.lower, key_prefix="login")

        await limiter.check("Alice")
        await limiter.check("ALICE")

        assert limiter.key_for("Alice") == "login:alice"
        assert await store.get("login:alice") == 2

    @pytest.mark.asyncio
    async def test_limiters_with_prefixes_share_a_store(self, clock) -> None:
        store = MemoryStore(clock=clock)
        search = _limiter(clock, store=store, max=1, key_prefix="search")
        export = _limiter(clock, store=store, max=1, key_prefix="export")

        assert (await search.check("a")).allowed is True
        assert (await export.check("a")).allowed is True


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_store_error_is_not_converted_into_decision(self, clock) -> None:
        store = AsyncMock(spec=MemoryStore)
        store.increment.side_effect = StoreError(code="store_unavailable", message="down")
        limiter = _limiter(clock, store=store)

        with pytest.raises(StoreError):
            await limiter.check("a")
        store.increment.assert_awaited_once()


class TestPeekAndReset:
    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, clock) -> None:
        limiter = _limiter(clock, max=3)
        await limiter.check("a")

        first = await limiter.peek("a")
        second = await limiter.peek("a")

        assert first.remaining == second.remaining == 2
        assert first.allowed is True

    @pytest.mark.asyncio
    async def test_peek_sliding_log(self, clock) -> None:
        limiter = _limiter(clock, max=2, algorithm=Algorithm.SLIDING_LOG)
        await limiter.check("a")
        await limiter.check("a")

        peeked = await limiter.peek("a")

        assert peeked.remaining == 0
        assert peeked.allowed is False

    @pytest.mark.asyncio
    async def test_peek_unknown_identifier_reports_full_budget(self, clock) -> None:
        assert (await _limiter(clock, max=4).peek("new")).remaining == 4

    @pytest.mark.asyncio
    async def test_reset_restores_budget(self, clock) -> None:
        limiter = _limiter(clock, max=1)
        await limiter.check("a")
        assert (await limiter.check("a")).allowed is False

        await limiter.reset("a")

        assert (await limiter.check("a")).allowed is True
