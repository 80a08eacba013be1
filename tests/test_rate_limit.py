"""Tests for the in-memory rate limiters."""

import asyncio
import random

import pytest

from pollgate.app.core.config import settings
from pollgate.app.middleware.rate_limit import (
    FixedWindowLimiter,
    KeyedLock,
    RateLimiterRegistry,
    RateLimitResult,
    RedisRateLimiter,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)


class TestTokenBucket:
    """Tests for token bucket algorithm."""

    @pytest.fixture
    def limiter(self, clock):
        return TokenBucketLimiter(capacity=5, refill_rate=1, clock=clock)

    @pytest.mark.asyncio
    async def test_burst_then_refill(self, limiter, clock):
        """Five rapid calls pass, the sixth waits one second."""
        remaining = []
        for _ in range(5):
            result = await limiter.check("client")
            assert result.allowed is True
            remaining.append(result.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        result = await limiter.check("client")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after == 1

        clock.advance(1000)
        result = await limiter.check("client")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_fractional_tokens_retained(self, limiter, clock):
        for _ in range(5):
            await limiter.check("client")

        clock.advance(500)
        result = await limiter.check("client")
        assert result.allowed is False
        assert result.retry_after == 1

        # The half token from the denied call is kept, not floored away
        clock.advance(500)
        result = await limiter.check("client")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_retry_after_scales_with_refill_rate(self, clock):
        limiter = TokenBucketLimiter(capacity=1, refill_rate=0.25, clock=clock)
        await limiter.check("client")

        result = await limiter.check("client")
        assert result.allowed is False
        assert result.retry_after == 4

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self, limiter, clock):
        rng = random.Random(42)
        for _ in range(500):
            clock.advance(rng.choice([0, 0, 10, 250, 1000, 7000]))
            await limiter.check("client")
            tokens = limiter._storage["client"].tokens
            assert 0 <= tokens <= limiter.capacity

    @pytest.mark.asyncio
    async def test_refill_capped_at_capacity(self, limiter, clock):
        await limiter.check("client")
        clock.advance(3_600_000)

        stats = await limiter.stats()
        assert stats == [{"clientId": "client", "tokens": 5, "capacity": 5, "refillRate": 1}]

    @pytest.mark.asyncio
    async def test_stats_do_not_mutate_state(self, limiter, clock):
        await limiter.check("client")
        clock.advance(500)
        before = (limiter._storage["client"].tokens, limiter._storage["client"].last_refill)

        await limiter.stats()

        after = (limiter._storage["client"].tokens, limiter._storage["client"].last_refill)
        assert before == after

    @pytest.mark.asyncio
    async def test_different_keys_independent(self, limiter):
        for _ in range(5):
            await limiter.check("key1")

        assert (await limiter.check("key1")).allowed is False
        assert (await limiter.check("key2")).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_do_not_lose_updates(self, limiter):
        results = await asyncio.gather(*(limiter.check("client") for _ in range(20)))
        assert sum(r.allowed for r in results) == 5

    def test_invalid_configuration(self, clock):
        with pytest.raises(ValueError):
            TokenBucketLimiter(capacity=5, refill_rate=-1, clock=clock)


class TestFixedWindow:
    """Tests for fixed window algorithm."""

    @pytest.fixture
    def limiter(self, clock):
        return FixedWindowLimiter(max_requests=6, window_ms=20000, clock=clock)

    @pytest.mark.asyncio
    async def test_denies_after_limit_until_window_ends(self, limiter, clock):
        for expected_remaining in range(5, -1, -1):
            result = await limiter.check("client")
            assert result.allowed is True
            assert result.remaining == expected_remaining

        clock.advance(5500)
        result = await limiter.check("client")
        assert result.allowed is False
        # 14.5s left in the window, rounded up
        assert result.retry_after == 15
        assert result.reset_time == clock.now - 5500 + 20000

    @pytest.mark.asyncio
    async def test_admits_double_burst_across_boundary(self, limiter, clock):
        """Known limitation: 2x max_requests fit in one window-length span."""
        admitted = 0
        for _ in range(6):
            admitted += (await limiter.check("client")).allowed

        clock.advance(20000)
        for _ in range(6):
            admitted += (await limiter.check("client")).allowed

        assert admitted == 12

    @pytest.mark.asyncio
    async def test_idle_windows_reset_once(self, limiter, clock):
        for _ in range(6):
            await limiter.check("client")

        clock.advance(5 * 20000 + 123)
        result = await limiter.check("client")

        assert result.allowed is True
        assert result.remaining == 5
        assert result.reset_time == clock.now + 20000

    @pytest.mark.asyncio
    async def test_window_not_reset_before_boundary(self, limiter, clock):
        for _ in range(6):
            await limiter.check("client")

        clock.advance(19999)
        result = await limiter.check("client")
        assert result.allowed is False
        assert result.retry_after == 1

    @pytest.mark.asyncio
    async def test_stats_snapshot(self, limiter, clock):
        await limiter.check("client")
        clock.advance(2000)

        [stats] = await limiter.stats()

        assert stats["clientId"] == "client"
        assert stats["count"] == 1
        assert stats["max"] == 6
        assert stats["windowMs"] == 20000
        assert stats["resetIn"] == 18
        assert stats["resetAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired_windows(self, limiter, clock):
        await limiter.check("old")
        clock.advance(20000)
        await limiter.check("fresh")

        removed = await limiter.cleanup()

        assert removed == 1
        assert len(limiter) == 1


class TestSlidingWindow:
    """Tests for sliding window algorithm."""

    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowLimiter(max_requests=8, window_ms=30000, clock=clock)

    @pytest.mark.asyncio
    async def test_evenly_spaced_requests_never_denied(self, limiter, clock):
        spacing = 30000 // 8
        for _ in range(8 * 4):
            result = await limiter.check("client")
            assert result.allowed is True
            clock.advance(spacing)

    @pytest.mark.asyncio
    async def test_extra_request_within_window_denied(self, limiter, clock):
        start = clock.now
        for expected_remaining in range(7, -1, -1):
            result = await limiter.check("client")
            assert result.remaining == expected_remaining

        clock.advance(100)
        result = await limiter.check("client")

        assert result.allowed is False
        assert result.retry_after == 30
        assert result.reset_time == start + 30000

    @pytest.mark.asyncio
    async def test_entries_expire_at_window_edge(self, limiter, clock):
        for _ in range(8):
            await limiter.check("client")

        clock.advance(29999)
        assert (await limiter.check("client")).allowed is False

        clock.advance(1)
        assert (await limiter.check("client")).allowed is True

    @pytest.mark.asyncio
    async def test_log_only_holds_live_timestamps(self, limiter, clock):
        for _ in range(3):
            await limiter.check("client")
            clock.advance(20000)
        await limiter.check("client")

        timestamps = list(limiter._storage["client"].timestamps)
        assert all(ts > clock.now - 30000 for ts in timestamps)
        assert len(timestamps) == 2

    @pytest.mark.asyncio
    async def test_stats_snapshot(self, limiter, clock):
        await limiter.check("client")
        await limiter.check("client")
        clock.advance(31000)

        [stats] = await limiter.stats()
        assert stats["current"] == 0
        assert stats["max"] == 8
        # Expired entries are only purged by check()
        assert len(limiter._storage["client"].timestamps) == 2


class TestLRUBound:
    """Per-client state is bounded."""

    @pytest.mark.asyncio
    async def test_oldest_clients_evicted(self, clock):
        limiter = SlidingWindowLimiter(max_requests=3, window_ms=1000, max_entries=5, clock=clock)
        for i in range(6):
            await limiter.check(f"client-{i}")

        assert len(limiter) == 5
        assert "client-0" not in limiter._storage
        assert "client-5" in limiter._storage

    def test_default_bound_from_settings(self, clock):
        limiter = TokenBucketLimiter(capacity=1, refill_rate=1, clock=clock)
        assert limiter._max_entries == settings.rate_limit_max_entries

    @pytest.mark.asyncio
    async def test_recent_use_protects_from_eviction(self, clock):
        limiter = FixedWindowLimiter(max_requests=3, window_ms=1000, max_entries=3, clock=clock)
        for i in range(3):
            await limiter.check(f"client-{i}")
        await limiter.check("client-0")
        await limiter.check("client-3")

        assert "client-0" in limiter._storage
        assert "client-1" not in limiter._storage


class TestKeyedLock:
    """Tests for per-key locking."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        lock = KeyedLock()
        order = []

        async def worker(name):
            async with lock.acquire("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        lock = KeyedLock()
        order = []

        async def worker(key):
            async with lock.acquire(key):
                order.append(f"{key}-in")
                await asyncio.sleep(0.01)
                order.append(f"{key}-out")

        await asyncio.gather(worker("x"), worker("y"))

        assert order[:2] == ["x-in", "y-in"]
        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        lock = KeyedLock()
        with pytest.raises(RuntimeError):
            async with lock.acquire("k"):
                raise RuntimeError("boom")
        assert "k" not in lock


class TestRateLimiterRegistry:
    """Tests for path to limiter binding."""

    def test_from_settings_builds_all_algorithms(self):
        registry = RateLimiterRegistry.from_settings()
        slugs = [slug for slug, _ in registry.items()]

        assert slugs == ["token-bucket", "sliding-window", "fixed-window", "distributed"]
        assert isinstance(registry.distributed, RedisRateLimiter)

    def test_for_path(self, clock):
        bucket = TokenBucketLimiter(capacity=1, refill_rate=1, clock=clock)
        registry = RateLimiterRegistry({"token-bucket": bucket})

        assert registry.for_path("/api/token-bucket") is bucket
        assert registry.for_path("/api/token-bucket/") is bucket
        assert registry.for_path("/api/token-bucket/stats") is None
        assert registry.for_path("/status") is None
        assert registry.distributed is None


class TestRateLimitResult:
    """Tests for RateLimitResult dataclass."""

    def test_reset_at_iso_format(self):
        result = RateLimitResult(
            allowed=True, limit=5, remaining=4, algorithm="fixed-window",
            reset_time=1_700_000_000_000,
        )
        assert result.reset_at == "2023-11-14T22:13:20.000Z"

    def test_reset_at_absent(self):
        result = RateLimitResult(allowed=True, limit=5, remaining=4, algorithm="token-bucket")
        assert result.reset_at is None
        assert result.degraded is False
