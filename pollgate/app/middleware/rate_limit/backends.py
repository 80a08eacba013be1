"""Rate limit backends.

Four interchangeable admission policies behind one `check(client_id)`
contract: token bucket, fixed window and sliding window kept in process
memory, and a sliding window whose log lives in Redis.
"""

import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, Generic, List, Optional, TypeVar

import redis

from pollgate.app.core.clock import Clock, now_ms
from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_log_context, get_logger
from pollgate.app.exceptions import ServiceUnavailableError
from pollgate.app.middleware.rate_limit.locks import KeyedLock
from pollgate.app.middleware.rate_limit.models import (
    FixedWindowState,
    RateLimitResult,
    SlidingWindowState,
    TokenBucketState,
    format_instant,
)
from pollgate.app.middleware.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)

StateT = TypeVar("StateT")


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    algorithm: str = ""

    @property
    @abstractmethod
    def limit(self) -> int:
        """Advertised request limit (X-RateLimit-Limit)."""

    @abstractmethod
    async def check(self, client_id: str) -> RateLimitResult:
        """Decide whether the next request from `client_id` is admitted.

        Args:
            client_id: Client identity (hashed IP in the HTTP layer)

        Returns:
            RateLimitResult; denials always carry retry_after
        """

    @abstractmethod
    async def stats(self) -> List[Dict[str, Any]]:
        """Per-client state snapshot, without mutating any state."""

    @abstractmethod
    async def cleanup(self) -> int:
        """Drop idle client state. Returns the number of entries removed."""

    async def is_available(self) -> bool:
        """Whether the backend can currently make decisions."""
        return True

    def describe(self) -> Dict[str, Any]:
        """Configured limits, for the info endpoint."""
        return {}


class InMemoryRateLimitBackend(RateLimitBackend, Generic[StateT]):
    """Shared machinery for the in-memory algorithms.

    Memory optimization:
    - Uses OrderedDict for LRU cache behavior
    - Limits max entries to prevent unbounded memory growth
    - Concurrent checks for one client are serialized by a per-key lock
    """

    def __init__(self, max_entries: Optional[int] = None, clock: Clock = now_ms):
        self._max_entries = max_entries or settings.rate_limit_max_entries
        self._clock = clock
        self._storage: "OrderedDict[str, StateT]" = OrderedDict()
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._storage)

    async def check(self, client_id: str) -> RateLimitResult:
        async with self._locks.acquire(client_id):
            now = self._clock()
            state = self._get_state(client_id, now)
            result = self._decide(state, now)
        if not result.allowed:
            logger.info(
                f"Rate limit exceeded ({self.algorithm})",
                extra=get_log_context(client_id=client_id, algorithm=self.algorithm),
            )
        return result

    async def stats(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {"clientId": client_id, **self._snapshot(state, now)}
            for client_id, state in self._storage.items()
        ]

    async def cleanup(self) -> int:
        now = self._clock()
        idle = [
            client_id for client_id, state in self._storage.items()
            if self._is_idle(state, now) and client_id not in self._locks
        ]
        for client_id in idle:
            del self._storage[client_id]
        return len(idle)

    def _get_state(self, client_id: str, now: int) -> StateT:
        state = self._storage.get(client_id)
        if state is not None:
            self._storage.move_to_end(client_id)
            return state
        self._enforce_lru_limit()
        state = self._new_state(now)
        self._storage[client_id] = state
        return state

    def _enforce_lru_limit(self) -> None:
        """Evict the oldest 20% of clients once the entry limit is reached."""
        if len(self._storage) < self._max_entries:
            return
        remove_count = max(1, int(self._max_entries * 0.2))
        for _ in range(min(remove_count, len(self._storage))):
            self._storage.popitem(last=False)

    @abstractmethod
    def _new_state(self, now: int) -> StateT:
        ...

    @abstractmethod
    def _decide(self, state: StateT, now: int) -> RateLimitResult:
        ...

    @abstractmethod
    def _snapshot(self, state: StateT, now: int) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _is_idle(self, state: StateT, now: int) -> bool:
        ...


class TokenBucketLimiter(InMemoryRateLimitBackend[TokenBucketState]):
    """Token bucket: bursts up to `capacity`, refilled at `refill_rate` tokens/sec."""

    algorithm = "token-bucket"

    def __init__(
        self,
        capacity: Optional[int] = None,
        refill_rate: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Clock = now_ms,
    ):
        super().__init__(max_entries=max_entries, clock=clock)
        self.capacity = capacity or settings.token_bucket_capacity
        self.refill_rate = refill_rate or settings.token_bucket_refill_rate
        if self.capacity < 1 or self.refill_rate <= 0:
            raise ValueError("capacity must be >= 1 and refill_rate > 0")

    @property
    def limit(self) -> int:
        return self.capacity

    def describe(self) -> Dict[str, Any]:
        return {"capacity": self.capacity, "refillRate": f"{self.refill_rate:g}/second"}

    def _new_state(self, now: int) -> TokenBucketState:
        return TokenBucketState(tokens=float(self.capacity), last_refill=now)

    def _refilled(self, state: TokenBucketState, now: int) -> float:
        elapsed = max(0, now - state.last_refill) / 1000
        return min(float(self.capacity), state.tokens + elapsed * self.refill_rate)

    def _decide(self, state: TokenBucketState, now: int) -> RateLimitResult:
        state.tokens = self._refilled(state, now)
        state.last_refill = max(now, state.last_refill)

        if state.tokens >= 1:
            state.tokens -= 1
            return RateLimitResult(
                allowed=True,
                limit=self.capacity,
                remaining=math.floor(state.tokens),
                algorithm=self.algorithm,
            )

        retry_after = math.ceil((1 - state.tokens) / self.refill_rate)
        return RateLimitResult(
            allowed=False,
            limit=self.capacity,
            remaining=0,
            algorithm=self.algorithm,
            retry_after=max(1, retry_after),
        )

    def _snapshot(self, state: TokenBucketState, now: int) -> Dict[str, Any]:
        return {
            "tokens": math.floor(self._refilled(state, now)),
            "capacity": self.capacity,
            "refillRate": self.refill_rate,
        }

    def _is_idle(self, state: TokenBucketState, now: int) -> bool:
        return self._refilled(state, now) >= self.capacity


class FixedWindowLimiter(InMemoryRateLimitBackend[FixedWindowState]):
    """Fixed window counter.

    A client may get up to 2x max_requests through in any window-length span
    that straddles a boundary. That burst is inherent to the algorithm.
    """

    algorithm = "fixed-window"

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
        max_entries: Optional[int] = None,
        clock: Clock = now_ms,
    ):
        super().__init__(max_entries=max_entries, clock=clock)
        self.max_requests = max_requests or settings.fixed_window_max_requests
        self.window_ms = window_ms or settings.fixed_window_size_ms

    @property
    def limit(self) -> int:
        return self.max_requests

    def describe(self) -> Dict[str, Any]:
        return {"maxRequests": self.max_requests, "window": f"{self.window_ms / 1000:g} seconds"}

    def _new_state(self, now: int) -> FixedWindowState:
        return FixedWindowState(window_start=now)

    def _decide(self, state: FixedWindowState, now: int) -> RateLimitResult:
        # Several idle windows collapse into one reset
        if now - state.window_start >= self.window_ms:
            state.count = 0
            state.window_start = now

        reset_time = state.window_start + self.window_ms
        if state.count < self.max_requests:
            state.count += 1
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - state.count,
                algorithm=self.algorithm,
                reset_time=reset_time,
            )

        retry_after = math.ceil((reset_time - now) / 1000)
        return RateLimitResult(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            algorithm=self.algorithm,
            reset_time=reset_time,
            retry_after=max(1, retry_after),
        )

    def _snapshot(self, state: FixedWindowState, now: int) -> Dict[str, Any]:
        if now - state.window_start >= self.window_ms:
            count, reset_time = 0, now + self.window_ms
        else:
            count, reset_time = state.count, state.window_start + self.window_ms
        return {
            "count": count,
            "max": self.max_requests,
            "windowMs": self.window_ms,
            "resetAt": format_instant(reset_time),
            "resetIn": math.ceil((reset_time - now) / 1000),
        }

    def _is_idle(self, state: FixedWindowState, now: int) -> bool:
        return now - state.window_start >= self.window_ms


class SlidingWindowLimiter(InMemoryRateLimitBackend[SlidingWindowState]):
    """Sliding window log: at most max_requests within any trailing window."""

    algorithm = "sliding-window"

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
        max_entries: Optional[int] = None,
        clock: Clock = now_ms,
    ):
        super().__init__(max_entries=max_entries, clock=clock)
        self.max_requests = max_requests or settings.sliding_window_max_requests
        self.window_ms = window_ms or settings.sliding_window_size_ms

    @property
    def limit(self) -> int:
        return self.max_requests

    def describe(self) -> Dict[str, Any]:
        return {"maxRequests": self.max_requests, "window": f"{self.window_ms / 1000:g} seconds"}

    def _new_state(self, now: int) -> SlidingWindowState:
        return SlidingWindowState()

    def _purge(self, state: SlidingWindowState, now: int) -> None:
        cutoff = now - self.window_ms
        timestamps = state.timestamps
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def _decide(self, state: SlidingWindowState, now: int) -> RateLimitResult:
        self._purge(state, now)
        timestamps = state.timestamps

        if len(timestamps) < self.max_requests:
            timestamps.append(now)
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(timestamps),
                algorithm=self.algorithm,
                reset_time=timestamps[0] + self.window_ms,
            )

        reset_time = timestamps[0] + self.window_ms
        retry_after = math.ceil((reset_time - now) / 1000)
        return RateLimitResult(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            algorithm=self.algorithm,
            reset_time=reset_time,
            retry_after=max(1, retry_after),
        )

    def _snapshot(self, state: SlidingWindowState, now: int) -> Dict[str, Any]:
        cutoff = now - self.window_ms
        live = [ts for ts in state.timestamps if ts > cutoff]
        reset_time = live[0] + self.window_ms if live else now + self.window_ms
        return {
            "current": len(live),
            "max": self.max_requests,
            "windowMs": self.window_ms,
            "resetAt": format_instant(reset_time),
            "resetIn": max(0, math.ceil((reset_time - now) / 1000)),
        }

    def _is_idle(self, state: SlidingWindowState, now: int) -> bool:
        return not state.timestamps or state.timestamps[-1] <= now - self.window_ms


class RedisRateLimiter(RateLimitBackend):
    """Redis-based distributed rate limiter.

    Implements the sliding window over a Redis sorted set per client. The
    trim, count and insert run as one Lua script so instances sharing the
    store never race on a client's log.
    """

    algorithm = "distributed-redis"
    KEY_PREFIX = "ratelimit:"

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        fail_closed: Optional[bool] = None,
        probe_interval: Optional[float] = None,
        enabled: Optional[bool] = None,
        clock: Clock = now_ms,
    ):
        """Initialize Redis rate limiter.

        Args:
            max_requests: Maximum requests per window
            window_ms: Window size in milliseconds
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            fail_closed: Deny instead of admit when Redis fails mid-check
            probe_interval: Minimum seconds between reconnection probes
            enabled: Use Redis at all (None = settings.redis_enabled)
            clock: Millisecond clock
        """
        self.max_requests = max_requests or settings.distributed_max_requests
        self.window_ms = window_ms or settings.distributed_window_size_ms
        self.enabled = settings.redis_enabled if enabled is None else enabled
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )
        self._probe_interval = probe_interval or settings.redis_probe_interval_seconds
        self._clock = clock
        self._available = False
        self._last_probe: Optional[float] = None

    @property
    def limit(self) -> int:
        return self.max_requests

    def describe(self) -> Dict[str, Any]:
        return {"maxRequests": self.max_requests, "window": f"{self.window_ms / 1000:g} seconds"}

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _make_key(self, client_id: str) -> str:
        return f"{self.KEY_PREFIX}{client_id}"

    @property
    def connected(self) -> bool:
        """Last known connectivity, without probing."""
        return self._available

    async def connect(self) -> bool:
        """Probe Redis immediately, ignoring the probe interval."""
        self._last_probe = None
        return await self.is_available()

    async def is_available(self) -> bool:
        """Whether Redis is reachable, re-probing at most every probe_interval."""
        if not self.enabled:
            return False
        if self._available:
            return True
        now = time.monotonic()
        if self._last_probe is not None and now - self._last_probe < self._probe_interval:
            return False
        self._last_probe = now
        try:
            await self._get_redis().ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable for distributed rate limiting: {e}")
            return False
        self._available = True
        logger.info("Connected to Redis for distributed rate limiting")
        return True

    def _mark_unavailable(self) -> None:
        self._available = False
        self._last_probe = time.monotonic()

    async def check(self, client_id: str) -> RateLimitResult:
        """Check if request is allowed using the Redis sliding window."""
        key = self._make_key(client_id)
        now = self._clock()
        # Generated once: the script removes this exact member on denial
        member = f"{now}-{uuid.uuid4().hex}"

        try:
            result = await self._get_redis().eval(
                SLIDING_WINDOW_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                now,  # ARGV[1]
                self.window_ms,  # ARGV[2]
                self.max_requests,  # ARGV[3]
                member,  # ARGV[4]
            )
        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}")
            return self._handle_redis_failure("connection_error", client_id)
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}")
            return self._handle_redis_failure("timeout", client_id)
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            return self._handle_redis_failure("redis_error", client_id)

        allowed, count, oldest = int(result[0]), int(result[1]), int(result[2])
        reset_time = oldest + self.window_ms

        if allowed:
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=max(0, self.max_requests - count),
                algorithm=self.algorithm,
                reset_time=reset_time,
            )

        logger.info(
            "Rate limit exceeded (distributed-redis)",
            extra=get_log_context(client_id=client_id, algorithm=self.algorithm),
        )
        return RateLimitResult(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            algorithm=self.algorithm,
            reset_time=reset_time,
            retry_after=max(1, math.ceil((reset_time - now) / 1000)),
        )

    def _handle_redis_failure(self, error_type: str, client_id: str) -> RateLimitResult:
        """Handle Redis failure with configurable fail-open/fail-closed policy.

        The store is marked unavailable, so later requests get a 503 at the
        admission layer until a probe succeeds.
        """
        self._mark_unavailable()
        context = get_log_context(client_id=client_id, algorithm=self.algorithm)

        if self._fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. Request denied.",
                extra=context,
            )
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                algorithm=self.algorithm,
                retry_after=max(1, math.ceil(self.window_ms / 1000)),
                degraded=True,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests,
            algorithm=self.algorithm,
            degraded=True,
        )

    async def stats(self) -> List[Dict[str, Any]]:
        """Per-client counts and TTLs read from Redis.

        Raises:
            ServiceUnavailableError: if Redis cannot be reached
        """
        if not await self.is_available():
            raise ServiceUnavailableError("Redis not available")
        client = self._get_redis()
        stats: List[Dict[str, Any]] = []
        try:
            async for key in client.scan_iter(match=f"{self.KEY_PREFIX}*"):
                if isinstance(key, bytes):
                    key = key.decode()
                stats.append({
                    "clientId": key[len(self.KEY_PREFIX):],
                    "current": await client.zcard(key),
                    "ttl": await client.ttl(key),
                })
        except redis.RedisError as e:
            self._mark_unavailable()
            logger.error(f"Failed to read distributed rate limit stats: {e}")
            raise ServiceUnavailableError("Redis not available") from e
        return stats

    async def cleanup(self) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
        self._available = False
