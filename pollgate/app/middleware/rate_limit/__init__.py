"""Rate limiting middleware for pollgate.

Each protected path is bound to one admission policy: token bucket, sliding
window, fixed window (all in-memory) or the Redis-backed distributed sliding
window.
"""

import hashlib
from typing import Dict, Iterator, Optional, Tuple

from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from pollgate.app.core.clock import Clock, now_ms
from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_logger
from pollgate.app.exceptions import RateLimitedError, ServiceUnavailableError

# Re-export models
from pollgate.app.middleware.rate_limit.models import (
    FixedWindowState,
    RateLimitResult,
    SlidingWindowState,
    TokenBucketState,
)

# Re-export backends
from pollgate.app.middleware.rate_limit.backends import (
    FixedWindowLimiter,
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RedisRateLimiter,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)
from pollgate.app.middleware.rate_limit.locks import KeyedLock

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitResult",
    "TokenBucketState",
    "FixedWindowState",
    "SlidingWindowState",
    # Backends
    "RateLimitBackend",
    "InMemoryRateLimitBackend",
    "TokenBucketLimiter",
    "FixedWindowLimiter",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "KeyedLock",
    # Main classes
    "RateLimiterRegistry",
    "RateLimitMiddleware",
]

API_PREFIX = "/api"


class RateLimiterRegistry:
    """Binds URL slugs (and so paths under /api) to rate limit backends."""

    def __init__(self, limiters: Optional[Dict[str, RateLimitBackend]] = None):
        self._limiters: Dict[str, RateLimitBackend] = dict(limiters or {})

    @classmethod
    def from_settings(
        cls,
        clock: Clock = now_ms,
        redis_client: Optional[object] = None,
    ) -> "RateLimiterRegistry":
        """Build the four demo limiters from settings."""
        return cls({
            "token-bucket": TokenBucketLimiter(
                capacity=settings.token_bucket_capacity,
                refill_rate=settings.token_bucket_refill_rate,
                clock=clock,
            ),
            "sliding-window": SlidingWindowLimiter(
                max_requests=settings.sliding_window_max_requests,
                window_ms=settings.sliding_window_size_ms,
                clock=clock,
            ),
            "fixed-window": FixedWindowLimiter(
                max_requests=settings.fixed_window_max_requests,
                window_ms=settings.fixed_window_size_ms,
                clock=clock,
            ),
            "distributed": RedisRateLimiter(
                max_requests=settings.distributed_max_requests,
                window_ms=settings.distributed_window_size_ms,
                redis_client=redis_client,
                clock=clock,
            ),
        })

    def get(self, slug: str) -> Optional[RateLimitBackend]:
        return self._limiters.get(slug)

    def for_path(self, path: str) -> Optional[RateLimitBackend]:
        """Limiter protecting `path`, which must be exactly /api/{slug}."""
        prefix = f"{API_PREFIX}/"
        if not path.startswith(prefix):
            return None
        return self._limiters.get(path[len(prefix):].rstrip("/"))

    def items(self) -> Iterator[Tuple[str, RateLimitBackend]]:
        return iter(self._limiters.items())

    @property
    def distributed(self) -> Optional[RedisRateLimiter]:
        for limiter in self._limiters.values():
            if isinstance(limiter, RedisRateLimiter):
                return limiter
        return None

    async def cleanup(self) -> int:
        removed = 0
        for limiter in self._limiters.values():
            removed += await limiter.cleanup()
        return removed

    async def close(self) -> None:
        distributed = self.distributed
        if distributed is not None:
            await distributed.close()


def _rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Algorithm": result.algorithm,
    }
    if result.reset_at is not None:
        headers["X-RateLimit-Reset"] = result.reset_at
    if result.degraded:
        headers["X-RateLimit-Degraded"] = "true"
    return headers


class RateLimitMiddleware:
    """ASGI middleware to enforce rate limits on the /api/{algorithm} endpoints.

    Rate limits are applied per client IP. Paths without a bound limiter
    pass through untouched, with the server's own `receive` callable, so
    long polls behind this middleware still observe client disconnects.
    """

    def __init__(
        self,
        app: ASGIApp,
        registry: RateLimiterRegistry,
        trust_forwarded_for: Optional[bool] = None,
    ):
        """Initialize the middleware.

        Args:
            app: The ASGI application
            registry: Limiters keyed by URL slug
            trust_forwarded_for: Key clients by the first X-Forwarded-For hop
                (None = settings.trust_forwarded_for)
        """
        self.app = app
        self.registry = registry
        self.trust_forwarded_for = trust_forwarded_for

    def _get_client_key(self, scope: Scope) -> str:
        """Get rate limit key for the request.

        Uses the peer address. The first X-Forwarded-For hop is used only
        when forwarded headers are trusted, since any client can set it.
        The address is hashed with SHA-256 so raw IPs are never stored or
        exposed in stats.
        """
        trust = (
            settings.trust_forwarded_for
            if self.trust_forwarded_for is None
            else self.trust_forwarded_for
        )
        client_ip = None
        if trust:
            forwarded = Headers(scope=scope).get("x-forwarded-for")
            if forwarded:
                client_ip = forwarded.split(",")[0].strip() or None
        if client_ip is None:
            client = scope.get("client")
            client_ip = client[0] if client else "unknown"

        # 32 hex chars (128 bits) for collision resistance
        ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
        return f"ip:{ip_hash}"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Process the ASGI request with rate limiting."""
        if scope["type"] != "http" or scope["method"] != "GET":
            await self.app(scope, receive, send)
            return

        limiter = self.registry.for_path(scope["path"])
        if limiter is None:
            await self.app(scope, receive, send)
            return

        if not await limiter.is_available():
            error = ServiceUnavailableError()
            response = JSONResponse(
                status_code=error.status_code,
                content={"error": "Service Unavailable", "message": error.message},
            )
            await response(scope, receive, send)
            return

        result = await limiter.check(self._get_client_key(scope))
        headers = _rate_limit_headers(result)

        if not result.allowed:
            error = RateLimitedError(
                algorithm=result.algorithm,
                limit=result.limit,
                retry_after=result.retry_after or 1,
            )
            headers["Retry-After"] = str(error.retry_after)
            response = JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=headers,
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                MutableHeaders(scope=message).update(headers)
            await send(message)

        await self.app(scope, receive, send_with_headers)
