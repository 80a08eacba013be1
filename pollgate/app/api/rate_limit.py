"""Rate-limited demo endpoints and limiter statistics.

The limiting itself happens in RateLimitMiddleware; these handlers only
answer admitted requests and expose per-client state.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Request

from pollgate.app.exceptions import NotFoundError, ServiceUnavailableError
from pollgate.app.middleware.rate_limit import (
    RateLimiterRegistry,
    RateLimitBackend,
    RedisRateLimiter,
    TokenBucketLimiter,
)

router = APIRouter(prefix="/api")

ALGORITHM_CATALOGUE: Dict[str, Dict[str, Any]] = {
    "token-bucket": {
        "name": "Token Bucket",
        "pros": ["Allows bursts", "Smooth rate limiting", "Memory efficient"],
        "cons": ["Complex implementation", "Timing sensitive"],
        "useCase": "APIs that need to allow bursts while maintaining average rate",
    },
    "sliding-window": {
        "name": "Sliding Window",
        "pros": ["Most accurate", "No boundary issues", "Fair distribution"],
        "cons": ["Higher memory usage", "Stores all timestamps"],
        "useCase": "Precise rate limiting without edge case issues",
    },
    "fixed-window": {
        "name": "Fixed Window",
        "pros": ["Simple", "Memory efficient", "Fast"],
        "cons": ["Boundary issue (2x burst possible)", "Less accurate"],
        "useCase": "Simple rate limiting with minimal overhead",
    },
    "distributed": {
        "name": "Distributed (Redis)",
        "pros": ["Shared across servers", "Survives restarts", "Scales horizontally"],
        "cons": ["Requires Redis", "Network dependency", "Slightly slower"],
        "useCase": "Production systems with multiple servers",
    },
}


def get_registry(request: Request) -> RateLimiterRegistry:
    return request.app.state.rate_limiters


def _get_limiter(request: Request, slug: str) -> RateLimitBackend:
    limiter = get_registry(request).get(slug)
    if limiter is None:
        raise NotFoundError(slug, message=f"Unknown rate limit algorithm '{slug}'")
    return limiter


def _summary(limiter: RateLimitBackend) -> str:
    if isinstance(limiter, TokenBucketLimiter):
        return f"Capacity: {limiter.capacity} tokens, Refill: {limiter.refill_rate:g} token/second"
    window_seconds = limiter.window_ms / 1000
    summary = f"Limit: {limiter.limit} requests per {window_seconds:g} seconds"
    if isinstance(limiter, RedisRateLimiter):
        summary += " (shared across all servers)"
    return summary


def _camel(slug: str) -> str:
    head, *rest = slug.split("-")
    return head + "".join(part.title() for part in rest)


async def _stats_or_error(limiter: RateLimitBackend) -> Any:
    try:
        return await limiter.stats()
    except ServiceUnavailableError as e:
        return {"error": e.message}


@router.get("/stats")
async def all_stats(request: Request) -> Dict[str, Any]:
    """Per-client state of every limiter."""
    registry = get_registry(request)
    stats: Dict[str, Any] = {}
    for slug, limiter in registry.items():
        stats[_camel(slug)] = await _stats_or_error(limiter)
    distributed = registry.distributed
    stats["redis"] = distributed.connected if distributed is not None else False
    return stats


@router.get("/info")
async def algorithm_info(request: Request) -> Dict[str, List[Dict[str, Any]]]:
    """Describe each algorithm with its configured limits."""
    algorithms = []
    for slug, limiter in get_registry(request).items():
        entry: Dict[str, Any] = {
            "name": ALGORITHM_CATALOGUE.get(slug, {}).get("name", slug),
            "endpoint": f"/api/{slug}",
            "config": limiter.describe(),
        }
        entry.update({k: v for k, v in ALGORITHM_CATALOGUE.get(slug, {}).items() if k != "name"})
        if isinstance(limiter, RedisRateLimiter):
            entry["available"] = await limiter.is_available()
        algorithms.append(entry)
    return {"algorithms": algorithms}


@router.get("/{algorithm}/stats")
async def algorithm_stats(algorithm: str, request: Request) -> Dict[str, Any]:
    limiter = _get_limiter(request, algorithm)
    body: Dict[str, Any] = {"algorithm": limiter.algorithm}
    if isinstance(limiter, RedisRateLimiter):
        body["redis"] = "connected" if await limiter.is_available() else "disconnected"
    body["clients"] = await limiter.stats()
    return body


@router.get("/{algorithm}")
async def limited_endpoint(algorithm: str, request: Request) -> Dict[str, Any]:
    """Answer a request that RateLimitMiddleware has admitted."""
    limiter = _get_limiter(request, algorithm)
    return {
        "message": "Request successful!",
        "algorithm": limiter.algorithm,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "info": _summary(limiter),
    }
