"""Middleware package for pollgate."""

from pollgate.app.middleware.rate_limit import RateLimiterRegistry, RateLimitMiddleware
from pollgate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimiterRegistry",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
