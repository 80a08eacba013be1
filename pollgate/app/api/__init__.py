"""API endpoints package for pollgate."""

from pollgate.app.api.long_poll import router as long_poll_router
from pollgate.app.api.rate_limit import router as rate_limit_router

__all__ = [
    "long_poll_router",
    "rate_limit_router",
]
