"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    `reset_time` is in epoch milliseconds; `retry_after` in whole seconds and
    set only on denial. `degraded` marks a fail-open decision taken without
    consulting the shared store.
    """
    allowed: bool
    limit: int
    remaining: int
    algorithm: str
    reset_time: Optional[int] = None
    retry_after: Optional[int] = None
    degraded: bool = False

    @property
    def reset_at(self) -> Optional[str]:
        """ISO-8601 form of reset_time for the X-RateLimit-Reset header."""
        return format_instant(self.reset_time) if self.reset_time is not None else None


@dataclass
class TokenBucketState:
    """Token bucket state. `tokens` stays fractional between calls."""
    tokens: float
    last_refill: int


@dataclass
class FixedWindowState:
    """Counter for the current fixed window."""
    window_start: int
    count: int = 0


@dataclass
class SlidingWindowState:
    """Ordered log of admitted request timestamps (epoch ms)."""
    timestamps: Deque[int] = field(default_factory=deque)


def format_instant(epoch_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with millisecond precision."""
    instant = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")
