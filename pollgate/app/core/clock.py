"""Millisecond wall clock shared by the limiters and the long-poll coordinator.

Components accept any zero-argument callable returning epoch milliseconds,
so tests can substitute a controllable clock.
"""

import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000
