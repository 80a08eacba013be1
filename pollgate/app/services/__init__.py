"""Services package for pollgate.

This package provides:
- Long-poll coordination for watched resources
- A background producer that simulates resource changes
"""

from pollgate.app.services.long_poll import (
    LongPollCoordinator,
    ResourceMutator,
    WaitOutcome,
)

__all__ = [
    "LongPollCoordinator",
    "ResourceMutator",
    "WaitOutcome",
]
