"""Long-poll coordination: parked requests released by resource changes."""

from .coordinator import LongPollCoordinator
from .models import PendingWait, Resource, WaitOutcome, WaitState
from .mutator import ResourceMutator

__all__ = [
    "LongPollCoordinator",
    "PendingWait",
    "Resource",
    "ResourceMutator",
    "WaitOutcome",
    "WaitState",
]
