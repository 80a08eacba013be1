"""Data models for long-poll coordination."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class WaitState(str, Enum):
    """Lifecycle of a pending wait. Every state except REGISTERED is terminal."""

    REGISTERED = "registered"
    RESOLVED_BY_DATA = "resolved_by_data"
    RESOLVED_BY_TIMEOUT = "resolved_by_timeout"
    CANCELLED = "cancelled"


@dataclass
class Resource:
    """A watched resource.

    Attributes:
        id: Opaque resource key (e.g. "EVENT#00")
        value: Payload mutated by the system (the demo uses a numeric score)
        updated_at: Epoch milliseconds of the last mutation, strictly increasing
    """
    id: str
    value: Any
    updated_at: int

    def to_item(self) -> dict:
        """Convert to the wire format used by the status endpoint."""
        return {"id": self.id, "score": self.value, "updatedAt": self.updated_at}


@dataclass(frozen=True)
class WaitOutcome:
    """Result of awaiting a change on a resource."""
    resource_id: str
    changed: bool
    timed_out: bool = False
    value: Any = None
    updated_at: Optional[int] = None

    @classmethod
    def from_resource(cls, resource: Resource) -> "WaitOutcome":
        return cls(
            resource_id=resource.id,
            changed=True,
            value=resource.value,
            updated_at=resource.updated_at,
        )

    @classmethod
    def timeout(cls, resource_id: str) -> "WaitOutcome":
        return cls(resource_id=resource_id, changed=False, timed_out=True)

    def to_item(self) -> dict:
        return {"id": self.resource_id, "score": self.value, "updatedAt": self.updated_at}


@dataclass(eq=False)
class PendingWait:
    """A request parked until its resource changes or its deadline passes.

    `finish` is the single-fire guard: the first caller moves the wait out of
    REGISTERED, cancels the deadline timer and (optionally) resolves the future.
    Every later call is a no-op returning False.
    """
    resource_id: str
    deadline: int
    future: asyncio.Future
    state: WaitState = WaitState.REGISTERED
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.state is WaitState.REGISTERED

    def finish(self, state: WaitState, outcome: Optional[WaitOutcome] = None) -> bool:
        if self.state is not WaitState.REGISTERED:
            return False
        self.state = state
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if outcome is not None and not self.future.done():
            self.future.set_result(outcome)
        return True
