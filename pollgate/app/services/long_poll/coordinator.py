"""Long-poll request coordination.

Holds callers until a named resource changes or a timeout elapses. The
coordinator is transport-agnostic: waiters are plain asyncio futures, so the
HTTP layer only decides how to render the outcome and when to cancel.

All state changes happen synchronously on the event loop between awaits, so
"check updated_at, then register" and "commit mutation, then sweep waiters"
cannot interleave with each other.
"""

import asyncio
import math
from typing import Any, Dict, List, Optional, Set

from pollgate.app.core.clock import Clock, now_ms
from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_log_context, get_logger
from pollgate.app.exceptions import InvalidArgumentError, NotFoundError

from .models import PendingWait, Resource, WaitOutcome, WaitState

logger = get_logger(__name__)


class LongPollCoordinator:
    """Coordinates long-poll waiters across a fixed set of resources.

    Usage:
        coordinator = LongPollCoordinator()
        coordinator.add_resource("EVENT#00", 0)

        # In a request handler
        outcome = await coordinator.await_change("EVENT#00", last_seen=0)

        # In a background producer
        coordinator.mutate("EVENT#00", 42)
    """

    def __init__(
        self,
        default_timeout_ms: Optional[int] = None,
        clock: Clock = now_ms,
    ) -> None:
        self._resources: Dict[str, Resource] = {}
        self._waiters: Dict[str, Set[PendingWait]] = {}
        self._clock = clock
        self._default_timeout_ms = default_timeout_ms or settings.long_poll_timeout_ms

    @property
    def default_timeout_ms(self) -> int:
        return self._default_timeout_ms

    def add_resource(self, resource_id: str, value: Any = 0) -> Resource:
        """Register a resource. Resources live for the coordinator's lifetime."""
        if resource_id in self._resources:
            raise ValueError(f"Resource '{resource_id}' already exists")
        resource = Resource(id=resource_id, value=value, updated_at=self._clock())
        self._resources[resource_id] = resource
        self._waiters[resource_id] = set()
        return resource

    def get(self, resource_id: str) -> Resource:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError(resource_id)
        return resource

    def resources(self) -> List[Resource]:
        return list(self._resources.values())

    def pending_count(self, resource_id: Optional[str] = None) -> int:
        """Number of registered waiters for one resource, or for all of them."""
        if resource_id is not None:
            return len(self._waiters.get(resource_id, ()))
        return sum(len(waiters) for waiters in self._waiters.values())

    @staticmethod
    def parse_last_seen(raw: Any) -> int:
        """Coerce a client-supplied timestamp to epoch milliseconds.

        Raises:
            InvalidArgumentError: if the value is missing or not a finite number
        """
        if raw is None or isinstance(raw, bool):
            raise InvalidArgumentError("last_updated must be a numeric timestamp")
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str):
            raw = raw.strip()
            try:
                return int(raw)
            except ValueError:
                pass
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise InvalidArgumentError("last_updated must be a numeric timestamp") from None
        if not math.isfinite(value):
            raise InvalidArgumentError("last_updated must be a numeric timestamp")
        return math.floor(value)

    async def await_change(
        self,
        resource_id: str,
        last_seen: Any,
        timeout_ms: Optional[int] = None,
    ) -> WaitOutcome:
        """Wait until `resource_id` changes after `last_seen` or the timeout elapses.

        Returns immediately when the resource already changed. Otherwise parks
        a PendingWait that is resolved by exactly one of: a mutation, its
        deadline, or cancellation of the awaiting task (client disconnect).

        Raises:
            InvalidArgumentError: malformed `last_seen` or non-positive timeout
            NotFoundError: unknown `resource_id`; nothing is registered
        """
        seen = self.parse_last_seen(last_seen)
        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms
        if timeout_ms <= 0:
            raise InvalidArgumentError("timeout must be positive")

        resource = self.get(resource_id)
        if resource.updated_at > seen:
            return WaitOutcome.from_resource(resource)

        wait = self._register(resource_id, timeout_ms)
        try:
            return await wait.future
        except asyncio.CancelledError:
            self.cancel(wait)
            raise

    def mutate(self, resource_id: str, new_value: Any) -> Resource:
        """Commit a new value and notify every waiter registered on the resource.

        The waiter set is detached before any waiter is resolved, so a waiter
        registered during notification lands in the fresh set and is not
        resolved by this sweep.
        """
        resource = self.get(resource_id)
        resource.value = new_value
        # Strictly increasing even when the clock has not advanced
        resource.updated_at = max(self._clock(), resource.updated_at + 1)

        waiters = self._waiters.get(resource_id, set())
        self._waiters[resource_id] = set()

        outcome = WaitOutcome.from_resource(resource)
        notified = 0
        for wait in waiters:
            if wait.finish(WaitState.RESOLVED_BY_DATA, outcome):
                notified += 1

        logger.debug(
            f"{resource_id} updated, notified {notified} waiter(s)",
            extra=get_log_context(resource_id=resource_id),
        )
        return resource

    def cancel(self, wait: PendingWait) -> bool:
        """Deregister a wait without answering it."""
        if not wait.finish(WaitState.CANCELLED):
            return False
        self._discard(wait)
        if not wait.future.done():
            wait.future.cancel()
        logger.debug(
            "Long-poll wait cancelled",
            extra=get_log_context(resource_id=wait.resource_id),
        )
        return True

    def close(self) -> int:
        """Cancel every pending wait and its timer. Used on shutdown."""
        pending = [wait for waiters in self._waiters.values() for wait in waiters]
        cancelled = sum(1 for wait in pending if self.cancel(wait))
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending long-poll wait(s)")
        return cancelled

    def _register(self, resource_id: str, timeout_ms: int) -> PendingWait:
        loop = asyncio.get_running_loop()
        wait = PendingWait(
            resource_id=resource_id,
            deadline=self._clock() + timeout_ms,
            future=loop.create_future(),
        )
        self._waiters.setdefault(resource_id, set()).add(wait)
        wait.timer = loop.call_later(timeout_ms / 1000, self._expire, wait)
        return wait

    def _expire(self, wait: PendingWait) -> None:
        if wait.finish(WaitState.RESOLVED_BY_TIMEOUT, WaitOutcome.timeout(wait.resource_id)):
            self._discard(wait)
            logger.debug(
                "Long-poll wait timed out",
                extra=get_log_context(resource_id=wait.resource_id),
            )

    def _discard(self, wait: PendingWait) -> None:
        waiters = self._waiters.get(wait.resource_id)
        if waiters is not None:
            waiters.discard(wait)
