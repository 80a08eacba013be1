"""Background producer that simulates resource changes.

Each resource is bumped by a random increment after a random delay, then
rescheduled. The whole producer is one task owned by the application
lifespan and stops cleanly on shutdown.
"""

import asyncio
import random
from typing import Optional

from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_log_context, get_logger

from .coordinator import LongPollCoordinator

logger = get_logger(__name__)


class ResourceMutator:
    """Periodically mutates every resource of a coordinator.

    Usage:
        mutator = ResourceMutator(coordinator)
        await mutator.start()
        ...
        await mutator.stop()
    """

    def __init__(
        self,
        coordinator: LongPollCoordinator,
        max_delay_seconds: Optional[int] = None,
        max_increment: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the mutator.

        Args:
            coordinator: Coordinator whose resources are mutated
            max_delay_seconds: Exclusive upper bound on the delay between mutations
            max_increment: Exclusive upper bound on each score increment
            rng: Random source, injectable for tests
        """
        self._coordinator = coordinator
        self._max_delay = max_delay_seconds or settings.long_poll_mutator_max_delay_seconds
        self._max_increment = max_increment or settings.long_poll_mutator_max_increment
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            logger.debug("Resource mutator already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Started resource mutator for {len(self._coordinator.resources())} resource(s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Resource mutator did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped resource mutator")

    async def _run(self) -> None:
        await asyncio.gather(
            *(self._run_resource(resource.id) for resource in self._coordinator.resources())
        )

    async def _run_resource(self, resource_id: str) -> None:
        while not self._stop_event.is_set():
            delay = self._rng.randrange(self._max_delay)
            logger.debug(
                f"{resource_id} will be updated after {delay} sec",
                extra=get_log_context(resource_id=resource_id),
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                # Interval elapsed without a stop request
                pass
            if self._stop_event.is_set():
                break
            try:
                self.mutate_once(resource_id)
            except Exception as e:
                logger.error(f"Error mutating {resource_id}: {e}")

    def mutate_once(self, resource_id: str) -> None:
        """Apply one random increment to a resource."""
        resource = self._coordinator.get(resource_id)
        increment = self._rng.randrange(self._max_increment)
        self._coordinator.mutate(resource_id, resource.value + increment)
