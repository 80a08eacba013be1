"""Shared fixtures for pollgate tests."""

import pytest

from pollgate.app.services.long_poll import LongPollCoordinator


class FakeClock:
    """Controllable millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(clock):
    """Coordinator with EVENT#00..EVENT#02 at score 0."""
    coordinator = LongPollCoordinator(default_timeout_ms=30000, clock=clock)
    for i in range(3):
        coordinator.add_resource(f"EVENT#{i:02d}", 0)
    return coordinator
