"""Tests for the long-poll coordinator."""

import asyncio

import pytest

from pollgate.app.exceptions import InvalidArgumentError, NotFoundError
from pollgate.app.services.long_poll import (
    LongPollCoordinator,
    PendingWait,
    WaitOutcome,
    WaitState,
)


async def wait_for_pending(coordinator, resource_id, expected=1, timeout=1.0):
    """Yield to the loop until `expected` waiters are registered."""
    deadline = asyncio.get_running_loop().time() + timeout
    while coordinator.pending_count(resource_id) != expected:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(
                f"expected {expected} waiter(s), got {coordinator.pending_count(resource_id)}"
            )
        await asyncio.sleep(0)


class TestImmediatePath:
    """Requests that already missed an update are answered without waiting."""

    @pytest.mark.asyncio
    async def test_returns_immediately_when_changed(self, coordinator, clock):
        resource = coordinator.get("EVENT#00")

        outcome = await coordinator.await_change("EVENT#00", resource.updated_at - 1)

        assert outcome.changed is True
        assert outcome.timed_out is False
        assert outcome.value == 0
        assert outcome.updated_at == resource.updated_at
        assert coordinator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_resource_raises_not_found(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.await_change("EVENT#99", 0)
        assert coordinator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_malformed_last_seen_raises_invalid_argument(self, coordinator):
        with pytest.raises(InvalidArgumentError):
            await coordinator.await_change("EVENT#00", "yesterday")
        assert coordinator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_non_positive_timeout_rejected(self, coordinator):
        resource = coordinator.get("EVENT#00")
        with pytest.raises(InvalidArgumentError):
            await coordinator.await_change("EVENT#00", resource.updated_at, timeout_ms=0)


class TestParseLastSeen:
    """Tests for client timestamp coercion."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (5, 5),
            ("123", 123),
            (" 42 ", 42),
            ("12.7", 12),
            (1.5, 1),
            ("1e3", 1000),
        ],
    )
    def test_valid_values(self, raw, expected):
        assert LongPollCoordinator.parse_last_seen(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "", "abc", "nan", "inf", [1]])
    def test_invalid_values(self, raw):
        with pytest.raises(InvalidArgumentError):
            LongPollCoordinator.parse_last_seen(raw)


class TestDeferredPath:
    """Requests with nothing new are parked until a change or timeout."""

    @pytest.mark.asyncio
    async def test_mutation_releases_waiter_before_timeout(self, clock):
        clock.now = 0
        coordinator = LongPollCoordinator(default_timeout_ms=30000, clock=clock)
        coordinator.add_resource("EVENT#00", 0)

        task = asyncio.create_task(coordinator.await_change("EVENT#00", 0, 30000))
        await wait_for_pending(coordinator, "EVENT#00")

        clock.advance(5000)
        coordinator.mutate("EVENT#00", 42)
        outcome = await asyncio.wait_for(task, timeout=1.0)

        assert outcome.changed is True
        assert outcome.value == 42
        assert outcome.updated_at == 5000
        assert coordinator.pending_count("EVENT#00") == 0

    @pytest.mark.asyncio
    async def test_all_waiters_notified_once(self, coordinator):
        seen = coordinator.get("EVENT#01").updated_at
        tasks = [
            asyncio.create_task(coordinator.await_change("EVENT#01", seen))
            for _ in range(3)
        ]
        await wait_for_pending(coordinator, "EVENT#01", expected=3)

        coordinator.mutate("EVENT#01", 7)
        outcomes = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1.0)

        assert [o.value for o in outcomes] == [7, 7, 7]
        assert coordinator.pending_count("EVENT#01") == 0

        # A second mutation has nobody left to notify
        coordinator.mutate("EVENT#01", 8)
        assert coordinator.pending_count("EVENT#01") == 0

    @pytest.mark.asyncio
    async def test_mutation_only_releases_its_own_resource(self, coordinator):
        seen = coordinator.get("EVENT#02").updated_at
        task = asyncio.create_task(coordinator.await_change("EVENT#02", seen))
        await wait_for_pending(coordinator, "EVENT#02")

        coordinator.mutate("EVENT#00", 1)
        await asyncio.sleep(0)

        assert not task.done()
        assert coordinator.pending_count("EVENT#02") == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_waiter_registered_after_sweep_stays_pending(self, coordinator):
        resource = coordinator.mutate("EVENT#00", 3)

        task = asyncio.create_task(
            coordinator.await_change("EVENT#00", resource.updated_at)
        )
        await wait_for_pending(coordinator, "EVENT#00")
        await asyncio.sleep(0)

        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert coordinator.pending_count("EVENT#00") == 0

    @pytest.mark.asyncio
    async def test_timeout_resolves_unchanged(self, coordinator):
        seen = coordinator.get("EVENT#00").updated_at

        outcome = await coordinator.await_change("EVENT#00", seen, timeout_ms=20)

        assert outcome.changed is False
        assert outcome.timed_out is True
        assert coordinator.pending_count("EVENT#00") == 0

    @pytest.mark.asyncio
    async def test_cancellation_deregisters_silently(self, coordinator):
        seen = coordinator.get("EVENT#00").updated_at
        task = asyncio.create_task(coordinator.await_change("EVENT#00", seen))
        await wait_for_pending(coordinator, "EVENT#00")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert coordinator.pending_count("EVENT#00") == 0
        # Later mutations must not touch the cancelled wait
        coordinator.mutate("EVENT#00", 1)

    @pytest.mark.asyncio
    async def test_close_cancels_pending_waits(self, coordinator):
        seen = coordinator.get("EVENT#00").updated_at
        task = asyncio.create_task(coordinator.await_change("EVENT#00", seen))
        await wait_for_pending(coordinator, "EVENT#00")

        assert coordinator.close() == 1

        with pytest.raises(asyncio.CancelledError):
            await task
        assert coordinator.pending_count() == 0


class TestMutate:
    """Tests for resource mutation."""

    def test_updated_at_strictly_increases_with_frozen_clock(self, coordinator):
        previous = coordinator.get("EVENT#00").updated_at
        for value in range(1, 6):
            resource = coordinator.mutate("EVENT#00", value)
            assert resource.updated_at > previous
            previous = resource.updated_at

    def test_updated_at_follows_clock(self, coordinator, clock):
        clock.advance(10_000)
        resource = coordinator.mutate("EVENT#00", 1)
        assert resource.updated_at == clock.now

    def test_mutate_unknown_resource(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.mutate("EVENT#99", 1)

    def test_duplicate_resource_rejected(self, coordinator):
        with pytest.raises(ValueError):
            coordinator.add_resource("EVENT#00", 0)

    def test_to_item_wire_format(self, coordinator):
        resource = coordinator.mutate("EVENT#00", 9)
        assert resource.to_item() == {
            "id": "EVENT#00",
            "score": 9,
            "updatedAt": resource.updated_at,
        }


class TestPendingWait:
    """Tests for the single-fire guard."""

    @pytest.mark.asyncio
    async def test_first_resolution_wins(self):
        loop = asyncio.get_running_loop()
        wait = PendingWait(resource_id="EVENT#00", deadline=0, future=loop.create_future())
        wait.timer = loop.call_later(60, lambda: None)
        outcome = WaitOutcome(resource_id="EVENT#00", changed=True, value=1, updated_at=1)

        assert wait.finish(WaitState.RESOLVED_BY_DATA, outcome) is True
        assert wait.finish(WaitState.RESOLVED_BY_TIMEOUT, WaitOutcome.timeout("EVENT#00")) is False
        assert wait.finish(WaitState.CANCELLED) is False

        assert wait.state is WaitState.RESOLVED_BY_DATA
        assert wait.timer is None
        assert wait.future.result() is outcome
        assert wait.is_pending is False

    @pytest.mark.asyncio
    async def test_timeout_after_data_is_ignored(self, coordinator):
        seen = coordinator.get("EVENT#00").updated_at
        task = asyncio.create_task(coordinator.await_change("EVENT#00", seen, timeout_ms=30))
        await wait_for_pending(coordinator, "EVENT#00")

        coordinator.mutate("EVENT#00", 5)
        outcome = await task
        # Past the original deadline: no late timeout resolution
        await asyncio.sleep(0.05)

        assert outcome.changed is True
        assert outcome.timed_out is False
