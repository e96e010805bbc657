"""
Unit tests for in-process lock and rate window backends.
"""

import asyncio

import pytest

from service_gateway.app.coordination.memory import InProcessMutex, InProcessRateLimiter
from shared.test_helpers import FakeClock


class TestInProcessMutex:
    """Lease semantics of the local mutex."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def mutex(self, clock):
        return InProcessMutex(ttl_seconds=30, clock=clock)

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, mutex):
        handles = await asyncio.gather(*(mutex.acquire("user:1") for _ in range(10)))
        assert sum(1 for handle in handles if handle.ok) == 1

    @pytest.mark.asyncio
    async def test_release_allows_next_holder(self, mutex):
        first = await mutex.acquire("user:1")
        assert first.ok
        assert not (await mutex.acquire("user:1")).ok

        await first.release()
        assert (await mutex.acquire("user:1")).ok

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, mutex):
        assert (await mutex.acquire("user:1")).ok
        assert (await mutex.acquire("user:2")).ok

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, mutex, clock):
        first = await mutex.acquire("user:1")
        clock.advance(30)
        second = await mutex.acquire("user:1")
        assert first.ok and second.ok

    @pytest.mark.asyncio
    async def test_stale_release_keeps_new_lease(self, mutex, clock):
        stale = await mutex.acquire("user:1")
        clock.advance(31)
        current = await mutex.acquire("user:1")

        await stale.release()

        lease = mutex.current_lease("user:1")
        assert lease is not None
        assert lease.token == current.lease.token
        assert not (await mutex.acquire("user:1")).ok

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, mutex):
        first = await mutex.acquire("user:1")
        await first.release()
        second = await mutex.acquire("user:1")

        await first.release()

        assert first.released
        assert mutex.current_lease("user:1").token == second.lease.token

    @pytest.mark.asyncio
    async def test_denied_handle_releases_nothing(self, mutex):
        holder = await mutex.acquire("user:1")
        denied = await mutex.acquire("user:1")

        await denied.release()

        assert not denied.ok
        assert mutex.current_lease("user:1").token == holder.lease.token

    @pytest.mark.asyncio
    async def test_expired_leases_are_swept(self, mutex, clock):
        for n in range(100):
            await mutex.acquire(f"ip:10.0.0.{n}")
        assert mutex.tracked_keys() == 100

        clock.advance(31)
        handle = await mutex.acquire("user:1")

        assert handle.ok
        assert mutex.tracked_keys() == 1
        assert mutex.current_lease("ip:10.0.0.0") is None


class TestInProcessRateLimiter:
    """Sliding window semantics of the local limiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return InProcessRateLimiter(limit=3, window_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_rejects_after_limit(self, limiter, clock):
        for expected in (1, 2, 3):
            decision = await limiter.check_and_record("user:1")
            assert decision.ok
            assert decision.count == expected
            clock.advance(1)

        rejected = await limiter.check_and_record("user:1")
        assert not rejected.ok
        assert rejected.count == 3
        assert rejected.limit == 3

    @pytest.mark.asyncio
    async def test_rejections_are_not_recorded(self, limiter):
        for _ in range(5):
            await limiter.check_and_record("user:1")
        assert limiter.window_size("user:1") == 3

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        for _ in range(3):
            await limiter.check_and_record("user:1")
        assert not (await limiter.check_and_record("user:1")).ok

        clock.advance(60)
        decision = await limiter.check_and_record("user:1")
        assert decision.ok
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check_and_record("user:1")
        assert (await limiter.check_and_record("user:2")).ok

    @pytest.mark.asyncio
    async def test_idle_keys_are_dropped(self, limiter, clock):
        for n in range(1000):
            await limiter.check_and_record(f"ip:10.0.{n // 256}.{n % 256}")
        assert limiter.tracked_keys() == 1000

        clock.advance(3600)
        await limiter.check_and_record("ip:192.0.2.1")

        assert limiter.tracked_keys() == 1
        assert limiter.window_size("ip:10.0.0.0") == 0

    @pytest.mark.asyncio
    async def test_active_keys_survive_sweep(self, limiter, clock):
        await limiter.check_and_record("user:idle")
        clock.advance(30)
        await limiter.check_and_record("user:active")
        clock.advance(31)

        await limiter.check_and_record("user:new")

        assert limiter.window_size("user:idle") == 0
        assert limiter.window_size("user:active") == 1
        assert limiter.tracked_keys() == 2
