"""
Unit tests for the coordination fallback.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_gateway.app.coordination import Coordinator, LockHandle, RateDecision
from shared.errors import CoordinationStoreError
from shared.metrics import MetricsCollector


def _fallback_count(metrics, component):
    return metrics.registry.get_sample_value(
        "coordination_fallbacks_total", {"component": component}
    )


class TestCoordinator:
    """Test cases for Coordinator."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.fixture
    def shared_mutex(self):
        mutex = MagicMock()
        mutex.acquire = AsyncMock(return_value=LockHandle(ok=True))
        return mutex

    @pytest.fixture
    def shared_limiter(self):
        limiter = MagicMock()
        limiter.check_and_record = AsyncMock(return_value=RateDecision(ok=True, count=1, limit=20))
        return limiter

    @pytest.mark.asyncio
    async def test_uses_shared_store(self, shared_mutex, shared_limiter):
        coordinator = Coordinator(mutex=shared_mutex, rate_limiter=shared_limiter)

        assert (await coordinator.acquire("user:1")).ok
        assert (await coordinator.check_and_record("user:1")).ok

        assert coordinator.mode == Coordinator.MODE_REDIS
        shared_mutex.acquire.assert_awaited_once_with("user:1")
        shared_limiter.check_and_record.assert_awaited_once_with("user:1")

    @pytest.mark.asyncio
    async def test_memory_mode_without_store(self):
        coordinator = Coordinator()
        coordinator.logger = MagicMock()

        first = await coordinator.acquire("user:1", route="/api/chat")
        second = await coordinator.acquire("user:1", route="/api/chat")
        await coordinator.check_and_record("user:1")

        assert coordinator.mode == Coordinator.MODE_MEMORY
        assert first.ok and not second.ok
        coordinator.logger.warning.assert_called_once()
        assert coordinator.logger.warning.call_args.kwargs["reason"] == "redis_not_configured"

    @pytest.mark.asyncio
    async def test_mutex_failure_switches_for_good(self, shared_mutex, shared_limiter, metrics):
        shared_mutex.acquire.side_effect = CoordinationStoreError("Lock acquisition failed", {"error": "refused"})
        coordinator = Coordinator(mutex=shared_mutex, rate_limiter=shared_limiter, metrics=metrics)
        coordinator.logger = MagicMock()

        handle = await coordinator.acquire("user:1", route="/api/chat")
        decision = await coordinator.check_and_record("user:1", route="/api/chat")
        await handle.release()
        await coordinator.acquire("user:1", route="/api/chat")

        assert handle.ok and decision.ok
        assert coordinator.mode == Coordinator.MODE_DEGRADED
        assert shared_mutex.acquire.await_count == 1
        shared_limiter.check_and_record.assert_not_awaited()
        assert coordinator.local_rate_limiter.window_size("user:1") == 1
        assert _fallback_count(metrics, "mutex") == 1.0

    @pytest.mark.asyncio
    async def test_rate_limiter_failure_falls_back(self, shared_mutex, shared_limiter, metrics):
        shared_limiter.check_and_record.side_effect = CoordinationStoreError("Rate window check failed")
        coordinator = Coordinator(mutex=shared_mutex, rate_limiter=shared_limiter, metrics=metrics)

        decision = await coordinator.check_and_record("user:1")

        assert decision.ok
        assert coordinator.mode == Coordinator.MODE_DEGRADED
        assert _fallback_count(metrics, "rate_limiter") == 1.0

    @pytest.mark.asyncio
    async def test_fallback_warning_logged_once(self, shared_mutex, shared_limiter):
        shared_mutex.acquire.side_effect = CoordinationStoreError("Lock acquisition failed")
        coordinator = Coordinator(mutex=shared_mutex, rate_limiter=shared_limiter)
        coordinator.logger = MagicMock()

        for key in ("user:1", "user:2", "user:3"):
            await coordinator.acquire(key, route="/api/chat")
            await coordinator.check_and_record(key, route="/api/chat")

        coordinator.logger.warning.assert_called_once()
        kwargs = coordinator.logger.warning.call_args.kwargs
        assert kwargs["route"] == "/api/chat"
        assert kwargs["component"] == "mutex"
