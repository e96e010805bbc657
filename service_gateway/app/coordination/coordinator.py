"""
Coordination capability with a one-way fallback from Redis to in-process state.

A single ``Coordinator`` is built per service and injected into the payload
guard. It owns the in-process maps and the "already warned" flag, so the
degraded mode is explicit state rather than module globals.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from shared.errors import CoordinationStoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_gateway.app.coordination.memory import InProcessMutex, InProcessRateLimiter
from service_gateway.app.coordination.models import (
    LockHandle,
    MutexBackend,
    RateDecision,
    RateLimiterBackend,
)


class Coordinator:
    """Routes lock and quota checks to the shared store until it first fails."""

    MODE_REDIS = "redis"
    MODE_MEMORY = "memory"
    MODE_DEGRADED = "degraded"

    def __init__(
        self,
        *,
        mutex: Optional[MutexBackend] = None,
        rate_limiter: Optional[RateLimiterBackend] = None,
        lock_ttl_seconds: float = 30,
        rate_limit: int = 20,
        rate_window_seconds: float = 60,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._shared_mutex = mutex
        self._shared_rate_limiter = rate_limiter
        self.local_mutex = InProcessMutex(ttl_seconds=lock_ttl_seconds, clock=clock)
        self.local_rate_limiter = InProcessRateLimiter(
            limit=rate_limit, window_seconds=rate_window_seconds, clock=clock
        )
        self.metrics = metrics
        self.logger = get_logger("gateway.coordination")
        self._degraded = False
        self._warned = False

    @property
    def has_shared_store(self) -> bool:
        return self._shared_mutex is not None and self._shared_rate_limiter is not None

    @property
    def mode(self) -> str:
        if not self.has_shared_store:
            return self.MODE_MEMORY
        return self.MODE_DEGRADED if self._degraded else self.MODE_REDIS

    def _use_shared(self, route: str) -> bool:
        if not self.has_shared_store:
            self._warn_fallback(route, "coordinator", "redis_not_configured")
            return False
        return not self._degraded

    def _fall_back(self, route: str, component: str, error: CoordinationStoreError) -> None:
        self._degraded = True
        if self.metrics is not None:
            self.metrics.increment_counter("coordination_fallbacks_total", component=component)
        self._warn_fallback(route, component, f"{error.message}: {error.details.get('error', '')}")

    def _warn_fallback(self, route: str, component: str, reason: str) -> None:
        if self._warned:
            return
        self._warned = True
        self.logger.warning(
            "Coordination store unavailable, using in-process fallback",
            route=route,
            component=component,
            mode="memory",
            reason=reason,
        )

    async def acquire(self, key: str, route: str = "unknown") -> LockHandle:
        """Try to take the per-key lease."""
        if self._use_shared(route):
            try:
                return await self._shared_mutex.acquire(key)
            except CoordinationStoreError as e:
                self._fall_back(route, "mutex", e)
        return await self.local_mutex.acquire(key)

    async def check_and_record(self, key: str, route: str = "unknown") -> RateDecision:
        """Check the key's quota and record the request when admitted."""
        if self._use_shared(route):
            try:
                return await self._shared_rate_limiter.check_and_record(key)
            except CoordinationStoreError as e:
                self._fall_back(route, "rate_limiter", e)
        return await self.local_rate_limiter.check_and_record(key)
