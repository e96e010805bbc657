"""
In-process coordination backends.

These give the same lease and window semantics as the Redis backends but only
within a single process. They are the degraded mode used when the shared store
is unreachable or not configured; two processes using them do not exclude each
other.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List

from service_gateway.app.coordination.models import (
    LockHandle,
    LockLease,
    RateDecision,
    new_lock_token,
)


Clock = Callable[[], float]


class InProcessMutex:
    """Per-key leases held in a local map, expired against wall-clock time.

    Expired leases are swept at most once per TTL so keys that are never
    acquired again do not accumulate.
    """

    def __init__(self, ttl_seconds: float = 30, clock: Clock = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._leases: Dict[str, LockLease] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    async def acquire(self, key: str) -> LockHandle:
        now = self._clock()
        token = new_lock_token()
        with self._lock:
            self._sweep(now)
            current = self._leases.get(key)
            if current is not None and current.expires_at > now:
                return LockHandle.denied()
            lease = LockLease(key=key, token=token, expires_at=now + self.ttl_seconds)
            self._leases[key] = lease

        async def release() -> None:
            self.release_if_held(key, token)

        return LockHandle(ok=True, lease=lease, release_fn=release)

    def release_if_held(self, key: str, token: str) -> bool:
        """Compare-and-delete: drop the lease only if ``token`` still owns it."""
        with self._lock:
            current = self._leases.get(key)
            if current is None or current.token != token:
                return False
            del self._leases[key]
            return True

    def current_lease(self, key: str):
        with self._lock:
            return self._leases.get(key)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._leases)

    def _sweep(self, now: float) -> None:
        # Caller holds self._lock
        if now - self._last_sweep < self.ttl_seconds:
            return
        self._last_sweep = now
        expired = [key for key, lease in self._leases.items() if lease.expires_at <= now]
        for key in expired:
            del self._leases[key]


class InProcessRateLimiter:
    """Sliding window of admission timestamps per key.

    A key whose window empties is dropped, and idle keys are swept at most once
    per window, matching the expiry of the Redis window keys.
    """

    def __init__(self, limit: int = 20, window_seconds: float = 60, clock: Clock = time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    async def check_and_record(self, key: str) -> RateDecision:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._sweep(now, cutoff)
            recent = [ts for ts in self._windows.get(key, []) if ts > cutoff]
            if len(recent) >= self.limit:
                if recent:
                    self._windows[key] = recent
                else:
                    self._windows.pop(key, None)
                return RateDecision(ok=False, count=len(recent), limit=self.limit)
            recent.append(now)
            self._windows[key] = recent
            return RateDecision(ok=True, count=len(recent), limit=self.limit)

    def window_size(self, key: str) -> int:
        with self._lock:
            return len(self._windows.get(key, []))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float, cutoff: float) -> None:
        # Caller holds self._lock; timestamps are appended in order so the last is the newest
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        idle = [key for key, stamps in self._windows.items() if not stamps or stamps[-1] <= cutoff]
        for key in idle:
            del self._windows[key]
