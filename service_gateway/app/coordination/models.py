"""
Value types and capability interfaces shared by the coordination backends.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol


ReleaseFn = Callable[[], Awaitable[None]]


async def _noop_release() -> None:
    return None


def new_lock_token() -> str:
    """Random, unguessable lease token."""
    return secrets.token_urlsafe(18)


@dataclass(frozen=True)
class LockLease:
    """An exclusive, time-bounded claim on an identity key."""

    key: str
    token: str
    expires_at: float


class LockHandle:
    """Result of a lock acquisition attempt.

    ``release`` is safe to call any number of times; only the first call reaches
    the backend. A handle for a failed acquisition releases nothing.
    """

    def __init__(self, ok: bool, lease: Optional[LockLease] = None, release_fn: Optional[ReleaseFn] = None):
        self.ok = ok
        self.lease = lease
        self._release_fn = release_fn or _noop_release
        self._released = False

    @classmethod
    def denied(cls) -> "LockHandle":
        return cls(ok=False)

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._release_fn()


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a sliding-window quota check."""

    ok: bool
    count: int
    limit: int


class MutexBackend(Protocol):
    """Grants per-key exclusive leases."""

    async def acquire(self, key: str) -> LockHandle:
        ...


class RateLimiterBackend(Protocol):
    """Checks a per-key quota and records admitted requests."""

    async def check_and_record(self, key: str) -> RateDecision:
        ...
