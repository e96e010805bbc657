"""
Redis-backed coordination: lease mutex and sliding-window limiter.

Every check is a single atomic round trip (``SET NX EX`` or a Lua script) so
concurrent handlers sharing a key can never both observe "unlocked" or "under
quota" before either writes.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import CoordinationStoreError
from shared.logging import get_logger
from service_gateway.app.coordination.models import (
    LockHandle,
    LockLease,
    RateDecision,
    new_lock_token,
)


STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

# KEYS[1] lock key, ARGV[1] holder token
RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

# KEYS[1] window key; ARGV: now_ms, window_ms, limit, member, ttl_seconds
SLIDING_WINDOW_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", now - window)
local count = redis.call("ZCARD", KEYS[1])
if count >= limit then
    redis.call("EXPIRE", KEYS[1], ARGV[5])
    return {0, count}
end
redis.call("ZADD", KEYS[1], now, ARGV[4])
redis.call("EXPIRE", KEYS[1], ARGV[5])
return {1, count + 1}
"""


def create_redis_client(redis_url: str, socket_timeout: float = 2.0) -> redis.Redis:
    """Create the shared connection pool for coordination and material reads."""
    return redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=socket_timeout,
        socket_timeout=socket_timeout,
    )


class RedisMutex:
    """Lease mutex on ``<prefix>lock:<key>``."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 30, key_prefix: str = "ai:",
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._clock = clock
        self.logger = get_logger("gateway.coordination.redis_mutex")
        self._release_script = client.register_script(RELEASE_LOCK_SCRIPT)

    def lock_key(self, key: str) -> str:
        return f"{self.key_prefix}lock:{key}"

    async def acquire(self, key: str) -> LockHandle:
        lock_key = self.lock_key(key)
        token = new_lock_token()
        try:
            acquired = await self.client.set(lock_key, token, nx=True, ex=self.ttl_seconds)
        except STORE_ERRORS as e:
            raise CoordinationStoreError(
                "Lock acquisition failed",
                details={"key": lock_key, "error": str(e)},
            ) from e

        if not acquired:
            return LockHandle.denied()

        lease = LockLease(key=key, token=token, expires_at=self._clock() + self.ttl_seconds)

        async def release() -> None:
            await self.release_if_held(key, token)

        return LockHandle(ok=True, lease=lease, release_fn=release)

    async def release_if_held(self, key: str, token: str) -> bool:
        """Atomic compare-and-delete; a stale holder never removes a newer lease."""
        lock_key = self.lock_key(key)
        try:
            deleted = await self._release_script(keys=[lock_key], args=[token])
        except STORE_ERRORS as e:
            # The lease will still expire through its TTL.
            self.logger.warning("Lock release failed", key=lock_key, error=str(e))
            return False
        return bool(deleted)


class RedisRateLimiter:
    """Sliding window stored as a sorted set on ``<prefix>rl:<key>``."""

    def __init__(self, client: redis.Redis, limit: int = 20, window_seconds: int = 60,
                 key_prefix: str = "ai:", clock: Callable[[], float] = time.time):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    def window_key(self, key: str) -> str:
        return f"{self.key_prefix}rl:{key}"

    async def check_and_record(self, key: str) -> RateDecision:
        window_key = self.window_key(key)
        now_ms = int(self._clock() * 1000)
        member = f"{now_ms}-{secrets.token_hex(4)}"
        try:
            result = await self._script(
                keys=[window_key],
                args=[now_ms, self.window_seconds * 1000, self.limit, member, self.window_seconds + 5],
            )
        except STORE_ERRORS as e:
            raise CoordinationStoreError(
                "Rate window check failed",
                details={"key": window_key, "error": str(e)},
            ) from e

        admitted, count = int(result[0]), int(result[1])
        return RateDecision(ok=bool(admitted), count=count, limit=self.limit)
