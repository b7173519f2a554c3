"""
Redis-based dispatcher lease.

The matching core keeps driver and booking state in memory, so exactly one
process may run the worker pool against a given store.  That process holds
``lease:dispatcher``; the reconciliation sweep extends it on every pass and
a crashed holder loses it after ``ttl_seconds``.

Acquire uses SET NX EX; release and extend are Lua scripts so the
ownership check and the write happen atomically.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LeaseLost(RuntimeError):
    """Raised when an operation needs the lease and another process has it."""


class DispatcherLease:
    def __init__(
        self, client: aioredis.Redis, key: str = "dispatcher", ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lease:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())
        self.held = False

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        self.held = bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )
        return self.held

    async def extend(self) -> bool:
        """Push the expiry out by another TTL if we still own the lease."""
        self.held = bool(
            await self.redis.eval(_EXTEND, 1, self.key, self.token, self.ttl)
        )
        return self.held

    async def release(self) -> None:
        """Release only if we still own the lease."""
        await self.redis.eval(_RELEASE, 1, self.key, self.token)
        self.held = False

    # context-manager support
    async def __aenter__(self):
        if not await self.acquire():
            raise LeaseLost(f"Could not acquire lease: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()
