"""
Per-entitlement exclusivity.

Within one process a keyed asyncio lock serializes reconciliation of the
same id. With several provisioner processes an optional Redis token (SET NX
with expiry, released only by its holder) extends that across processes.
"""

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

from shared.errors import LockNotAcquiredError
from shared.logging import get_logger

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class KeyedLock:
    """One asyncio.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class RedisExclusivityToken:
    """Cross-process token per entitlement id."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 600, wait_seconds: float = 30.0,
                 retry_interval: float = 0.25, namespace: str = "clawcloud:reconcile"):
        self.redis = client
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.retry_interval = retry_interval
        self.namespace = namespace
        self.logger = get_logger("provisioner.reconciler.locks")

    def _key(self, entitlement_id: int) -> str:
        return f"{self.namespace}:{entitlement_id}"

    async def acquire(self, entitlement_id: int) -> str:
        token = secrets.token_hex(16)
        deadline = asyncio.get_running_loop().time() + self.wait_seconds

        while True:
            if await self.redis.set(self._key(entitlement_id), token, nx=True, ex=self.ttl_seconds):
                return token
            if asyncio.get_running_loop().time() >= deadline:
                raise LockNotAcquiredError(
                    f"Entitlement {entitlement_id} is being reconciled elsewhere",
                    {"entitlement_id": entitlement_id}
                )
            await asyncio.sleep(self.retry_interval)

    async def release(self, entitlement_id: int, token: str) -> bool:
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(entitlement_id), token)
        if not released:
            self.logger.warning("Exclusivity token expired before release", entitlement_id=entitlement_id)
        return bool(released)


class ExclusivityManager:
    """Combines the in-process lock with the optional Redis token."""

    def __init__(self, distributed: Optional[RedisExclusivityToken] = None):
        self.local = KeyedLock()
        self.distributed = distributed

    @asynccontextmanager
    async def acquire(self, entitlement_id: int) -> AsyncIterator[None]:
        async with self.local.hold(entitlement_id):
            if self.distributed is None:
                yield
                return

            token = await self.distributed.acquire(entitlement_id)
            try:
                yield
            finally:
                await self.distributed.release(entitlement_id, token)
