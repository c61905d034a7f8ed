"""
Observer checkpoint stores: the persisted cursor and processed-event keys.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set

import redis.asyncio as redis

from shared.errors import ClawCloudException
from shared.logging import get_logger


class CheckpointStore(ABC):
    """Durable observer position.

    ``cursor`` is the highest ledger sequence at or below which every
    delivered event has been acknowledged; processed keys are
    ``"<entitlement_id>:<event_kind>"``.
    """

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def load_cursor(self) -> int:
        ...

    @abstractmethod
    async def save_cursor(self, cursor: int) -> None:
        ...

    @abstractmethod
    async def is_processed(self, key: str) -> bool:
        ...

    @abstractmethod
    async def mark_processed(self, key: str) -> None:
        ...


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local checkpoint; restarts begin from the configured cursor."""

    def __init__(self, cursor: int = 0):
        self.cursor = cursor
        self.processed: Set[str] = set()

    async def load_cursor(self) -> int:
        return self.cursor

    async def save_cursor(self, cursor: int) -> None:
        self.cursor = cursor

    async def is_processed(self, key: str) -> bool:
        return key in self.processed

    async def mark_processed(self, key: str) -> None:
        self.processed.add(key)


class RedisCheckpointStore(CheckpointStore):
    """Checkpoint kept in Redis (a string cursor and a set of keys)."""

    def __init__(self, client: Optional[redis.Redis] = None, redis_url: Optional[str] = None,
                 namespace: str = "clawcloud:observer"):
        self.redis = client
        self.redis_url = redis_url
        self.namespace = namespace
        self.logger = get_logger("provisioner.events.checkpoint")

        self.CURSOR_KEY = f"{namespace}:cursor"
        self.PROCESSED_KEY = f"{namespace}:processed"

    async def start(self):
        """Connect to Redis."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
            await self.redis.ping()
            self.logger.info("Redis checkpoint store started", namespace=self.namespace)

        except Exception as e:
            self.logger.error("Failed to start Redis checkpoint store", error=str(e))
            raise ClawCloudException("REDIS_START_FAILED", str(e))

    async def stop(self):
        """Close the connection if this store opened it."""
        if self.redis and self.redis_url:
            await self.redis.close()
            self.logger.info("Redis checkpoint store stopped")

    async def load_cursor(self) -> int:
        value = await self.redis.get(self.CURSOR_KEY)
        return int(value) if value else 0

    async def save_cursor(self, cursor: int) -> None:
        await self.redis.set(self.CURSOR_KEY, str(cursor))

    async def is_processed(self, key: str) -> bool:
        return bool(await self.redis.sismember(self.PROCESSED_KEY, key))

    async def mark_processed(self, key: str) -> None:
        await self.redis.sadd(self.PROCESSED_KEY, key)
