"""
Redis status store.
"""

from typing import List, Optional

import redis.asyncio as redis

from shared.errors import ClawCloudException
from shared.logging import get_logger

from .models import FulfillmentRecord, FulfillmentStatus
from .store import StatusStore


class RedisStatusStore(StatusStore):
    """Records as JSON strings, plus one index set per status."""

    name = "redis"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None,
                 namespace: str = "clawcloud"):
        self.redis_url = redis_url
        self.redis = client
        self.logger = get_logger("provisioner.status.redis")

        self.RECORD_PREFIX = f"{namespace}:fulfillment:"
        self.STATUS_PREFIX = f"{namespace}:fulfillment_status:"

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
            self.logger.info("Redis status store started")

        except Exception as e:
            self.logger.error("Failed to start Redis status store", error=str(e))
            raise ClawCloudException("REDIS_START_FAILED", str(e))

    async def stop(self):
        if self.redis and self.redis_url:
            await self.redis.close()
            self.logger.info("Redis status store stopped")

    def _record_key(self, entitlement_id: int) -> str:
        return f"{self.RECORD_PREFIX}{entitlement_id}"

    def _status_key(self, status: FulfillmentStatus) -> str:
        return f"{self.STATUS_PREFIX}{status.value}"

    async def get(self, entitlement_id: int) -> Optional[FulfillmentRecord]:
        raw = await self.redis.get(self._record_key(entitlement_id))
        if not raw:
            return None
        return FulfillmentRecord.model_validate_json(raw)

    async def set(self, record: FulfillmentRecord) -> None:
        try:
            previous = await self.get(record.entitlement_id)

            pipe = self.redis.pipeline()
            if previous is not None and previous.status != record.status:
                pipe.srem(self._status_key(previous.status), record.entitlement_id)
            pipe.set(self._record_key(record.entitlement_id), record.model_dump_json())
            pipe.sadd(self._status_key(record.status), record.entitlement_id)
            await pipe.execute()

        except Exception as e:
            self.logger.error(
                "Error saving fulfillment record",
                entitlement_id=record.entitlement_id,
                error=str(e)
            )
            raise ClawCloudException("STATUS_STORE_ERROR", str(e))

    async def list_by_status(self, *statuses: FulfillmentStatus) -> List[FulfillmentRecord]:
        ids = set()
        for status in statuses:
            members = await self.redis.smembers(self._status_key(status))
            ids.update(int(m) for m in members)

        records = []
        for entitlement_id in sorted(ids):
            record = await self.get(entitlement_id)
            if record is not None and record.status in statuses:
                records.append(record)
        return records

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            self.logger.error("Redis health check failed", error=str(e))
            return False
