"""
PostgreSQL status store.
"""

from typing import List, Optional

import asyncpg

from shared.errors import ClawCloudException
from shared.logging import get_logger

from .models import FulfillmentRecord, FulfillmentStatus
from .store import StatusStore


class PostgresStatusStore(StatusStore):
    """Fulfillment records in a single PostgreSQL table."""

    name = "postgres"

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("provisioner.status.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create the table."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL status store started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL status store", error=str(e))
            raise ClawCloudException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL status store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS fulfillment (
                    entitlement_id BIGINT PRIMARY KEY,
                    status VARCHAR(32) NOT NULL,
                    provider VARCHAR(32),
                    instance_id VARCHAR(255),
                    network_address VARCHAR(255),
                    tier SMALLINT,
                    owner VARCHAR(255),
                    encrypted_private_key TEXT,
                    error TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                ALTER TABLE fulfillment ADD COLUMN IF NOT EXISTS creation_key VARCHAR(255);
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_fulfillment_status ON fulfillment(status);
            """)

    async def get(self, entitlement_id: int) -> Optional[FulfillmentRecord]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM fulfillment WHERE entitlement_id = $1
                """, entitlement_id)

        except Exception as e:
            self.logger.error("Error loading fulfillment record", entitlement_id=entitlement_id, error=str(e))
            raise ClawCloudException("STATUS_STORE_ERROR", str(e))

        return self._row_to_record(row) if row else None

    async def set(self, record: FulfillmentRecord) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO fulfillment (
                        entitlement_id, status, provider, instance_id, network_address,
                        tier, owner, encrypted_private_key, error, attempts, updated_at, creation_key
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (entitlement_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        provider = EXCLUDED.provider,
                        instance_id = EXCLUDED.instance_id,
                        network_address = EXCLUDED.network_address,
                        tier = EXCLUDED.tier,
                        owner = EXCLUDED.owner,
                        encrypted_private_key = EXCLUDED.encrypted_private_key,
                        error = EXCLUDED.error,
                        attempts = EXCLUDED.attempts,
                        updated_at = EXCLUDED.updated_at,
                        creation_key = EXCLUDED.creation_key
                """,
                    record.entitlement_id, record.status.value, record.provider, record.instance_id,
                    record.network_address, record.tier, record.owner, record.encrypted_private_key,
                    record.error, record.attempts, record.updated_at, record.creation_key
                )

        except Exception as e:
            self.logger.error("Error saving fulfillment record", entitlement_id=record.entitlement_id, error=str(e))
            raise ClawCloudException("STATUS_STORE_ERROR", str(e))

    async def list_by_status(self, *statuses: FulfillmentStatus) -> List[FulfillmentRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM fulfillment
                    WHERE status = ANY($1::varchar[])
                    ORDER BY entitlement_id
                """, [s.value for s in statuses])

        except Exception as e:
            self.logger.error("Error listing fulfillment records", error=str(e))
            raise ClawCloudException("STATUS_STORE_ERROR", str(e))

        return [self._row_to_record(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.error("PostgreSQL health check failed", error=str(e))
            return False

    def _row_to_record(self, row) -> FulfillmentRecord:
        return FulfillmentRecord(
            entitlement_id=row["entitlement_id"],
            status=FulfillmentStatus(row["status"]),
            provider=row["provider"],
            instance_id=row["instance_id"],
            creation_key=row["creation_key"],
            network_address=row["network_address"],
            tier=row["tier"],
            owner=row["owner"],
            encrypted_private_key=row["encrypted_private_key"],
            error=row["error"],
            attempts=row["attempts"],
            updated_at=row["updated_at"]
        )
