"""
Provisioner context.

Constructs every client and store once from configuration and hands them
out explicitly. Nothing in the provisioner reaches for a module-level
client.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import redis.asyncio as redis

from shared.config import BaseConfig
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_ledger.app.ledger import EntitlementLedger

from .cloud import CloudAdapter, create_cloud_adapter
from .credentials import CredentialVault
from .events import (
    RECONCILED_KINDS,
    CheckpointStore,
    EventObserver,
    EventSource,
    InMemoryCheckpointStore,
    InProcessLedgerSource,
    KafkaEventSource,
    LedgerPollingSource,
    RedisCheckpointStore,
)
from .ledger_client import HttpLedgerClient, LedgerClient, LocalLedgerClient
from .reconciler import ExclusivityManager, ProvisioningReconciler, RedisExclusivityToken
from .status import InMemoryStatusStore, PostgresStatusStore, RedisStatusStore, StatusStore

logger = get_logger("provisioner.context")


@dataclass
class ProvisionerContext:
    """Everything the provisioner runs on."""
    config: BaseConfig
    metrics: MetricsCollector
    ledger: LedgerClient
    cloud: CloudAdapter
    store: StatusStore
    checkpoint: CheckpointStore
    source: EventSource
    observer: EventObserver
    locks: ExclusivityManager
    vault: CredentialVault
    reconciler: ProvisioningReconciler
    redis_client: Optional[redis.Redis] = None
    started_components: List[str] = field(default_factory=list)

    async def start(self) -> None:
        await self.store.start()
        self.started_components.append("store")
        await self.observer.start()
        self.started_components.append("observer")
        logger.info(
            "Provisioner context started",
            status_store=self.store.name,
            event_source=self.source.name,
            cloud_provider=self.cloud.provider_name
        )

    async def stop(self) -> None:
        if "observer" in self.started_components:
            await self.observer.stop()
        if "store" in self.started_components:
            await self.store.stop()
        self.started_components.clear()

        await self.ledger.close()
        if self.redis_client is not None:
            await self.redis_client.close()
        logger.info("Provisioner context stopped")


def build_status_store(config: BaseConfig) -> StatusStore:
    backend = config.status_store.lower()
    if backend == "postgres":
        return PostgresStatusStore(config.postgres_dsn)
    if backend == "redis":
        return RedisStatusStore(redis_url=config.redis_url)
    if backend == "memory":
        return InMemoryStatusStore()
    raise ValidationError(f"Unsupported status store: {config.status_store}")


def build_checkpoint_store(config: BaseConfig) -> CheckpointStore:
    backend = config.checkpoint_store.lower()
    if backend == "redis":
        return RedisCheckpointStore(redis_url=config.redis_url)
    if backend == "memory":
        return InMemoryCheckpointStore()
    raise ValidationError(f"Unsupported checkpoint store: {config.checkpoint_store}")


def build_event_source(
    config: BaseConfig,
    client: LedgerClient,
    ledger: Optional[EntitlementLedger] = None,
) -> EventSource:
    mode = config.event_source.lower()

    if mode == "subscribe":
        if ledger is None:
            raise ValidationError("The subscribe event source needs an in-process ledger")
        return InProcessLedgerSource(ledger, kinds=RECONCILED_KINDS)

    polling = LedgerPollingSource(
        client,
        interval=config.event_poll_interval_seconds,
        batch_size=config.event_batch_size,
        kinds=RECONCILED_KINDS,
    )
    if mode == "poll":
        return polling
    if mode == "kafka":
        return KafkaEventSource(
            bootstrap_servers=config.kafka_bootstrap,
            topic=config.ledger_events_topic,
            group_id=config.kafka_group_id,
            catch_up=polling,
        )
    raise ValidationError(f"Unsupported event source: {config.event_source}")


def build_context(
    config: BaseConfig,
    metrics: MetricsCollector,
    ledger: Optional[EntitlementLedger] = None,
    cloud: Optional[CloudAdapter] = None,
    store: Optional[StatusStore] = None,
    checkpoint: Optional[CheckpointStore] = None,
) -> ProvisionerContext:
    """Wire the provisioner from configuration.

    Passing an in-process ``ledger`` switches the ledger client to direct
    calls; otherwise the provisioner talks to the ledger node over HTTP.
    """
    if ledger is not None:
        client: LedgerClient = LocalLedgerClient(ledger, config.provisioner_identity)
    else:
        client = HttpLedgerClient(config.ledger_service_url, config.provisioner_identity)

    cloud = cloud or create_cloud_adapter(config)
    store = store or build_status_store(config)
    checkpoint = checkpoint or build_checkpoint_store(config)
    source = build_event_source(config, client, ledger)
    observer = EventObserver(source, checkpoint, metrics)

    redis_client = None
    distributed = None
    if config.distributed_locks:
        redis_client = redis.from_url(config.redis_url, encoding="utf-8", decode_responses=True)
        distributed = RedisExclusivityToken(redis_client, ttl_seconds=config.lock_ttl_seconds)
    locks = ExclusivityManager(distributed)

    vault = CredentialVault(config.credential_key)
    reconciler = ProvisioningReconciler(
        ledger=client,
        cloud=cloud,
        store=store,
        locks=locks,
        vault=vault,
        metrics=metrics,
        poll_interval=config.address_poll_interval_seconds,
        poll_attempts=config.address_poll_attempts,
    )

    return ProvisionerContext(
        config=config,
        metrics=metrics,
        ledger=client,
        cloud=cloud,
        store=store,
        checkpoint=checkpoint,
        source=source,
        observer=observer,
        locks=locks,
        vault=vault,
        reconciler=reconciler,
        redis_client=redis_client,
    )
