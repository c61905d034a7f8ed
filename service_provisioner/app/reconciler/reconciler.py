"""
Provisioning reconciler.

Drives the cloud toward what the ledger says should exist. Every step is
safe to re-run: the status store remembers the creation key before the
instance is requested and the instance once it exists, so a replayed or
retried Purchased event finds that instance instead of creating another.
"""

import asyncio
from contextlib import nullcontext
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from shared.errors import (
    ClawCloudException,
    CloudProviderError,
    InvalidStateError,
    LedgerRejectedError,
    NotFoundError,
    ProvisioningTimeoutError,
)
from shared.logging import clear_context, get_logger, set_entitlement_context
from shared.metrics import MetricsCollector
from service_ledger.app.models import TIER_SPECS, EntitlementStatus, EventKind, LedgerEvent, Tier

from ..cloud import CloudAdapter, SSHKeyPair, generate_ssh_keypair, load_ssh_keypair
from ..credentials import CredentialVault
from ..ledger_client import LedgerClient
from ..status import (
    RECOVERABLE_STATUSES,
    RETRYABLE_STATUSES,
    SETTLED_STATUSES,
    FulfillmentRecord,
    FulfillmentStatus,
    StatusStore,
)
from .locks import ExclusivityManager

PROVISIONED_STATES = (EntitlementStatus.ACTIVE, EntitlementStatus.SUSPENDED)


class ProvisioningReconciler:
    """Acts on Purchased and Terminated events, one entitlement at a time."""

    def __init__(
        self,
        ledger: LedgerClient,
        cloud: CloudAdapter,
        store: StatusStore,
        locks: ExclusivityManager,
        vault: CredentialVault,
        metrics: Optional[MetricsCollector] = None,
        poll_interval: float = 2.0,
        poll_attempts: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.cloud = cloud
        self.store = store
        self.locks = locks
        self.vault = vault
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._sleep = sleep
        self.logger = get_logger("provisioner.reconciler")

    async def handle(self, event: LedgerEvent) -> Optional[FulfillmentRecord]:
        """Reconcile one observed event."""
        set_entitlement_context(event.entitlement_id, event.sequence)
        try:
            if event.kind == EventKind.PURCHASED:
                return await self.reconcile_purchase(event.entitlement_id, event.data)
            if event.kind == EventKind.TERMINATED:
                return await self.reconcile_termination(event.entitlement_id, event.data.get("instance_id") or None)
            self.logger.debug("Event kind not reconciled", kind=event.kind.value)
            return None
        finally:
            clear_context()

    async def reconcile_purchase(self, entitlement_id: int, event_data: Optional[Dict] = None) -> Optional[FulfillmentRecord]:
        """Make sure a running instance exists for a purchased entitlement."""
        async with self.locks.acquire(entitlement_id):
            with self._timed("purchase"):
                record = await self.store.get(entitlement_id)
                if record is not None and record.status in SETTLED_STATUSES:
                    self.logger.info("Entitlement already reconciled", status=record.status.value)
                    self._count("purchase", "skipped")
                    return record

                if record is None:
                    data = event_data or {}
                    record = FulfillmentRecord(
                        entitlement_id=entitlement_id,
                        tier=data.get("tier"),
                        owner=data.get("buyer"),
                    )
                    await self.store.set(record)

                result = await self._provision(record)
                self._count("purchase", result.status.value)
                return result

    async def reconcile_termination(self, entitlement_id: int, instance_hint: Optional[str] = None) -> FulfillmentRecord:
        """Release the instance of a terminated entitlement."""
        async with self.locks.acquire(entitlement_id):
            with self._timed("termination"):
                record = await self.store.get(entitlement_id)
                if record is not None and record.status == FulfillmentStatus.TERMINATED:
                    self._count("termination", "skipped")
                    return record

                if record is None:
                    record = FulfillmentRecord(entitlement_id=entitlement_id, provider=self.cloud.provider_name)
                instance_id = record.instance_id or instance_hint
                if not instance_id and record.creation_key and record.provider == self.cloud.provider_name:
                    try:
                        handle = await self._cloud_call("find", self.cloud.find(record.creation_key))
                    except ClawCloudException as e:
                        self.logger.error("Instance lookup failed", creation_key=record.creation_key, error=e.message)
                        result = await self._save(record, status=FulfillmentStatus.DESTROY_FAILED, error=e.message)
                        self._count("termination", result.status.value)
                        return result
                    instance_id = handle.instance_id if handle else None

                if not instance_id:
                    self.logger.info("No instance to release")
                    result = await self._save(record, status=FulfillmentStatus.TERMINATED, error=None)
                elif record.provider and record.provider != self.cloud.provider_name:
                    result = await self._save(
                        record,
                        instance_id=instance_id,
                        status=FulfillmentStatus.DESTROY_FAILED,
                        error=f"Instance belongs to provider {record.provider}"
                    )
                else:
                    result = await self._release(record, instance_id)

                self._count("termination", result.status.value)
                return result

    async def retry(self, entitlement_id: int) -> Optional[FulfillmentRecord]:
        """Operator re-drive of a failed, errored or unknown fulfillment."""
        record = await self.store.get(entitlement_id)
        if record is None:
            raise NotFoundError(f"No fulfillment record for entitlement {entitlement_id}")
        if record.status not in RETRYABLE_STATUSES:
            raise InvalidStateError(
                f"Fulfillment in status {record.status.value} cannot be retried",
                {"entitlement_id": entitlement_id, "status": record.status.value}
            )

        set_entitlement_context(entitlement_id)
        try:
            self.logger.info("Retrying fulfillment", previous_status=record.status.value)
            return await self.reconcile_purchase(entitlement_id)
        finally:
            clear_context()

    async def recover(self) -> List[FulfillmentRecord]:
        """Re-verify fulfillments interrupted by a previous shutdown or crash."""
        pending = await self.store.list_by_status(*RECOVERABLE_STATUSES)
        if pending:
            self.logger.info("Recovering interrupted fulfillments", count=len(pending))

        results = []
        for record in pending:
            set_entitlement_context(record.entitlement_id)
            try:
                result = await self.reconcile_purchase(record.entitlement_id)
                if result is not None:
                    results.append(result)
            finally:
                clear_context()
        return results

    async def update_address(self, entitlement_id: int, network_address: str) -> FulfillmentRecord:
        """Record a migrated instance's new address on the ledger, then locally."""
        async with self.locks.acquire(entitlement_id):
            record = await self.store.get(entitlement_id)
            if record is None:
                raise NotFoundError(f"No fulfillment record for entitlement {entitlement_id}")
            if record.status != FulfillmentStatus.RUNNING:
                raise InvalidStateError(
                    f"Fulfillment in status {record.status.value} has no address to update",
                    {"entitlement_id": entitlement_id, "status": record.status.value}
                )

            await self.ledger.update_network_address(entitlement_id, network_address)
            self.logger.info(
                "Network address updated",
                entitlement_id=entitlement_id,
                previous=record.network_address,
                address=network_address
            )
            return await self._save(record, network_address=network_address)

    async def record_failure(self, event: LedgerEvent, message: str) -> FulfillmentRecord:
        """Leave an operator-visible record for an event whose handling kept raising."""
        async with self.locks.acquire(event.entitlement_id):
            record = await self.store.get(event.entitlement_id)
            if event.kind == EventKind.TERMINATED:
                status = FulfillmentStatus.DESTROY_FAILED
                done = record is not None and record.status == FulfillmentStatus.TERMINATED
            else:
                status = FulfillmentStatus.ERROR
                done = record is not None and record.status in SETTLED_STATUSES
            if done:
                return record

            if record is None:
                record = FulfillmentRecord(
                    entitlement_id=event.entitlement_id,
                    tier=event.data.get("tier"),
                    owner=event.data.get("buyer"),
                )
            return await self._save(record, status=status, error=message)

    async def _provision(self, record: FulfillmentRecord) -> FulfillmentRecord:
        entitlement_id = record.entitlement_id
        current = record
        try:
            entitlement = await self.ledger.get_entitlement(entitlement_id)
            if entitlement is None:
                self.logger.info("Entitlement no longer exists, nothing to provision")
                if current.instance_id or current.creation_key:
                    # The Terminated event releases it
                    return current
                return await self._save(current, status=FulfillmentStatus.TERMINATED,
                                        error="Entitlement no longer exists")

            if entitlement.status in PROVISIONED_STATES and entitlement.instance_id:
                self.logger.info("Entitlement already provisioned on the ledger", instance_id=entitlement.instance_id)
                return await self._save(
                    current,
                    status=FulfillmentStatus.RUNNING,
                    instance_id=entitlement.instance_id,
                    network_address=entitlement.network_address,
                    error=None
                )

            if entitlement.status != EntitlementStatus.PROVISIONING:
                return await self._save(
                    current,
                    status=FulfillmentStatus.INCONSISTENT,
                    error=f"Ledger status {entitlement.status.value} without instance identity"
                )

            if entitlement.expired:
                return await self._save(
                    current,
                    status=FulfillmentStatus.FAILED,
                    tier=entitlement.tier,
                    owner=entitlement.owner,
                    error="Entitlement expired before provisioning"
                )

            current = await self._save(
                current,
                status=FulfillmentStatus.IN_PROGRESS,
                tier=entitlement.tier,
                owner=entitlement.owner,
                attempts=current.attempts + 1,
                error=None
            )

            if current.instance_id and current.provider == self.cloud.provider_name:
                self.logger.info("Resuming existing instance", instance_id=current.instance_id)
                address = current.network_address
            else:
                handle = None
                if current.creation_key and current.provider == self.cloud.provider_name:
                    handle = await self._cloud_call("find", self.cloud.find(current.creation_key))
                    if handle is not None:
                        self.logger.info("Adopting instance from an interrupted create", instance_id=handle.instance_id)

                if handle is None:
                    current, keypair = await self._prepare_create(current)
                    spec = TIER_SPECS[Tier(entitlement.tier)]
                    labels = {
                        "clawcloud-entitlement-id": str(entitlement_id),
                        "clawcloud-tier": spec.tier.name.lower(),
                        "clawcloud-owner": entitlement.owner,
                    }
                    handle = await self._cloud_call(
                        "create",
                        self.cloud.create(spec, keypair.public_key, labels, current.creation_key)
                    )

                current = await self._save(
                    current,
                    instance_id=handle.instance_id,
                    network_address=handle.network_address
                )
                address = handle.network_address

            if not address:
                address = await self._wait_for_address(current.instance_id)
                current = await self._save(current, network_address=address)

            return await self._write_back(current, address)

        except asyncio.CancelledError:
            self.logger.warning("Reconciliation cancelled", instance_id=current.instance_id)
            await asyncio.shield(self._save(current, status=FulfillmentStatus.UNKNOWN, error="Reconciliation cancelled"))
            raise
        except (CloudProviderError, ProvisioningTimeoutError) as e:
            self.logger.error("Provisioning failed", instance_id=current.instance_id, error=e.message)
            return await self._save(current, status=FulfillmentStatus.FAILED, error=e.message)
        except ClawCloudException as e:
            self.logger.error("Provisioning error", code=e.code, error=e.message)
            return await self._save(current, status=FulfillmentStatus.ERROR, error=e.message)
        except Exception as e:
            self.logger.exception("Unexpected provisioning error", error=str(e))
            return await self._save(current, status=FulfillmentStatus.ERROR, error=str(e))

    async def _prepare_create(self, record: FulfillmentRecord) -> Tuple[FulfillmentRecord, SSHKeyPair]:
        """Save the creation key and credentials before the instance can exist.

        A repeated attempt reuses the stored key pair, so the provider sees the
        same request and returns the instance an earlier attempt may have made.
        """
        comment = f"clawcloud-{record.entitlement_id}"
        if (
            record.provider == self.cloud.provider_name
            and record.creation_key
            and record.encrypted_private_key
        ):
            try:
                return record, load_ssh_keypair(self.vault.decrypt(record.encrypted_private_key), comment)
            except (ClawCloudException, ValueError) as e:
                self.logger.warning("Stored key unreadable, generating a new one", error=str(e))

        keypair = generate_ssh_keypair(comment=comment)
        record = await self._save(
            record,
            provider=self.cloud.provider_name,
            creation_key=self.cloud.creation_key(record.entitlement_id),
            instance_id=None,
            network_address=None,
            encrypted_private_key=self.vault.encrypt(keypair.private_key)
        )
        return record, keypair

    async def _wait_for_address(self, instance_id: str) -> str:
        for attempt in range(1, self.poll_attempts + 1):
            await self._sleep(self.poll_interval)
            try:
                address = await self._cloud_call("describe", self.cloud.describe(instance_id))
            except CloudProviderError as e:
                self.logger.warning("Describe failed", instance_id=instance_id, attempt=attempt, error=e.message)
                continue
            if address:
                self.logger.info("Network address assigned", instance_id=instance_id, address=address, attempt=attempt)
                return address

        raise ProvisioningTimeoutError(
            f"No network address after {self.poll_attempts} attempts",
            {"instance_id": instance_id, "attempts": self.poll_attempts}
        )

    async def _write_back(self, record: FulfillmentRecord, address: str) -> FulfillmentRecord:
        try:
            await self.ledger.set_provisioned(record.entitlement_id, record.instance_id, address)
        except LedgerRejectedError as e:
            self.logger.info("Write-back rejected, re-reading ledger", ledger_code=e.ledger_code)
            entitlement = await self.ledger.get_entitlement(record.entitlement_id)
            if (
                entitlement is not None
                and entitlement.status in PROVISIONED_STATES
                and entitlement.instance_id == record.instance_id
            ):
                self._count_writeback("duplicate")
                return await self._save(
                    record,
                    status=FulfillmentStatus.RUNNING,
                    network_address=entitlement.network_address,
                    error=None
                )

            self._count_writeback("inconsistent")
            self.logger.error(
                "Ledger disagrees with fulfillment",
                instance_id=record.instance_id,
                ledger_code=e.ledger_code,
                ledger_instance_id=entitlement.instance_id if entitlement else None
            )
            return await self._save(
                record,
                status=FulfillmentStatus.INCONSISTENT,
                error=f"Write-back rejected ({e.ledger_code}): {e.message}"
            )

        self._count_writeback("accepted")
        self.logger.info("Entitlement provisioned", instance_id=record.instance_id, address=address)
        return await self._save(record, status=FulfillmentStatus.RUNNING, network_address=address, error=None)

    async def _release(self, record: FulfillmentRecord, instance_id: str) -> FulfillmentRecord:
        try:
            await self._cloud_call("destroy", self.cloud.destroy(instance_id))
        except ClawCloudException as e:
            self.logger.error("Instance release failed", instance_id=instance_id, error=e.message)
            return await self._save(
                record,
                instance_id=instance_id,
                status=FulfillmentStatus.DESTROY_FAILED,
                error=e.message
            )

        self.logger.info("Instance released", instance_id=instance_id)
        return await self._save(record, instance_id=instance_id, status=FulfillmentStatus.TERMINATED, error=None)

    async def _save(self, record: FulfillmentRecord, **changes) -> FulfillmentRecord:
        updated = record.evolve(**changes)
        await self.store.set(updated)
        return updated

    async def _cloud_call(self, operation: str, call: Awaitable):
        try:
            result = await call
        except ClawCloudException:
            self._count_cloud(operation, "error")
            raise
        self._count_cloud(operation, "ok")
        return result

    def _timed(self, kind: str):
        if self.metrics:
            return self.metrics.time_operation("reconciliation_duration_seconds", kind=kind)
        return nullcontext()

    def _count(self, kind: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("reconciliations_total", kind=kind, outcome=outcome)

    def _count_cloud(self, operation: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "cloud_calls_total",
                provider=self.cloud.provider_name,
                operation=operation,
                outcome=outcome
            )

    def _count_writeback(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("ledger_writebacks_total", outcome=outcome)
