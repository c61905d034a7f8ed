"""
Provisioner service for ClawCloud.

Runs the event observer and reconciler in the background and exposes
fulfillment records to operators.
"""

from typing import Optional

from fastapi import Query
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError, ValidationError
from shared.retry import RetryConfig
from service_ledger.app.ledger import EntitlementLedger

from .context import ProvisionerContext, build_context
from .status import FulfillmentStatus
from .worker import ReconcilerWorker


class NetworkAddressRequest(BaseModel):
    """New address of a migrated instance."""
    network_address: str = Field(..., min_length=1, description="Instance network address")


class ProvisionerService(BaseService):
    """Provisioner implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        ledger: Optional[EntitlementLedger] = None,
        context: Optional[ProvisionerContext] = None,
    ):
        super().__init__("provisioner", 8021, config)

        self.context = context or build_context(self.config, self.metrics, ledger=ledger)
        self.worker = ReconcilerWorker(
            observer=self.context.observer,
            reconciler=self.context.reconciler,
            max_concurrency=self.config.max_concurrent_reconciliations,
            metrics=self.metrics,
            retry_config=RetryConfig(
                max_attempts=self.config.reconcile_attempts,
                base_delay=self.config.reconcile_retry_delay_seconds
            ),
        )

        self._setup_provisioner_routes()

    def _setup_provisioner_routes(self):
        """Set up provisioner-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "provisioner",
                "message": "ClawCloud - Provisioner",
                "version": "1.0.0",
                "cloud_provider": self.context.cloud.provider_name,
                "event_source": self.context.source.name,
                "status_store": self.context.store.name,
                "observer_cursor": self.context.observer.cursor,
                "worker_running": self.worker.running,
            }

        @self.app.get("/fulfillment/{entitlement_id}")
        async def get_fulfillment(entitlement_id: int):
            """Fulfillment record of one entitlement."""
            record = await self.context.store.get(entitlement_id)
            if record is None:
                raise NotFoundError(f"No fulfillment record for entitlement {entitlement_id}")
            return record.public_view()

        @self.app.get("/fulfillment")
        async def list_fulfillment(status: str = Query(..., description="Fulfillment status")):
            """Fulfillment records in one status."""
            try:
                wanted = FulfillmentStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown fulfillment status: {status}")

            records = await self.context.store.list_by_status(wanted)
            return {
                "status": wanted.value,
                "count": len(records),
                "records": [r.public_view() for r in records],
            }

        @self.app.post("/fulfillment/{entitlement_id}/retry")
        async def retry_fulfillment(entitlement_id: int):
            """Re-drive a failed, errored or unknown fulfillment."""
            record = await self.context.reconciler.retry(entitlement_id)
            if record is None:
                raise NotFoundError(f"No fulfillment record for entitlement {entitlement_id}")
            return record.public_view()

        @self.app.post("/fulfillment/{entitlement_id}/network-address")
        async def update_network_address(entitlement_id: int, request: NetworkAddressRequest):
            """Record the new address of a migrated instance."""
            record = await self.context.reconciler.update_address(entitlement_id, request.network_address)
            return record.public_view()

    async def _check_dependencies(self):
        """Check provisioner dependencies."""
        store_ok = await self.context.store.health_check()
        return {
            "status_store": "ok" if store_ok else "error",
            "ledger": "ok" if self.context.ledger.reachable() else "circuit_open",
            "worker": "running" if self.worker.running else "stopped",
        }

    async def start(self):
        """Start provisioner components."""
        await self.context.start()
        self.worker.start()
        self.logger.info("Provisioner started", cursor=self.context.observer.cursor)

    async def stop(self):
        """Stop provisioner components."""
        await self.worker.stop()
        await self.context.stop()
        self.logger.info("Provisioner stopped")


def create_app(
    config: Optional[ServiceConfig] = None,
    ledger: Optional[EntitlementLedger] = None,
    context: Optional[ProvisionerContext] = None,
):
    """Create provisioner application."""
    service = ProvisionerService(config, ledger, context)
    return service.app


if __name__ == "__main__":
    service = ProvisionerService()
    service.run()
