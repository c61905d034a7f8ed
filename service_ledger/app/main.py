"""
Ledger node service for ClawCloud.

Serves the EntitlementLedger over HTTP. The caller's identity travels in
the ``X-Ledger-Caller`` header; the ledger itself enforces who may do what.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from fastapi import Header, Query
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ClawCloudException, NotFoundError

from .ledger import EntitlementLedger, StablecoinToken
from .models import (
    EntitlementResponse, EventKind, EventPage, NetworkAddressRequest,
    PackageResponse, ProvisionedRequest, PurchaseRequest, RenewRequest,
    TIER_SPECS, TransferRequest,
)
from .publishing.kafka_publisher import LedgerEventPublisher

CALLER_HEADER = "X-Ledger-Caller"


class ApproveRequest(BaseModel):
    """Allow the ledger to pull stablecoin from the caller."""
    amount: int = Field(..., ge=0, description="Allowance in 6-decimal units")


class MintRequest(BaseModel):
    """Credit a wallet (local environment only)."""
    holder: str = Field(..., description="Wallet identity")
    amount: int = Field(..., gt=0, description="Amount in 6-decimal units")


class LedgerService(BaseService):
    """Ledger node implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, ledger: Optional[EntitlementLedger] = None):
        super().__init__("ledger", 8020, config)

        if ledger is None:
            ledger = EntitlementLedger(
                token=StablecoinToken(),
                treasury=self.config.treasury_identity,
                provisioner=self.config.provisioner_identity,
                admin=self.config.admin_identity,
            )
        self.ledger = ledger
        self.publisher: Optional[LedgerEventPublisher] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._setup_ledger_routes()

    def _execute(self, operation: str, func: Callable[..., Any], *args) -> Any:
        """Run one ledger call and count its outcome."""
        try:
            result = func(*args)
        except ClawCloudException as e:
            self.metrics.increment_counter("ledger_operations_total", operation=operation, outcome=e.code.lower())
            raise
        self.metrics.increment_counter("ledger_operations_total", operation=operation, outcome="ok")
        self.metrics.set_gauge("entitlements_active", self.ledger.size)
        return result

    def _view(self, entitlement_id: int) -> EntitlementResponse:
        return EntitlementResponse(**self.ledger.describe(entitlement_id))

    def _setup_ledger_routes(self):
        """Set up ledger-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "ledger",
                "message": "ClawCloud - Entitlement Ledger",
                "version": "1.0.0",
                "head": self.ledger.head,
                "paused": self.ledger.pause_gate.paused,
            }

        @self.app.get("/packages", response_model=List[PackageResponse])
        async def list_packages():
            """Purchasable tiers and their fixed monthly prices."""
            return [
                PackageResponse(
                    tier=spec.tier.name,
                    tier_index=int(spec.tier),
                    price_monthly=spec.monthly_price,
                    vcpu=spec.vcpu,
                    ram_gb=spec.ram_gb,
                    disk_gb=spec.disk_gb,
                )
                for spec in TIER_SPECS.values()
            ]

        @self.app.post("/entitlements", response_model=EntitlementResponse, status_code=201)
        async def purchase(request: PurchaseRequest, caller: str = Header(..., alias=CALLER_HEADER)):
            """Purchase an entitlement; payment is captured from the caller."""
            entitlement = self._execute("purchase", self.ledger.purchase, caller, request.tier, request.duration_units)
            return self._view(entitlement.id)

        @self.app.get("/entitlements/{entitlement_id}", response_model=EntitlementResponse)
        async def get_entitlement(entitlement_id: int):
            """Entitlement details."""
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/provisioned", response_model=EntitlementResponse)
        async def set_provisioned(
            entitlement_id: int,
            request: ProvisionedRequest,
            caller: str = Header(..., alias=CALLER_HEADER)
        ):
            """Provisioner write-back of the instance identity."""
            self._execute(
                "set_provisioned", self.ledger.set_provisioned,
                caller, entitlement_id, request.instance_id, request.network_address
            )
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/renew", response_model=EntitlementResponse)
        async def renew(entitlement_id: int, request: RenewRequest, caller: str = Header(..., alias=CALLER_HEADER)):
            self._execute("renew", self.ledger.renew, caller, entitlement_id, request.additional_units)
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/suspend", response_model=EntitlementResponse)
        async def suspend(entitlement_id: int, caller: str = Header(..., alias=CALLER_HEADER)):
            self._execute("suspend", self.ledger.suspend, caller, entitlement_id)
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/reactivate", response_model=EntitlementResponse)
        async def reactivate(entitlement_id: int, caller: str = Header(..., alias=CALLER_HEADER)):
            self._execute("reactivate", self.ledger.reactivate, caller, entitlement_id)
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/terminate")
        async def terminate(entitlement_id: int, caller: str = Header(..., alias=CALLER_HEADER)):
            """Terminate and delete the entitlement."""
            self._execute("terminate", self.ledger.terminate, caller, entitlement_id)
            return {"id": entitlement_id, "terminated": True}

        @self.app.post("/entitlements/{entitlement_id}/network-address", response_model=EntitlementResponse)
        async def update_network_address(
            entitlement_id: int,
            request: NetworkAddressRequest,
            caller: str = Header(..., alias=CALLER_HEADER)
        ):
            self._execute(
                "update_network_address", self.ledger.update_network_address,
                caller, entitlement_id, request.network_address
            )
            return self._view(entitlement_id)

        @self.app.post("/entitlements/{entitlement_id}/transfer", response_model=EntitlementResponse)
        async def transfer(entitlement_id: int, request: TransferRequest, caller: str = Header(..., alias=CALLER_HEADER)):
            self._execute("transfer", self.ledger.transfer, caller, entitlement_id, request.new_owner)
            return self._view(entitlement_id)

        @self.app.get("/owners/{owner}/entitlements")
        async def list_owner_entitlements(owner: str):
            """Entitlement ids held by an owner."""
            return {"owner": owner, "ids": self.ledger.get_ids_by_owner(owner)}

        @self.app.get("/events", response_model=EventPage)
        async def list_events(
            after: int = Query(0, ge=0),
            kinds: Optional[List[EventKind]] = Query(None),
            limit: int = Query(100, ge=1, le=1000)
        ):
            """Committed events after a cursor, oldest first."""
            events = self.ledger.events_since(after, kinds, limit)
            head = self.ledger.head
            # When fewer than `limit` matched, the whole range up to head was scanned
            next_cursor = events[-1].sequence if len(events) == limit else max(after, head)
            return EventPage(
                events=[e.to_dict() for e in events],
                next_cursor=next_cursor,
                head=head,
            )

        @self.app.post("/token/approve")
        async def approve(request: ApproveRequest, caller: str = Header(..., alias=CALLER_HEADER)):
            """Approve the ledger as spender of the caller's stablecoin."""
            self.ledger.token.approve(caller, self.ledger.address, request.amount)
            return {"holder": caller, "spender": self.ledger.address, "allowance": request.amount}

        @self.app.get("/token/balance/{holder}")
        async def balance(holder: str):
            return {
                "holder": holder,
                "balance": self.ledger.token.balance_of(holder),
                "allowance": self.ledger.token.allowance(holder, self.ledger.address),
            }

        @self.app.post("/token/mint")
        async def mint(request: MintRequest):
            """Fund a wallet; only available in the local environment."""
            if self.config.env != "local":
                raise NotFoundError("Minting is disabled outside the local environment")
            self.ledger.token.mint(request.holder, request.amount)
            return {"holder": request.holder, "balance": self.ledger.token.balance_of(request.holder)}

        @self.app.post("/admin/pause")
        async def pause(caller: str = Header(..., alias=CALLER_HEADER)):
            self.ledger.pause(caller)
            return {"paused": True}

        @self.app.post("/admin/unpause")
        async def unpause(caller: str = Header(..., alias=CALLER_HEADER)):
            self.ledger.unpause(caller)
            return {"paused": False}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check ledger node dependencies."""
        dependencies = {}
        if self.publisher is not None:
            dependencies["kafka"] = "ok" if self.publisher.producer is not None else "error"
        return dependencies

    async def start(self):
        """Start ledger node components."""
        if self.config.ledger_publish_kafka:
            self.publisher = LedgerEventPublisher(
                self.config.kafka_bootstrap,
                self.config.ledger_events_topic,
                max_block_ms=self.config.ledger_publish_max_block_ms
            )
            self.publisher.start()
            self._unsubscribe = self.ledger.subscribe(self.publisher.publish)

        self.logger.info("Ledger node started", head=self.ledger.head)

    async def stop(self):
        """Stop ledger node components."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.publisher:
            await asyncio.to_thread(self.publisher.stop)

        self.logger.info("Ledger node stopped")


def create_app(config: Optional[ServiceConfig] = None, ledger: Optional[EntitlementLedger] = None):
    """Create ledger node application."""
    service = LedgerService(config, ledger)
    return service.app


if __name__ == "__main__":
    service = LedgerService()
    service.run()
