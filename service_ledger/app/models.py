"""
Entitlement data models for the Ledger.

These types are the ledger's public contract: the provisioner imports them
to read entitlements and events.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Dict, Any, List

from pydantic import BaseModel, Field

# Fixed-point stablecoin unit: 1 USDC == 1_000_000
USDC_DECIMALS = 6
USDC_UNIT = 10 ** USDC_DECIMALS

MONTH_SECONDS = 2_629_800        # average month, 30.4375 days
GRACE_PERIOD = 7 * 24 * 60 * 60  # 7 days
MIN_DURATION_UNITS = 1
MAX_DURATION_UNITS = 12


class Tier(IntEnum):
    """Compute tiers, indexed as on the ledger."""
    MICRO = 0
    SMALL = 1
    MEDIUM = 2
    LARGE = 3
    XLARGE = 4


@dataclass(frozen=True)
class TierSpec:
    """Capability class of a tier (provider independent)."""
    tier: Tier
    vcpu: int
    ram_gb: int
    disk_gb: int
    monthly_price: int


TIER_SPECS: Dict[Tier, TierSpec] = {
    Tier.MICRO: TierSpec(Tier.MICRO, vcpu=1, ram_gb=1, disk_gb=20, monthly_price=5 * USDC_UNIT),
    Tier.SMALL: TierSpec(Tier.SMALL, vcpu=2, ram_gb=2, disk_gb=40, monthly_price=10 * USDC_UNIT),
    Tier.MEDIUM: TierSpec(Tier.MEDIUM, vcpu=4, ram_gb=4, disk_gb=80, monthly_price=25 * USDC_UNIT),
    Tier.LARGE: TierSpec(Tier.LARGE, vcpu=8, ram_gb=8, disk_gb=160, monthly_price=50 * USDC_UNIT),
    Tier.XLARGE: TierSpec(Tier.XLARGE, vcpu=16, ram_gb=16, disk_gb=320, monthly_price=100 * USDC_UNIT),
}


def tier_price(tier: Tier) -> int:
    """Monthly price of a tier in 6-decimal units."""
    return TIER_SPECS[Tier(tier)].monthly_price


def total_cost(tier: Tier, duration_units: int) -> int:
    """Exact integer cost of ``duration_units`` months of ``tier``."""
    return tier_price(tier) * duration_units


class EntitlementStatus(str, Enum):
    """Ledger-side fulfillment status."""
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class EventKind(str, Enum):
    """Kinds of events emitted by the ledger."""
    PURCHASED = "purchased"
    PROVISIONED = "provisioned"
    RENEWED = "renewed"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"
    TERMINATED = "terminated"
    NETWORK_ADDRESS_UPDATED = "network_address_updated"
    TRANSFERRED = "transferred"


@dataclass
class Entitlement:
    """One entitlement record held by the ledger."""
    id: int
    owner: str
    tier: Tier
    purchased_at: int
    expires_at: int
    duration_units: int
    status: EntitlementStatus = EntitlementStatus.PROVISIONING
    instance_id: str = ""
    network_address: str = ""
    provisioned_at: int = 0
    last_renewal_at: int = 0
    ever_provisioned: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def is_active(self, now: int) -> bool:
        return self.status == EntitlementStatus.ACTIVE and not self.is_expired(now)

    def to_dict(self, now: int) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = int(self.tier)
        data["status"] = self.status.value
        data["active"] = self.is_active(now)
        data["expired"] = self.is_expired(now)
        return data


@dataclass(frozen=True)
class LedgerEvent:
    """An event committed by the ledger.

    ``sequence`` is assigned by the ledger, starts at 1 and increases by one
    per committed event.
    """
    sequence: int
    kind: EventKind
    entitlement_id: int
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"{self.entitlement_id}:{self.kind.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "kind": self.kind.value,
            "entitlement_id": self.entitlement_id,
            "timestamp": self.timestamp,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEvent":
        return cls(
            sequence=int(data["sequence"]),
            kind=EventKind(data["kind"]),
            entitlement_id=int(data["entitlement_id"]),
            timestamp=int(data["timestamp"]),
            data=dict(data.get("data") or {}),
        )


class PurchaseRequest(BaseModel):
    """Request model for a purchase."""
    tier: int = Field(..., description="Tier index (0-4)")
    duration_units: int = Field(..., description="Months to purchase (1-12)")


class ProvisionedRequest(BaseModel):
    """Provisioning write-back."""
    instance_id: str = Field(..., description="Cloud instance identifier")
    network_address: str = Field(..., description="Routable network address")


class RenewRequest(BaseModel):
    """Renewal request."""
    additional_units: int = Field(..., description="Months to add (1-12)")


class NetworkAddressRequest(BaseModel):
    """Network address migration."""
    network_address: str = Field(..., description="New routable network address")


class TransferRequest(BaseModel):
    """Ownership transfer."""
    new_owner: str = Field(..., description="Identity of the new owner")


class EntitlementResponse(BaseModel):
    """Entitlement details as returned by the ledger query interface."""
    id: int
    owner: str
    tier: int
    purchased_at: int
    expires_at: int
    duration_units: int
    status: EntitlementStatus
    instance_id: str = ""
    network_address: str = ""
    provisioned_at: int = 0
    last_renewal_at: int = 0
    ever_provisioned: bool = False
    active: bool = False
    expired: bool = False


class EventPage(BaseModel):
    """A page of ledger events after a cursor."""
    events: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: int = 0
    head: int = 0


class PackageResponse(BaseModel):
    """A purchasable tier."""
    tier: str
    tier_index: int
    price_monthly: int
    vcpu: int
    ram_gb: int
    disk_gb: int
