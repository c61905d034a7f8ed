"""
Fulfillment record models.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class FulfillmentStatus(str, Enum):
    """Off-chain fulfillment status of an entitlement."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RUNNING = "running"
    FAILED = "failed"
    ERROR = "error"
    INCONSISTENT = "inconsistent"
    UNKNOWN = "unknown"
    TERMINATED = "terminated"
    DESTROY_FAILED = "destroy_failed"


# Statuses the reconciler will not act on again for a Purchased event
SETTLED_STATUSES = frozenset({
    FulfillmentStatus.RUNNING,
    FulfillmentStatus.TERMINATED,
    FulfillmentStatus.DESTROY_FAILED,
    FulfillmentStatus.INCONSISTENT,
})

RETRYABLE_STATUSES = frozenset({
    FulfillmentStatus.FAILED,
    FulfillmentStatus.ERROR,
    FulfillmentStatus.UNKNOWN,
})

RECOVERABLE_STATUSES = (FulfillmentStatus.IN_PROGRESS, FulfillmentStatus.UNKNOWN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FulfillmentRecord(BaseModel):
    """Provisioner's view of one entitlement's instance."""
    entitlement_id: int = Field(..., description="Ledger entitlement id")
    status: FulfillmentStatus = Field(FulfillmentStatus.PENDING, description="Fulfillment status")
    provider: Optional[str] = Field(None, description="Cloud provider name")
    instance_id: Optional[str] = Field(None, description="Cloud instance identifier")
    creation_key: Optional[str] = Field(None, description="Provider idempotency key, saved before create")
    network_address: Optional[str] = Field(None, description="Instance network address")
    tier: Optional[int] = Field(None, description="Tier index")
    owner: Optional[str] = Field(None, description="Owner at purchase time")
    encrypted_private_key: Optional[str] = Field(None, description="Fernet-encrypted SSH private key")
    error: Optional[str] = Field(None, description="Last error message")
    attempts: int = Field(0, description="Provisioning attempts so far")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update time")

    def evolve(self, **changes: Any) -> "FulfillmentRecord":
        """Copy with changes applied and ``updated_at`` refreshed."""
        changes.setdefault("updated_at", utcnow())
        return self.model_copy(update=changes)

    def public_view(self) -> Dict[str, Any]:
        """Record without the encrypted key, for the operator API."""
        data = self.model_dump(mode="json", exclude={"encrypted_private_key"})
        data["has_credentials"] = self.encrypted_private_key is not None
        return data
