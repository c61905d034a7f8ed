"""
Fulfillment status: what the provisioner has done for each entitlement.

Backends share the StatusStore interface; which one is used is a
configuration choice (postgres, redis or memory).
"""

from .models import (
    RECOVERABLE_STATUSES,
    RETRYABLE_STATUSES,
    SETTLED_STATUSES,
    FulfillmentRecord,
    FulfillmentStatus,
)
from .postgres_store import PostgresStatusStore
from .redis_store import RedisStatusStore
from .store import InMemoryStatusStore, StatusStore

__all__ = [
    "FulfillmentRecord",
    "FulfillmentStatus",
    "SETTLED_STATUSES",
    "RETRYABLE_STATUSES",
    "RECOVERABLE_STATUSES",
    "StatusStore",
    "InMemoryStatusStore",
    "RedisStatusStore",
    "PostgresStatusStore",
]
