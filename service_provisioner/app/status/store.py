"""
Status store interface and the in-memory backend.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import FulfillmentRecord, FulfillmentStatus


class StatusStore(ABC):
    """Durable fulfillment records keyed by entitlement id."""

    name = "abstract"

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get(self, entitlement_id: int) -> Optional[FulfillmentRecord]:
        ...

    @abstractmethod
    async def set(self, record: FulfillmentRecord) -> None:
        ...

    @abstractmethod
    async def list_by_status(self, *statuses: FulfillmentStatus) -> List[FulfillmentRecord]:
        ...

    async def health_check(self) -> bool:
        return True


class InMemoryStatusStore(StatusStore):
    """Process-local store for development and tests."""

    name = "memory"

    def __init__(self):
        self.records: Dict[int, FulfillmentRecord] = {}

    async def get(self, entitlement_id: int) -> Optional[FulfillmentRecord]:
        return self.records.get(entitlement_id)

    async def set(self, record: FulfillmentRecord) -> None:
        self.records[record.entitlement_id] = record

    async def list_by_status(self, *statuses: FulfillmentStatus) -> List[FulfillmentRecord]:
        wanted = set(statuses)
        return sorted(
            (r for r in self.records.values() if r.status in wanted),
            key=lambda r: r.entitlement_id
        )
