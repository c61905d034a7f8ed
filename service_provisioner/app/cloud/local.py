"""
In-memory cloud adapter for development and tests.
"""

from typing import Dict, List, Optional

from shared.errors import CloudProviderError
from service_ledger.app.models import TierSpec

from .base import CloudAdapter, InstanceHandle
from .bootstrap import render_bootstrap_script


class LocalCloudAdapter(CloudAdapter):
    """Pretends to run instances.

    An instance gets its address after ``address_after`` describe calls;
    ``None`` means it never gets one. A repeated creation key returns the
    instance already made under it.
    """

    provider_name = "local"

    def __init__(self, address_after: Optional[int] = 1, fail_create: bool = False,
                 fail_destroy: bool = False):
        super().__init__(timeout_seconds=0)
        self.address_after = address_after
        self.fail_create = fail_create
        self.fail_destroy = fail_destroy

        self.instances: Dict[str, Dict] = {}
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.by_key: Dict[str, str] = {}
        self.describe_calls = 0

    def _address_for(self, number: int) -> str:
        return f"10.64.{number // 256}.{number % 256}"

    async def create(self, spec: TierSpec, ssh_public_key: str, labels: Dict[str, str],
                     creation_key: Optional[str] = None) -> InstanceHandle:
        if self.fail_create:
            raise CloudProviderError(self.provider_name, "create failed")

        existing = await self.find(creation_key) if creation_key else None
        if existing is not None:
            self.logger.warning("Instance already exists", instance_id=existing.instance_id)
            return existing

        number = len(self.created) + 1
        instance_id = f"local-{number}"
        self.instances[instance_id] = {
            "spec": spec,
            "labels": dict(labels),
            "user_data": render_bootstrap_script(ssh_public_key),
            "describes": 0,
            "address": self._address_for(number),
        }
        self.created.append(instance_id)
        if creation_key:
            self.by_key[creation_key] = instance_id
        self.logger.info("Local instance created", instance_id=instance_id, tier=spec.tier.name)

        address = self.instances[instance_id]["address"] if self.address_after == 0 else None
        return InstanceHandle(instance_id=instance_id, network_address=address)

    async def find(self, creation_key: str) -> Optional[InstanceHandle]:
        instance_id = self.by_key.get(creation_key)
        instance = self.instances.get(instance_id) if instance_id else None
        if instance is None:
            return None
        address = instance["address"] if self.address_after == 0 else None
        return InstanceHandle(instance_id=instance_id, network_address=address)

    async def describe(self, instance_id: str) -> Optional[str]:
        self.describe_calls += 1
        instance = self.instances.get(instance_id)
        if instance is None:
            raise CloudProviderError(self.provider_name, f"unknown instance {instance_id}")

        instance["describes"] += 1
        if self.address_after is None or instance["describes"] < self.address_after:
            return None
        return instance["address"]

    async def destroy(self, instance_id: str) -> bool:
        if self.fail_destroy:
            raise CloudProviderError(self.provider_name, "destroy failed")

        self.instances.pop(instance_id, None)
        self.destroyed.append(instance_id)
        self.logger.info("Local instance destroyed", instance_id=instance_id)
        return True
