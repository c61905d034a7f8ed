"""
Google Compute Engine adapter.
"""

import re
from typing import Any, Dict, Optional

from google.api_core.exceptions import Conflict, NotFound
from google.cloud import compute_v1

from service_ledger.app.models import Tier, TierSpec

from .base import CloudAdapter, InstanceHandle
from .bootstrap import render_bootstrap_script

MACHINE_TYPES = {
    Tier.MICRO: "e2-micro",
    Tier.SMALL: "e2-small",
    Tier.MEDIUM: "e2-medium",
    Tier.LARGE: "e2-standard-4",
    Tier.XLARGE: "e2-standard-8",
}

DEFAULT_SOURCE_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
NETWORK_TAGS = ["clawcloud", "http-server", "https-server"]

_LABEL_INVALID = re.compile(r"[^a-z0-9_-]")


def sanitize_label(value: str) -> str:
    """GCP labels allow lowercase letters, digits, ``_`` and ``-``, up to 63 chars."""
    return _LABEL_INVALID.sub("-", value.lower())[:63]


class GCPComputeAdapter(CloudAdapter):
    """Instances on GCE with a one-to-one NAT public address."""

    provider_name = "gcp"

    def __init__(
        self,
        project_id: str,
        zone: str = "us-central1-a",
        credentials_file: Optional[str] = None,
        source_image: Optional[str] = None,
        name_prefix: str = "clawcloud",
        timeout_seconds: float = 120.0,
        instances_client: Optional[Any] = None,
    ):
        super().__init__(timeout_seconds, name_prefix)
        self.project_id = project_id
        self.zone = zone
        self.credentials_file = credentials_file
        self.source_image = source_image or DEFAULT_SOURCE_IMAGE
        self._instances = instances_client

    def _client(self):
        if self._instances is None:
            if self.credentials_file:
                self._instances = compute_v1.InstancesClient.from_service_account_file(self.credentials_file)
            else:
                self._instances = compute_v1.InstancesClient()
        return self._instances

    def build_instance_resource(self, name: str, spec: TierSpec, ssh_public_key: str,
                                labels: Dict[str, str]) -> Dict[str, Any]:
        return {
            "name": name,
            "machine_type": f"zones/{self.zone}/machineTypes/{MACHINE_TYPES[spec.tier]}",
            "disks": [{
                "boot": True,
                "auto_delete": True,
                "initialize_params": {
                    "source_image": self.source_image,
                    "disk_size_gb": spec.disk_gb,
                },
            }],
            "network_interfaces": [{
                "network": "global/networks/default",
                "access_configs": [{
                    "type_": "ONE_TO_ONE_NAT",
                    "name": "External NAT",
                }],
            }],
            "metadata": {
                "items": [{
                    "key": "startup-script",
                    "value": render_bootstrap_script(ssh_public_key),
                }],
            },
            "tags": {"items": list(NETWORK_TAGS)},
            "labels": {sanitize_label(k): sanitize_label(v) for k, v in labels.items()},
        }

    def _insert(self, resource: Dict[str, Any]) -> None:
        try:
            operation = self._client().insert(
                project=self.project_id,
                zone=self.zone,
                instance_resource=resource,
            )
        except Conflict:
            # Same name means an earlier attempt for this entitlement got through
            self.logger.warning("Instance already exists", instance_id=resource["name"])
            return
        operation.result(timeout=self.timeout_seconds)

    def _lookup(self, name: str) -> Optional[InstanceHandle]:
        try:
            address = self._nat_ip(name)
        except NotFound:
            return None
        return InstanceHandle(instance_id=name, network_address=address)

    def _nat_ip(self, name: str) -> Optional[str]:
        instance = self._client().get(project=self.project_id, zone=self.zone, instance=name)
        for interface in instance.network_interfaces:
            for access_config in interface.access_configs:
                if access_config.nat_i_p:
                    return access_config.nat_i_p
        return None

    def _delete(self, name: str) -> bool:
        try:
            operation = self._client().delete(project=self.project_id, zone=self.zone, instance=name)
        except NotFound:
            self.logger.warning("Instance already gone", instance_id=name)
            return True
        operation.result(timeout=self.timeout_seconds)
        return True

    async def create(self, spec: TierSpec, ssh_public_key: str, labels: Dict[str, str],
                     creation_key: Optional[str] = None) -> InstanceHandle:
        name = creation_key or self.creation_key(labels.get("clawcloud-entitlement-id", "instance"))
        resource = self.build_instance_resource(name, spec, ssh_public_key, labels)

        await self._call("create", self._insert, resource)
        self.logger.info("GCE instance created", instance_id=name, zone=self.zone, tier=spec.tier.name)

        address = await self._call("describe", self._nat_ip, name)
        return InstanceHandle(instance_id=name, network_address=address)

    async def find(self, creation_key: str) -> Optional[InstanceHandle]:
        return await self._call("find", self._lookup, creation_key)

    async def describe(self, instance_id: str) -> Optional[str]:
        return await self._call("describe", self._nat_ip, instance_id)

    async def destroy(self, instance_id: str) -> bool:
        result = await self._call("destroy", self._delete, instance_id)
        self.logger.info("GCE instance destroyed", instance_id=instance_id)
        return result
