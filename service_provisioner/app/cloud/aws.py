"""
Amazon EC2 adapter.
"""

from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from service_ledger.app.models import Tier, TierSpec

from .base import CloudAdapter, InstanceHandle
from .bootstrap import render_bootstrap_script

INSTANCE_TYPES = {
    Tier.MICRO: "t3.micro",
    Tier.SMALL: "t3.small",
    Tier.MEDIUM: "t3.medium",
    Tier.LARGE: "t3.large",
    Tier.XLARGE: "t3.xlarge",
}

LIVE_STATES = ["pending", "running", "stopping", "stopped"]
NOT_FOUND_CODES = ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed")


class AWSEC2Adapter(CloudAdapter):
    """Instances on EC2 with a gp3 root volume and IMDSv2 enforced."""

    provider_name = "aws"

    def __init__(
        self,
        region: str = "us-east-1",
        ami_id: Optional[str] = None,
        security_group_id: Optional[str] = None,
        subnet_id: Optional[str] = None,
        name_prefix: str = "clawcloud",
        timeout_seconds: float = 120.0,
        client: Optional[Any] = None,
    ):
        super().__init__(timeout_seconds, name_prefix)
        self.region = region
        self.ami_id = ami_id
        self.security_group_id = security_group_id
        self.subnet_id = subnet_id
        self._ec2 = client

    def _client(self):
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.region)
        return self._ec2

    def build_run_request(self, spec: TierSpec, ssh_public_key: str, labels: Dict[str, str],
                          creation_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.ami_id:
            raise ValueError("aws_ami_id is not configured")

        entitlement_id = labels.get("clawcloud-entitlement-id", "instance")
        tags: List[Dict[str, str]] = [{"Key": "Name", "Value": f"{self.name_prefix}-{entitlement_id}"}]
        tags.extend({"Key": k, "Value": v} for k, v in labels.items())

        request: Dict[str, Any] = {
            "ImageId": self.ami_id,
            "InstanceType": INSTANCE_TYPES[spec.tier],
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": render_bootstrap_script(ssh_public_key),
            "BlockDeviceMappings": [{
                "DeviceName": "/dev/sda1",
                "Ebs": {
                    "VolumeSize": spec.disk_gb,
                    "VolumeType": "gp3",
                    "DeleteOnTermination": True,
                },
            }],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
            "MetadataOptions": {"HttpTokens": "required", "HttpEndpoint": "enabled"},
        }
        if self.security_group_id:
            request["SecurityGroupIds"] = [self.security_group_id]
        if self.subnet_id:
            request["SubnetId"] = self.subnet_id
        if creation_key:
            # EC2 returns the original reservation for a repeated token
            request["ClientToken"] = creation_key
        return request

    def _run(self, request: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client().run_instances(**request)
        return response["Instances"][0]

    def _public_ip(self, instance_id: str) -> Optional[str]:
        response = self._client().describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("PublicIpAddress"):
                    return instance["PublicIpAddress"]
        return None

    def _by_token(self, creation_key: str) -> Optional[InstanceHandle]:
        response = self._client().describe_instances(Filters=[
            {"Name": "client-token", "Values": [creation_key]},
            {"Name": "instance-state-name", "Values": LIVE_STATES},
        ])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return InstanceHandle(
                    instance_id=instance["InstanceId"],
                    network_address=instance.get("PublicIpAddress")
                )
        return None

    def _terminate(self, instance_id: str) -> bool:
        try:
            self._client().terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                self.logger.warning("Instance already gone", instance_id=instance_id)
                return True
            raise
        return True

    async def create(self, spec: TierSpec, ssh_public_key: str, labels: Dict[str, str],
                     creation_key: Optional[str] = None) -> InstanceHandle:
        request = self.build_run_request(spec, ssh_public_key, labels, creation_key)
        instance = await self._call("create", self._run, request)

        instance_id = instance["InstanceId"]
        self.logger.info("EC2 instance created", instance_id=instance_id, region=self.region, tier=spec.tier.name)
        return InstanceHandle(instance_id=instance_id, network_address=instance.get("PublicIpAddress"))

    async def find(self, creation_key: str) -> Optional[InstanceHandle]:
        return await self._call("find", self._by_token, creation_key)

    async def describe(self, instance_id: str) -> Optional[str]:
        return await self._call("describe", self._public_ip, instance_id)

    async def destroy(self, instance_id: str) -> bool:
        result = await self._call("destroy", self._terminate, instance_id)
        self.logger.info("EC2 instance terminated", instance_id=instance_id)
        return result
