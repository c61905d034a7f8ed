"""
Cloud adapter selection from configuration.
"""

from shared.config import BaseConfig
from shared.errors import ValidationError

from .aws import AWSEC2Adapter
from .base import CloudAdapter
from .gcp import GCPComputeAdapter
from .local import LocalCloudAdapter


def create_cloud_adapter(config: BaseConfig) -> CloudAdapter:
    """Build the adapter for ``config.cloud_provider``."""
    provider = config.cloud_provider.lower()

    if provider == "gcp":
        if not config.gcp_project_id:
            raise ValidationError("gcp_project_id is required for the gcp provider")
        return GCPComputeAdapter(
            project_id=config.gcp_project_id,
            zone=config.gcp_zone,
            credentials_file=config.gcp_credentials_file,
            source_image=config.gcp_source_image,
            name_prefix=config.instance_name_prefix,
            timeout_seconds=config.cloud_call_timeout_seconds,
        )

    if provider == "aws":
        if not config.aws_ami_id:
            raise ValidationError("aws_ami_id is required for the aws provider")
        return AWSEC2Adapter(
            region=config.aws_region,
            ami_id=config.aws_ami_id,
            security_group_id=config.aws_security_group_id,
            subnet_id=config.aws_subnet_id,
            name_prefix=config.instance_name_prefix,
            timeout_seconds=config.cloud_call_timeout_seconds,
        )

    if provider == "local":
        return LocalCloudAdapter()

    raise ValidationError(f"Unsupported cloud provider: {config.cloud_provider}")
