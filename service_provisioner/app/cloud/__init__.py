"""
Cloud adapters.

Every adapter implements create/describe/destroy over a tier's capability
class; the machine type for each tier is provider specific. Instances are
bootstrapped with the same hardening script on every provider.
"""

from .aws import AWSEC2Adapter
from .base import CloudAdapter, InstanceHandle
from .bootstrap import render_bootstrap_script, validate_public_key
from .factory import create_cloud_adapter
from .gcp import GCPComputeAdapter
from .keys import SSHKeyPair, generate_ssh_keypair, load_ssh_keypair
from .local import LocalCloudAdapter

__all__ = [
    "CloudAdapter",
    "InstanceHandle",
    "GCPComputeAdapter",
    "AWSEC2Adapter",
    "LocalCloudAdapter",
    "create_cloud_adapter",
    "SSHKeyPair",
    "generate_ssh_keypair",
    "load_ssh_keypair",
    "render_bootstrap_script",
    "validate_public_key",
]
