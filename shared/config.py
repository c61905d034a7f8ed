"""
Shared configuration management for ClawCloud services.

Every setting can be overridden from the environment with the
``CLAWCLOUD_`` prefix (``CLAWCLOUD_CLOUD_PROVIDER=aws``) or from a ``.env``
file in the working directory.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAWCLOUD_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/clawcloud"
    kafka_bootstrap: str = "localhost:9092"
    ledger_service_url: str = "http://localhost:8020"
    ledger_publish_kafka: bool = False
    ledger_publish_max_block_ms: int = 5000

    # Ledger identities
    treasury_identity: str = "treasury"
    provisioner_identity: str = "provisioner"
    admin_identity: str = "admin"

    # Event observation
    event_source: str = Field(default="poll", description="poll | subscribe | kafka")
    ledger_events_topic: str = "clawcloud.ledger.events.v1"
    kafka_group_id: str = "clawcloud-provisioner"
    event_poll_interval_seconds: float = 2.0
    event_batch_size: int = 100

    # Fulfillment state
    status_store: str = Field(default="postgres", description="postgres | redis | memory")
    checkpoint_store: str = Field(default="redis", description="redis | memory")
    credential_key: Optional[str] = None
    distributed_locks: bool = False
    lock_ttl_seconds: int = 600

    # Reconciler
    max_concurrent_reconciliations: int = 8
    reconcile_attempts: int = 3
    reconcile_retry_delay_seconds: float = 1.0
    address_poll_interval_seconds: float = 2.0
    address_poll_attempts: int = 30
    cloud_call_timeout_seconds: float = 120.0

    # Cloud provider selection (static)
    cloud_provider: str = Field(default="gcp", description="gcp | aws | local")
    instance_name_prefix: str = "clawcloud"

    gcp_project_id: Optional[str] = None
    gcp_zone: str = "us-central1-a"
    gcp_credentials_file: Optional[str] = None
    gcp_source_image: str = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"

    aws_region: str = "us-east-1"
    aws_ami_id: str = "ami-0c7217cdde317cfec"
    aws_security_group_id: Optional[str] = None
    aws_subnet_id: Optional[str] = None


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
