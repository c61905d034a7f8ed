"""
Cloud adapter interface.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shared.errors import ClawCloudException, CloudProviderError
from shared.logging import get_logger
from service_ledger.app.models import TierSpec

_KEY_INVALID = re.compile(r"[^a-z0-9-]")


@dataclass(frozen=True)
class InstanceHandle:
    """A created instance; the address may not be assigned yet."""
    instance_id: str
    network_address: Optional[str] = None


class CloudAdapter(ABC):
    """Creates, inspects and destroys instances on one provider.

    Provider SDKs are blocking, so every call runs in a worker thread under
    an explicit timeout. SDK failures surface as ``CloudProviderError``.

    Creation is keyed: ``create`` with a creation key the provider has
    already seen returns the instance made under it, and ``find`` looks
    that instance up without creating anything.
    """

    provider_name = "abstract"

    def __init__(self, timeout_seconds: float = 120.0, name_prefix: str = "clawcloud"):
        self.timeout_seconds = timeout_seconds
        self.name_prefix = name_prefix
        self.logger = get_logger(f"provisioner.cloud.{self.provider_name}")

    def creation_key(self, entitlement_id: int) -> str:
        """Stable creation key for an entitlement's instance."""
        return _KEY_INVALID.sub("-", f"{self.name_prefix}-{entitlement_id}".lower())[:63]

    @abstractmethod
    async def create(self, spec: TierSpec, ssh_public_key: str, labels: Dict[str, str],
                     creation_key: Optional[str] = None) -> InstanceHandle:
        """Create an instance bootstrapped with the hardening script."""

    @abstractmethod
    async def find(self, creation_key: str) -> Optional[InstanceHandle]:
        """Instance created under ``creation_key``, or None if there is none."""

    @abstractmethod
    async def describe(self, instance_id: str) -> Optional[str]:
        """Current public address, or None while unassigned."""

    @abstractmethod
    async def destroy(self, instance_id: str) -> bool:
        """Release the instance. An instance that no longer exists counts as released."""

    async def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self.logger.error("Cloud call timed out", operation=operation, timeout=self.timeout_seconds)
            raise CloudProviderError(
                self.provider_name,
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from e
        except ClawCloudException:
            raise
        except Exception as e:
            self.logger.error("Cloud call failed", operation=operation, error=str(e))
            raise CloudProviderError(self.provider_name, f"{operation} failed: {e}") from e
