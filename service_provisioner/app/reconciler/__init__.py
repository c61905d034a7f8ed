"""
Provisioning reconciliation.

Modules of interest:
- locks: Per-entitlement exclusivity (in-process, optionally Redis backed).
- reconciler: Purchased/Terminated handling, retry and startup recovery.
"""

from .locks import ExclusivityManager, KeyedLock, RedisExclusivityToken
from .reconciler import ProvisioningReconciler

__all__ = [
    "ExclusivityManager",
    "KeyedLock",
    "RedisExclusivityToken",
    "ProvisioningReconciler",
]
