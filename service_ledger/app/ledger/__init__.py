"""
Ledger state machine components.

The engine composes independent parts instead of inheriting them: an
ownership registry, a pause gate, a per-id reentrancy guard and a
stablecoin token used for payment capture.
"""

from .engine import EntitlementLedger
from .guards import PauseGate, ReentrancyGuard
from .ownership import OwnershipRegistry
from .token import StablecoinToken

__all__ = [
    "EntitlementLedger",
    "OwnershipRegistry",
    "PauseGate",
    "ReentrancyGuard",
    "StablecoinToken",
]
