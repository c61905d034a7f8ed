"""
Ownership registry: entitlement id -> owner, with a per-owner index.
"""

from typing import Dict, List, Set

from shared.errors import NotFoundError, ValidationError


class OwnershipRegistry:
    """Tracks who owns which entitlement id.

    Ownership is independent of fulfillment status; the registry knows
    nothing about tiers or expiry.
    """

    def __init__(self):
        self._owners: Dict[int, str] = {}
        self._by_owner: Dict[str, Set[int]] = {}

    def mint(self, entitlement_id: int, owner: str) -> None:
        if not owner:
            raise ValidationError("Owner identity is required")
        if entitlement_id in self._owners:
            raise ValidationError("Entitlement id already minted", {"id": entitlement_id})
        self._owners[entitlement_id] = owner
        self._by_owner.setdefault(owner, set()).add(entitlement_id)

    def burn(self, entitlement_id: int) -> None:
        owner = self.owner_of(entitlement_id)
        del self._owners[entitlement_id]
        self._drop_index(owner, entitlement_id)

    def owner_of(self, entitlement_id: int) -> str:
        try:
            return self._owners[entitlement_id]
        except KeyError:
            raise NotFoundError("Entitlement does not exist", {"id": entitlement_id}) from None

    def exists(self, entitlement_id: int) -> bool:
        return entitlement_id in self._owners

    def transfer(self, entitlement_id: int, new_owner: str) -> str:
        """Move an id to ``new_owner``; returns the previous owner."""
        if not new_owner:
            raise ValidationError("New owner identity is required")
        previous = self.owner_of(entitlement_id)
        self._owners[entitlement_id] = new_owner
        self._drop_index(previous, entitlement_id)
        self._by_owner.setdefault(new_owner, set()).add(entitlement_id)
        return previous

    def ids_of(self, owner: str) -> List[int]:
        return sorted(self._by_owner.get(owner, ()))

    def balance_of(self, owner: str) -> int:
        return len(self._by_owner.get(owner, ()))

    def _drop_index(self, owner: str, entitlement_id: int) -> None:
        ids = self._by_owner.get(owner)
        if ids is None:
            return
        ids.discard(entitlement_id)
        if not ids:
            del self._by_owner[owner]
