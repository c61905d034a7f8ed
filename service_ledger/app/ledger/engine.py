"""
Entitlement Ledger state machine.

States::

    PROVISIONING --set_provisioned--> ACTIVE <--suspend/reactivate--> SUSPENDED
    ACTIVE / SUSPENDED --terminate--> TERMINATED (record deleted)

Expiry is derived (``now >= expires_at``), never stored. Every mutating
entry point runs inside one ledger-wide lock so mutations are totally
ordered; inside it the pause gate is checked, then the per-id reentrancy
guard is entered, then inputs are validated, then payment is captured, and
only then is state changed.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from shared.errors import (
    AlreadyProvisionedError, AuthorizationError, GracePeriodExpiredError,
    InvalidStateError, NotFoundError, ValidationError,
)
from shared.logging import get_logger

from ..models import (
    Entitlement, EntitlementStatus, EventKind, LedgerEvent, Tier,
    GRACE_PERIOD, MAX_DURATION_UNITS, MIN_DURATION_UNITS, MONTH_SECONDS,
    total_cost,
)
from .guards import PauseGate, ReentrancyGuard
from .ownership import OwnershipRegistry
from .token import StablecoinToken

Subscriber = Callable[[LedgerEvent], None]


class EntitlementLedger:
    """Authoritative entitlement state, ownership and event log."""

    def __init__(
        self,
        token: StablecoinToken,
        treasury: str,
        provisioner: str,
        admin: str,
        address: str = "clawcloud-ledger",
        clock: Optional[Callable[[], float]] = None,
    ):
        self.token = token
        self.treasury = treasury
        self.provisioner = provisioner
        self.admin = admin
        # Identity buyers approve as spender of their stablecoin
        self.address = address
        self._clock = clock or time.time
        self.logger = get_logger("ledger.engine")

        self.ownership = OwnershipRegistry()
        self.pause_gate = PauseGate()
        self.guard = ReentrancyGuard()

        self._lock = threading.RLock()
        self._entitlements: Dict[int, Entitlement] = {}
        self._next_id = 1
        self._events: List[LedgerEvent] = []
        self._subscribers: List[Subscriber] = []

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def purchase(self, buyer: str, tier: int, duration_units: int) -> Entitlement:
        """Buy ``duration_units`` months of ``tier``; returns the new record."""
        with self._transaction():
            tier_value = self._validate_tier(tier)
            units = self._validate_units(duration_units, "duration_units")
            if not buyer:
                raise ValidationError("Buyer identity is required")
            cost = total_cost(tier_value, units)

            # Raises PaymentError with nothing changed
            self.token.transfer_from(self.address, buyer, self.treasury, cost)

            entitlement_id = self._next_id
            self._next_id += 1
            now = self._now()

            with self.guard.enter(entitlement_id):
                entitlement = Entitlement(
                    id=entitlement_id,
                    owner=buyer,
                    tier=tier_value,
                    purchased_at=now,
                    expires_at=now + units * MONTH_SECONDS,
                    duration_units=units,
                )
                self._entitlements[entitlement_id] = entitlement
                self.ownership.mint(entitlement_id, buyer)

                self.logger.info(
                    "Entitlement purchased",
                    entitlement_id=entitlement_id,
                    buyer=buyer,
                    tier=tier_value.name,
                    duration_units=units,
                    cost=cost
                )
                self._emit(EventKind.PURCHASED, entitlement_id, {
                    "buyer": buyer,
                    "tier": int(tier_value),
                    "duration_units": units,
                    "expires_at": entitlement.expires_at,
                    "cost": cost,
                })
                return replace(entitlement)

    def set_provisioned(self, caller: str, entitlement_id: int, instance_id: str, network_address: str) -> Entitlement:
        """One-shot write-back of the instance identity by the provisioner."""
        with self._transaction(entitlement_id):
            self._require_provisioner(caller)
            entitlement = self._get(entitlement_id)

            if entitlement.ever_provisioned:
                raise AlreadyProvisionedError(details={
                    "id": entitlement_id,
                    "instance_id": entitlement.instance_id,
                    "network_address": entitlement.network_address,
                })
            if entitlement.status != EntitlementStatus.PROVISIONING:
                raise InvalidStateError(
                    "Entitlement is not awaiting provisioning",
                    {"id": entitlement_id, "status": entitlement.status.value}
                )
            now = self._now()
            if entitlement.is_expired(now):
                raise InvalidStateError("Entitlement has expired", {"id": entitlement_id})
            if not instance_id or not network_address:
                raise ValidationError("instance_id and network_address must be non-empty")

            entitlement.instance_id = instance_id
            entitlement.network_address = network_address
            entitlement.status = EntitlementStatus.ACTIVE
            entitlement.provisioned_at = now
            entitlement.ever_provisioned = True

            self._emit(EventKind.PROVISIONED, entitlement_id, {
                "instance_id": instance_id,
                "network_address": network_address,
                "timestamp": now,
            })
            return replace(entitlement)

    def renew(self, caller: str, entitlement_id: int, additional_units: int) -> Entitlement:
        """Extend an entitlement; allowed until ``expires_at + GRACE_PERIOD``."""
        with self._transaction(entitlement_id):
            entitlement = self._get(entitlement_id)
            self._require_owner(caller, entitlement_id)
            units = self._validate_units(additional_units, "additional_units")

            if entitlement.status == EntitlementStatus.TERMINATED:
                raise InvalidStateError("Entitlement is terminated", {"id": entitlement_id})
            now = self._now()
            if now >= entitlement.expires_at + GRACE_PERIOD:
                raise GracePeriodExpiredError(details={
                    "id": entitlement_id,
                    "expires_at": entitlement.expires_at,
                    "grace_period": GRACE_PERIOD,
                })

            cost = total_cost(entitlement.tier, units)
            self.token.transfer_from(self.address, caller, self.treasury, cost)

            old_expires_at = entitlement.expires_at
            reactivated = False
            if entitlement.is_expired(now):
                entitlement.expires_at = now + units * MONTH_SECONDS
                if entitlement.status == EntitlementStatus.SUSPENDED:
                    entitlement.status = EntitlementStatus.ACTIVE
                    reactivated = True
            else:
                entitlement.expires_at = old_expires_at + units * MONTH_SECONDS
            entitlement.last_renewal_at = now

            self._emit(EventKind.RENEWED, entitlement_id, {
                "old_expires_at": old_expires_at,
                "new_expires_at": entitlement.expires_at,
                "cost": cost,
            })
            if reactivated:
                self._emit(EventKind.REACTIVATED, entitlement_id, {"timestamp": now, "by": caller})
            return replace(entitlement)

    def suspend(self, caller: str, entitlement_id: int) -> Entitlement:
        with self._transaction(entitlement_id):
            entitlement = self._get(entitlement_id)
            if caller != entitlement.owner and caller != self.provisioner:
                raise AuthorizationError("Only the owner or provisioner may suspend", {"id": entitlement_id})
            if entitlement.status != EntitlementStatus.ACTIVE:
                raise InvalidStateError(
                    "Only active entitlements can be suspended",
                    {"id": entitlement_id, "status": entitlement.status.value}
                )

            now = self._now()
            entitlement.status = EntitlementStatus.SUSPENDED
            self._emit(EventKind.SUSPENDED, entitlement_id, {"timestamp": now, "by": caller})
            return replace(entitlement)

    def reactivate(self, caller: str, entitlement_id: int) -> Entitlement:
        with self._transaction(entitlement_id):
            entitlement = self._get(entitlement_id)
            self._require_owner(caller, entitlement_id)
            if entitlement.status != EntitlementStatus.SUSPENDED:
                raise InvalidStateError(
                    "Only suspended entitlements can be reactivated",
                    {"id": entitlement_id, "status": entitlement.status.value}
                )
            now = self._now()
            if entitlement.is_expired(now):
                raise InvalidStateError("Entitlement has expired; renew instead", {"id": entitlement_id})

            entitlement.status = EntitlementStatus.ACTIVE
            self._emit(EventKind.REACTIVATED, entitlement_id, {"timestamp": now, "by": caller})
            return replace(entitlement)

    def terminate(self, caller: str, entitlement_id: int) -> None:
        """Irreversibly end an entitlement; the id becomes invalid."""
        with self._transaction(entitlement_id):
            entitlement = self._get(entitlement_id)
            self._require_owner(caller, entitlement_id)
            if entitlement.status == EntitlementStatus.TERMINATED:
                raise InvalidStateError("Entitlement is already terminated", {"id": entitlement_id})

            now = self._now()
            entitlement.status = EntitlementStatus.TERMINATED
            self._emit(EventKind.TERMINATED, entitlement_id, {
                "by": caller,
                "timestamp": now,
                "instance_id": entitlement.instance_id,
            })

            del self._entitlements[entitlement_id]
            self.ownership.burn(entitlement_id)
            self.logger.info("Entitlement terminated", entitlement_id=entitlement_id, by=caller)

    def update_network_address(self, caller: str, entitlement_id: int, network_address: str) -> Entitlement:
        """Provisioner-only address change after an instance migration."""
        with self._transaction(entitlement_id):
            self._require_provisioner(caller)
            entitlement = self._get(entitlement_id)
            if entitlement.status == EntitlementStatus.TERMINATED:
                raise InvalidStateError("Entitlement is terminated", {"id": entitlement_id})
            if not network_address:
                raise ValidationError("network_address must be non-empty")

            old_address = entitlement.network_address
            entitlement.network_address = network_address
            self._emit(EventKind.NETWORK_ADDRESS_UPDATED, entitlement_id, {
                "old_network_address": old_address,
                "network_address": network_address,
                "timestamp": self._now(),
            })
            return replace(entitlement)

    def transfer(self, caller: str, entitlement_id: int, new_owner: str) -> Entitlement:
        with self._transaction(entitlement_id):
            entitlement = self._get(entitlement_id)
            self._require_owner(caller, entitlement_id)

            self.ownership.transfer(entitlement_id, new_owner)
            entitlement.owner = new_owner
            self._emit(EventKind.TRANSFERRED, entitlement_id, {
                "from": caller,
                "to": new_owner,
                "timestamp": self._now(),
            })
            return replace(entitlement)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, caller: str) -> None:
        with self._lock:
            self._require_admin(caller)
            self.pause_gate.pause()
            self.logger.warning("Ledger paused", by=caller)

    def unpause(self, caller: str) -> None:
        with self._lock:
            self._require_admin(caller)
            self.pause_gate.unpause()
            self.logger.info("Ledger unpaused", by=caller)

    def set_provisioner(self, caller: str, provisioner: str) -> None:
        with self._lock:
            self._require_admin(caller)
            if not provisioner:
                raise ValidationError("Provisioner identity is required")
            self.provisioner = provisioner
            self.logger.info("Provisioner rotated", provisioner=provisioner)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entitlement(self, entitlement_id: int) -> Entitlement:
        with self._lock:
            return replace(self._get(entitlement_id))

    def describe(self, entitlement_id: int) -> Dict:
        """Entitlement details including the derived ``active`` flag."""
        with self._lock:
            return self._get(entitlement_id).to_dict(self._now())

    def is_active(self, entitlement_id: int) -> bool:
        with self._lock:
            return self._get(entitlement_id).is_active(self._now())

    def get_ids_by_owner(self, owner: str) -> List[int]:
        with self._lock:
            return self.ownership.ids_of(owner)

    def events_since(
        self,
        after: int = 0,
        kinds: Optional[Iterable[EventKind]] = None,
        limit: int = 100,
    ) -> List[LedgerEvent]:
        """Committed events with ``sequence > after``, oldest first."""
        wanted = set(kinds) if kinds else None
        with self._lock:
            # sequence n lives at index n - 1
            tail = self._events[max(after, 0):]
            selected = [e for e in tail if wanted is None or e.kind in wanted]
            return selected[:limit]

    @property
    def size(self) -> int:
        """Number of live (non-terminated) entitlement records."""
        with self._lock:
            return len(self._entitlements)

    @property
    def head(self) -> int:
        """Sequence of the latest committed event (0 when empty)."""
        with self._lock:
            return len(self._events)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Push each committed event to ``callback``; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, entitlement_id: Optional[int] = None) -> Iterator[None]:
        with self._lock:
            self.pause_gate.check()
            if entitlement_id is None:
                yield
            else:
                with self.guard.enter(entitlement_id):
                    yield

    def _now(self) -> int:
        return int(self._clock())

    def _get(self, entitlement_id: int) -> Entitlement:
        entitlement = self._entitlements.get(entitlement_id)
        if entitlement is None:
            raise NotFoundError("Entitlement does not exist", {"id": entitlement_id})
        return entitlement

    def _require_owner(self, caller: str, entitlement_id: int) -> None:
        if self.ownership.owner_of(entitlement_id) != caller:
            raise AuthorizationError("Caller is not the owner", {"id": entitlement_id})

    def _require_provisioner(self, caller: str) -> None:
        if caller != self.provisioner:
            raise AuthorizationError("Caller is not the provisioning identity")

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin:
            raise AuthorizationError("Caller is not the ledger admin")

    @staticmethod
    def _validate_tier(tier: int) -> Tier:
        try:
            return Tier(tier)
        except (ValueError, TypeError):
            raise ValidationError("Invalid tier", {"tier": tier}) from None

    @staticmethod
    def _validate_units(units: int, name: str) -> int:
        if not isinstance(units, int) or isinstance(units, bool):
            raise ValidationError(f"{name} must be an integer", {name: units})
        if not MIN_DURATION_UNITS <= units <= MAX_DURATION_UNITS:
            raise ValidationError(
                f"{name} must be between {MIN_DURATION_UNITS} and {MAX_DURATION_UNITS}",
                {name: units}
            )
        return units

    def _emit(self, kind: EventKind, entitlement_id: int, data: Dict) -> LedgerEvent:
        event = LedgerEvent(
            sequence=len(self._events) + 1,
            kind=kind,
            entitlement_id=entitlement_id,
            timestamp=self._now(),
            data=data,
        )
        self._events.append(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # Committed state stands; a failing subscriber only loses its own delivery
                self.logger.error(
                    "Event subscriber failed",
                    kind=kind.value,
                    entitlement_id=entitlement_id,
                    sequence=event.sequence,
                    error=str(e)
                )
        return event
