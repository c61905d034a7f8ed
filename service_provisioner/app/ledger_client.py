"""
Ledger clients used by the provisioner.

Both implementations act as the provisioning identity and report ledger
rejections as ``LedgerRejectedError`` carrying the ledger's error code, so
the reconciler never needs to know which transport it is talking to.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ClawCloudException, ExternalServiceError, LedgerRejectedError, NotFoundError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from service_ledger.app.ledger import EntitlementLedger
from service_ledger.app.models import EntitlementResponse, EventKind, EventPage, LedgerEvent

EventBatch = Tuple[List[LedgerEvent], int]


class LedgerClient(ABC):
    """What the provisioner needs from the ledger."""

    identity: str

    @abstractmethod
    async def get_entitlement(self, entitlement_id: int) -> Optional[EntitlementResponse]:
        """Entitlement details, or None when the id does not exist (never did, or terminated)."""

    @abstractmethod
    async def set_provisioned(self, entitlement_id: int, instance_id: str, network_address: str) -> EntitlementResponse:
        """Write the instance identity back to the ledger."""

    @abstractmethod
    async def update_network_address(self, entitlement_id: int, network_address: str) -> EntitlementResponse:
        """Record a new address after an instance migration."""

    @abstractmethod
    async def fetch_events(
        self,
        after: int,
        kinds: Optional[Iterable[EventKind]] = None,
        limit: int = 100,
    ) -> EventBatch:
        """Events after ``after`` plus the cursor to resume from."""

    async def close(self) -> None:
        """Release transport resources."""

    def reachable(self) -> bool:
        return True


class LocalLedgerClient(LedgerClient):
    """Talks to an in-process EntitlementLedger."""

    def __init__(self, ledger: EntitlementLedger, identity: str):
        self.ledger = ledger
        self.identity = identity

    def _view(self, entitlement_id: int) -> EntitlementResponse:
        return EntitlementResponse(**self.ledger.describe(entitlement_id))

    async def get_entitlement(self, entitlement_id: int) -> Optional[EntitlementResponse]:
        try:
            return self._view(entitlement_id)
        except NotFoundError:
            return None

    async def set_provisioned(self, entitlement_id: int, instance_id: str, network_address: str) -> EntitlementResponse:
        try:
            self.ledger.set_provisioned(self.identity, entitlement_id, instance_id, network_address)
        except ClawCloudException as e:
            raise LedgerRejectedError(e.code, e.message, e.details) from e
        return self._view(entitlement_id)

    async def update_network_address(self, entitlement_id: int, network_address: str) -> EntitlementResponse:
        try:
            self.ledger.update_network_address(self.identity, entitlement_id, network_address)
        except ClawCloudException as e:
            raise LedgerRejectedError(e.code, e.message, e.details) from e
        return self._view(entitlement_id)

    async def fetch_events(
        self,
        after: int,
        kinds: Optional[Iterable[EventKind]] = None,
        limit: int = 100,
    ) -> EventBatch:
        events = self.ledger.events_since(after, kinds, limit)
        next_cursor = events[-1].sequence if len(events) == limit else max(after, self.ledger.head)
        return events, next_cursor


class HttpLedgerClient(LedgerClient):
    """Talks to a ledger node over HTTP."""

    CALLER_HEADER = "X-Ledger-Caller"

    def __init__(
        self,
        base_url: str,
        identity: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self.logger = get_logger("provisioner.ledger_client")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="ledger_node",
        )
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._send = retry_on_exception((httpx.TransportError,), config=self.retry_config)(self._send_once)

    async def _send_once(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.circuit_breaker.call(
            self._client.request,
            method,
            path,
            headers={self.CALLER_HEADER: self.identity},
            **kwargs
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._send(method, path, **kwargs)
        except (RetryError, CircuitBreakerOpenException) as e:
            self.logger.error("Ledger node unreachable", method=method, path=path, error=str(e))
            raise ExternalServiceError("ledger", str(e)) from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        if response.status_code >= 500:
            raise ExternalServiceError("ledger", f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("code") or f"HTTP_{response.status_code}"
        raise LedgerRejectedError(
            code,
            body.get("message") or f"Ledger rejected the call with HTTP {response.status_code}",
            body.get("details") or {}
        )

    async def get_entitlement(self, entitlement_id: int) -> Optional[EntitlementResponse]:
        response = await self._request("GET", f"/entitlements/{entitlement_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return EntitlementResponse(**response.json())

    async def set_provisioned(self, entitlement_id: int, instance_id: str, network_address: str) -> EntitlementResponse:
        response = await self._request(
            "POST",
            f"/entitlements/{entitlement_id}/provisioned",
            json={"instance_id": instance_id, "network_address": network_address}
        )
        self._raise_for_status(response)
        return EntitlementResponse(**response.json())

    async def update_network_address(self, entitlement_id: int, network_address: str) -> EntitlementResponse:
        response = await self._request(
            "POST",
            f"/entitlements/{entitlement_id}/network-address",
            json={"network_address": network_address}
        )
        self._raise_for_status(response)
        return EntitlementResponse(**response.json())

    async def fetch_events(
        self,
        after: int,
        kinds: Optional[Iterable[EventKind]] = None,
        limit: int = 100,
    ) -> EventBatch:
        params = [("after", str(after)), ("limit", str(limit))]
        for kind in kinds or ():
            params.append(("kinds", EventKind(kind).value))

        response = await self._request("GET", "/events", params=params)
        self._raise_for_status(response)
        page = EventPage(**response.json())
        return [LedgerEvent.from_dict(e) for e in page.events], page.next_cursor

    async def close(self) -> None:
        await self._client.aclose()

    def reachable(self) -> bool:
        """False while the circuit breaker is open."""
        return not self.circuit_breaker.is_open()
