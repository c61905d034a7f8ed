"""
Unit tests for the provisioner's ledger clients.
"""

import httpx
import pytest

from service_ledger.app.main import LedgerService
from service_ledger.app.models import TIER_SPECS, EntitlementStatus, EventKind, Tier
from service_provisioner.app.ledger_client import HttpLedgerClient, LocalLedgerClient
from shared.config import get_config
from shared.errors import ExternalServiceError, LedgerRejectedError
from shared.retry import RetryConfig

FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0, jitter=False)


@pytest.fixture
def ledger_service():
    service = LedgerService(get_config("ledger", 8020, env="local"))
    ledger = service.ledger
    cost = TIER_SPECS[Tier.SMALL].monthly_price
    ledger.token.mint("alice", 3 * cost)
    ledger.token.approve("alice", ledger.address, 3 * cost)
    for _ in range(3):
        ledger.purchase("alice", Tier.SMALL, 1)
    return service


def http_client(transport, identity="provisioner"):
    return HttpLedgerClient(
        "http://ledger",
        identity,
        client=httpx.AsyncClient(base_url="http://ledger", transport=transport),
        retry_config=FAST_RETRY,
    )


class TestHttpLedgerClient:
    """Test cases for HttpLedgerClient against a ledger node."""

    @pytest.mark.asyncio
    async def test_get_entitlement(self, ledger_service):
        client = http_client(httpx.ASGITransport(app=ledger_service.app))

        entitlement = await client.get_entitlement(2)
        missing = await client.get_entitlement(99)
        await client.close()

        assert entitlement.owner == "alice"
        assert entitlement.status == EntitlementStatus.PROVISIONING
        assert missing is None

    @pytest.mark.asyncio
    async def test_write_back_and_rejection_code(self, ledger_service):
        client = http_client(httpx.ASGITransport(app=ledger_service.app))

        provisioned = await client.set_provisioned(1, "vm-1", "203.0.113.4")
        with pytest.raises(LedgerRejectedError) as exc_info:
            await client.set_provisioned(1, "vm-2", "203.0.113.5")
        await client.close()

        assert provisioned.status == EntitlementStatus.ACTIVE
        assert provisioned.instance_id == "vm-1"
        assert exc_info.value.ledger_code == "ALREADY_PROVISIONED"

    @pytest.mark.asyncio
    async def test_wrong_identity_is_rejected(self, ledger_service):
        client = http_client(httpx.ASGITransport(app=ledger_service.app), identity="mallory")

        with pytest.raises(LedgerRejectedError) as exc_info:
            await client.set_provisioned(1, "vm-1", "203.0.113.4")
        await client.close()

        assert exc_info.value.ledger_code == "AUTHORIZATION_ERROR"

    @pytest.mark.asyncio
    async def test_update_network_address(self, ledger_service):
        client = http_client(httpx.ASGITransport(app=ledger_service.app))
        await client.set_provisioned(1, "vm-1", "203.0.113.4")

        moved = await client.update_network_address(1, "198.51.100.1")
        await client.close()

        assert moved.network_address == "198.51.100.1"

    @pytest.mark.asyncio
    async def test_fetch_events_with_kinds(self, ledger_service):
        ledger_service.ledger.terminate("alice", 2)
        client = http_client(httpx.ASGITransport(app=ledger_service.app))

        page, cursor = await client.fetch_events(0, limit=2)
        terminated, head = await client.fetch_events(0, kinds=[EventKind.TERMINATED])
        await client.close()

        assert [e.sequence for e in page] == [1, 2]
        assert cursor == 2
        assert [(e.kind, e.entitlement_id) for e in terminated] == [(EventKind.TERMINATED, 2)]
        assert head == 4

    @pytest.mark.asyncio
    async def test_server_error_is_external_service_error(self):
        client = http_client(httpx.MockTransport(lambda request: httpx.Response(500)))

        with pytest.raises(ExternalServiceError):
            await client.get_entitlement(1)
        await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_ledger_is_retried_then_reported(self):
        attempts = []

        def refuse(request):
            attempts.append(request.url.path)
            raise httpx.ConnectError("Connection refused", request=request)

        client = http_client(httpx.MockTransport(refuse))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.fetch_events(0)
        await client.close()

        assert len(attempts) == 2
        assert exc_info.value.code == "EXTERNAL_SERVICE_ERROR"

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        client = http_client(httpx.MockTransport(refuse))
        assert client.reachable() is True

        for _ in range(3):
            with pytest.raises(ExternalServiceError):
                await client.get_entitlement(1)
        await client.close()

        assert client.reachable() is False

    @pytest.mark.asyncio
    async def test_caller_header_sent(self):
        seen = {}

        def record(request):
            seen["caller"] = request.headers.get("X-Ledger-Caller")
            return httpx.Response(404, json={"code": "NOT_FOUND", "message": "missing"})

        client = http_client(httpx.MockTransport(record))
        assert await client.get_entitlement(5) is None
        await client.close()

        assert seen["caller"] == "provisioner"


class TestLocalLedgerClient:
    """Test cases for LocalLedgerClient."""

    @pytest.mark.asyncio
    async def test_rejections_carry_ledger_code(self, ledger_service):
        client = LocalLedgerClient(ledger_service.ledger, "provisioner")
        await client.set_provisioned(3, "vm-3", "203.0.113.3")

        with pytest.raises(LedgerRejectedError) as exc_info:
            await client.set_provisioned(3, "vm-9", "203.0.113.9")

        assert exc_info.value.ledger_code == "ALREADY_PROVISIONED"
        assert await client.get_entitlement(42) is None

    @pytest.mark.asyncio
    async def test_fetch_events_cursor_reaches_head(self, ledger_service):
        ledger_service.ledger.set_provisioned("provisioner", 1, "vm-1", "203.0.113.1")
        client = LocalLedgerClient(ledger_service.ledger, "provisioner")

        events, cursor = await client.fetch_events(0, kinds=[EventKind.PURCHASED])

        assert len(events) == 3
        assert cursor == 4
