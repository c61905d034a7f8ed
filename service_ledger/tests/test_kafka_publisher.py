"""
Unit tests for LedgerEventPublisher.
"""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from kafka.errors import KafkaError, KafkaTimeoutError

from service_ledger.app.ledger import EntitlementLedger, StablecoinToken
from service_ledger.app.models import TIER_SPECS, EventKind, LedgerEvent, Tier
from service_ledger.app.publishing.kafka_publisher import LedgerEventPublisher
from shared.errors import ClawCloudException


def buy(ledger, buyer="alice", tier=Tier.MICRO):
    cost = TIER_SPECS[tier].monthly_price
    ledger.token.mint(buyer, cost)
    ledger.token.approve(buyer, ledger.address, cost)
    return ledger.purchase(buyer, tier, 1)


class TestLedgerEventPublisher:
    """Test cases for LedgerEventPublisher."""

    @pytest.fixture
    def publisher(self):
        publisher = LedgerEventPublisher("localhost:9092", "clawcloud.ledger.events.v1")
        yield publisher
        publisher.stop(timeout=1)

    @pytest.fixture
    def producer(self):
        with patch("service_ledger.app.publishing.kafka_publisher.KafkaProducer") as producer_cls:
            yield producer_cls.return_value

    @pytest.fixture
    def ledger(self):
        return EntitlementLedger(StablecoinToken(), "treasury", "provisioner", "admin")

    @pytest.fixture
    def blocked_send(self, producer):
        """Makes ``send`` hang the way it does while broker metadata is unavailable."""
        sending = threading.Event()
        release = threading.Event()

        def send(**kwargs):
            sending.set()
            release.wait(5)
            return MagicMock()

        producer.send.side_effect = send
        yield sending, release
        release.set()

    def test_publish_requires_start(self, publisher):
        event = LedgerEvent(sequence=1, kind=EventKind.PURCHASED, entitlement_id=1, timestamp=0)

        with pytest.raises(ClawCloudException) as exc_info:
            publisher.publish(event)

        assert exc_info.value.code == "KAFKA_PRODUCER_NOT_STARTED"

    def test_start_failure(self, publisher):
        with patch(
            "service_ledger.app.publishing.kafka_publisher.KafkaProducer",
            side_effect=Exception("Connection failed")
        ):
            with pytest.raises(ClawCloudException) as exc_info:
                publisher.start()

        assert exc_info.value.code == "KAFKA_PRODUCER_START_FAILED"

    def test_producer_blocking_is_bounded(self):
        publisher = LedgerEventPublisher("localhost:9092", "topic", max_block_ms=250)

        with patch("service_ledger.app.publishing.kafka_publisher.KafkaProducer") as producer_cls:
            publisher.start()
            publisher.stop(timeout=1)

        assert producer_cls.call_args.kwargs["max_block_ms"] == 250

    def test_committed_events_are_published_by_entitlement(self, publisher, producer, ledger):
        publisher.start()
        ledger.subscribe(publisher.publish)

        buy(ledger)
        publisher.stop()

        producer.send.assert_called_once()
        kwargs = producer.send.call_args.kwargs
        assert kwargs["topic"] == "clawcloud.ledger.events.v1"
        assert kwargs["key"] == "1"
        assert kwargs["value"]["kind"] == "purchased"
        assert kwargs["value"]["sequence"] == 1

    def test_blocked_broker_does_not_hold_commits(self, publisher, producer, ledger, blocked_send):
        sending, _ = blocked_send
        publisher.start()
        ledger.subscribe(publisher.publish)

        started = time.monotonic()
        buy(ledger)
        assert sending.wait(1)
        buy(ledger, buyer="bob")

        assert time.monotonic() - started < 1
        assert ledger.get_entitlement(2).owner == "bob"
        assert producer.send.call_count == 1

    def test_full_queue_drops_events(self, producer, ledger, blocked_send):
        sending, release = blocked_send
        publisher = LedgerEventPublisher("localhost:9092", "topic", queue_size=1)
        publisher.start()
        ledger.subscribe(publisher.publish)

        try:
            buy(ledger)
            assert sending.wait(1)
            buy(ledger, buyer="bob")
            buy(ledger, buyer="carol")

            assert publisher.dropped == 1
            assert ledger.head == 3
        finally:
            release.set()
            publisher.stop()

        assert producer.send.call_count == 2

    def test_send_errors_are_logged_not_raised(self, publisher, producer):
        publisher.start()
        event = LedgerEvent(sequence=3, kind=EventKind.TERMINATED, entitlement_id=2, timestamp=0)

        publisher.publish(event)
        publisher.stop()
        errback, bound_event = producer.send.return_value.add_errback.call_args.args
        errback(KafkaError("broker down"), bound_event)

        assert bound_event is event

    def test_metadata_timeout_is_logged_not_raised(self, publisher, producer):
        producer.send.side_effect = [KafkaTimeoutError("metadata unavailable"), MagicMock()]
        publisher.start()

        for sequence in (1, 2):
            publisher.publish(
                LedgerEvent(sequence=sequence, kind=EventKind.PURCHASED, entitlement_id=sequence, timestamp=0)
            )
        publisher.stop()

        assert producer.send.call_count == 2

    def test_stop_flushes(self, publisher, producer):
        publisher.start()
        publisher.stop()

        producer.flush.assert_called_once()
        producer.close.assert_called_once()
        assert publisher.producer is None
