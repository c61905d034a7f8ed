"""
Kafka publisher for committed ledger events.
"""

import json
import queue
import threading
from typing import Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from shared.logging import get_logger
from shared.errors import ClawCloudException

from ..models import LedgerEvent

_STOP = object()


class LedgerEventPublisher:
    """Publishes each committed ledger event to a Kafka topic.

    Publication is best effort: consumers catch up from the ledger's event
    feed, so a lost message delays fulfillment but never loses it.

    ``publish`` runs inside the ledger commit, so it only enqueues. A sender
    thread owns the producer and is the only caller that can block on the
    broker.
    """

    def __init__(self, bootstrap_servers: str, topic: str, max_block_ms: int = 5000,
                 queue_size: int = 10000):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.max_block_ms = max_block_ms
        self.logger = get_logger("ledger.kafka.publisher")
        self.producer: Optional[KafkaProducer] = None
        self.dropped = 0
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._sender: Optional[threading.Thread] = None

    def start(self):
        """Start the Kafka producer and the sender thread."""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda x: json.dumps(x).encode('utf-8'),
                key_serializer=lambda x: x.encode('utf-8') if x else None,
                acks='all',
                retries=3,
                linger_ms=10,
                max_block_ms=self.max_block_ms,
            )

        except Exception as e:
            self.logger.error("Failed to start Kafka publisher", error=str(e))
            raise ClawCloudException("KAFKA_PRODUCER_START_FAILED", str(e))

        self._sender = threading.Thread(
            target=self._drain,
            args=(self.producer,),
            name="ledger-kafka-publisher",
            daemon=True
        )
        self._sender.start()
        self.logger.info("Kafka publisher started", topic=self.topic)

    def stop(self, timeout: float = 10.0):
        """Send what is queued, then flush and stop the Kafka producer."""
        if self._sender:
            try:
                self._queue.put(_STOP, timeout=timeout)
                self._sender.join(timeout)
            except queue.Full:
                pass
            if self._sender.is_alive():
                self.logger.warning("Kafka publisher did not drain in time", pending=self._queue.qsize())
            self._sender = None

        if self.producer:
            self.producer.flush(timeout=timeout)
            self.producer.close(timeout=timeout)
            self.producer = None
            self.logger.info("Kafka publisher stopped")

    def publish(self, event: LedgerEvent) -> None:
        """Ledger subscriber callback; keyed by entitlement id to keep per-id order."""
        if not self.producer:
            raise ClawCloudException("KAFKA_PRODUCER_NOT_STARTED", "Publisher not started")

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            self.logger.warning(
                "Publish queue full, dropping ledger event",
                sequence=event.sequence,
                kind=event.kind.value
            )

    def _drain(self, producer: KafkaProducer) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._send(producer, event)

    def _send(self, producer: KafkaProducer, event: LedgerEvent) -> None:
        try:
            future = producer.send(
                topic=self.topic,
                value=event.to_dict(),
                key=str(event.entitlement_id),
            )
        except Exception as e:
            # KafkaTimeoutError once max_block_ms passes without broker metadata
            self._on_send_error(e, event)
            return
        future.add_errback(self._on_send_error, event)

    def _on_send_error(self, error: KafkaError, event: LedgerEvent) -> None:
        self.logger.error(
            "Kafka error publishing ledger event",
            topic=self.topic,
            sequence=event.sequence,
            kind=event.kind.value,
            error=str(error)
        )
