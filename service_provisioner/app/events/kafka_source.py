"""
Kafka subscription source for ledger events.
"""

import asyncio
import json
from typing import AsyncIterator, Callable, Optional

import kafka
from kafka.errors import KafkaError

from shared.errors import ClawCloudException
from shared.logging import get_logger
from service_ledger.app.models import LedgerEvent

from .source import EventSource, LedgerPollingSource


class KafkaEventSource(EventSource):
    """Follows the ledger events topic after catching up through the ledger feed.

    Kafka partitions by entitlement id, so messages from different partitions
    interleave out of sequence. Messages at or below the sequence read so far
    are skipped; a message that jumps ahead triggers a catch-up through the
    ledger feed, which fills the gap in order.
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        catch_up: LedgerPollingSource,
        consumer_factory: Optional[Callable[[], "kafka.KafkaConsumer"]] = None,
        poll_timeout_ms: int = 1000,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.catch_up_source = catch_up
        self.poll_timeout_ms = poll_timeout_ms
        self.logger = get_logger("provisioner.events.kafka")
        self._consumer_factory = consumer_factory or self._create_consumer

    def _create_consumer(self) -> "kafka.KafkaConsumer":
        try:
            return kafka.KafkaConsumer(
                self.topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda x: json.loads(x.decode("utf-8")),
                auto_offset_reset="latest",
                enable_auto_commit=True,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )
        except Exception as e:
            self.logger.error("Failed to start Kafka consumer", error=str(e))
            raise ClawCloudException("KAFKA_CONSUMER_START_FAILED", str(e))

    async def stream(self, after: int) -> AsyncIterator[LedgerEvent]:
        # Subscribe before catching up so nothing committed in between is missed
        consumer = self._consumer_factory()
        self.logger.info("Kafka consumer started", topic=self.topic, group_id=self.group_id)
        try:
            missed, last = await self.catch_up_source.catch_up(after)
            for event in missed:
                yield event

            while True:
                try:
                    batch = await asyncio.to_thread(consumer.poll, timeout_ms=self.poll_timeout_ms)
                except KafkaError as e:
                    self.logger.error("Kafka error in consume loop", error=str(e))
                    await asyncio.sleep(5)
                    continue

                for _, messages in (batch or {}).items():
                    for message in messages:
                        try:
                            event = LedgerEvent.from_dict(message.value)
                        except (KeyError, TypeError, ValueError) as e:
                            self.logger.error(
                                "Undecodable ledger event",
                                offset=message.offset,
                                error=str(e)
                            )
                            continue

                        if event.sequence <= last:
                            continue
                        if event.sequence == last + 1:
                            last = event.sequence
                            if self.catch_up_source.wants(event):
                                yield event
                            continue

                        missed, last = await self.catch_up_source.catch_up(last)
                        for gap_event in missed:
                            yield gap_event
        finally:
            await asyncio.to_thread(consumer.close)
            self.logger.info("Kafka consumer stopped")
