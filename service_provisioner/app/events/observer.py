"""
Ledger event observer.

Wraps an event source with checkpointing and deduplication. Each
``(entitlement_id, kind)`` pair is delivered to the reconciler at most once
per processing, and the persisted cursor never moves past an event that has
been delivered but not yet acknowledged, so a crash mid-reconciliation
replays the event on restart. A released event stops blocking redelivery of
its key but keeps holding the cursor back until it is acknowledged.
"""

import asyncio
from typing import AsyncIterator, Dict, Iterable, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_ledger.app.models import EventKind, LedgerEvent

from .checkpoint import CheckpointStore
from .source import EventSource

RECONCILED_KINDS = (EventKind.PURCHASED, EventKind.TERMINATED)


class EventObserver:
    """Delivers new ledger events in order, each reconciliation key once."""

    def __init__(
        self,
        source: EventSource,
        checkpoint: CheckpointStore,
        metrics: Optional[MetricsCollector] = None,
        kinds: Iterable[EventKind] = RECONCILED_KINDS,
    ):
        self.source = source
        self.checkpoint = checkpoint
        self.metrics = metrics
        self.kinds: Set[EventKind] = set(kinds)
        self.logger = get_logger("provisioner.events.observer")

        self._cursor = 0
        self._high_water = 0
        self._in_flight: Dict[str, int] = {}
        self._released: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        await self.checkpoint.start()
        self._cursor = await self.checkpoint.load_cursor()
        self._high_water = self._cursor
        self.logger.info("Event observer started", source=self.source.name, cursor=self._cursor)

    async def stop(self) -> None:
        await self.checkpoint.stop()

    async def events(self) -> AsyncIterator[LedgerEvent]:
        async for event in self.source.stream(self._cursor):
            if event.kind not in self.kinds:
                await self._observe(event.sequence)
                continue

            key = event.dedup_key
            if key in self._in_flight or await self.checkpoint.is_processed(key):
                self.logger.debug("Duplicate event dropped", key=key, sequence=event.sequence)
                if self.metrics:
                    self.metrics.increment_counter("events_duplicate_total", kind=event.kind.value)
                await self._observe(event.sequence)
                continue

            async with self._lock:
                self._in_flight[key] = min(event.sequence, self._released.pop(key, event.sequence))
                self._high_water = max(self._high_water, event.sequence)

            if self.metrics:
                self.metrics.increment_counter("events_observed_total", kind=event.kind.value)
            yield event

    async def ack(self, event: LedgerEvent) -> None:
        """Mark an event's reconciliation key as processed and advance the cursor."""
        await self.checkpoint.mark_processed(event.dedup_key)
        async with self._lock:
            self._in_flight.pop(event.dedup_key, None)
            self._released.pop(event.dedup_key, None)
            await self._advance()

    async def release(self, event: LedgerEvent) -> None:
        """Give up on a delivered event without acknowledging it.

        Its key may be delivered again; the cursor stays below it so a
        restart replays it.
        """
        async with self._lock:
            sequence = self._in_flight.pop(event.dedup_key, event.sequence)
            self._released[event.dedup_key] = sequence
        self.logger.warning("Event released unacknowledged", key=event.dedup_key, sequence=sequence)

    async def _observe(self, sequence: int) -> None:
        async with self._lock:
            self._high_water = max(self._high_water, sequence)
            await self._advance()

    async def _advance(self) -> None:
        pending = list(self._in_flight.values()) + list(self._released.values())
        if pending:
            candidate = min(pending) - 1
        else:
            candidate = self._high_water
        if candidate > self._cursor:
            await self.checkpoint.save_cursor(candidate)
            self._cursor = candidate
