"""
Event sources: where ledger events come from.

Every source yields events in ledger sequence order, starting after a given
cursor. Sources may deliver an event more than once; deduplication is the
observer's job.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple

from shared.errors import ClawCloudException
from shared.logging import get_logger
from service_ledger.app.ledger import EntitlementLedger
from service_ledger.app.models import EventKind, LedgerEvent

from ..ledger_client import LedgerClient


class EventSource(ABC):
    """A stream of committed ledger events."""

    name = "abstract"

    @abstractmethod
    def stream(self, after: int) -> AsyncIterator[LedgerEvent]:
        """Yield events with ``sequence > after`` in order, then keep following the ledger."""


class LedgerPollingSource(EventSource):
    """Poll-and-catch-up against the ledger's event feed."""

    name = "poll"

    def __init__(
        self,
        client: LedgerClient,
        interval: float = 2.0,
        batch_size: int = 100,
        kinds: Optional[Iterable[EventKind]] = None,
    ):
        self.client = client
        self.interval = interval
        self.batch_size = batch_size
        self.kinds = list(kinds) if kinds else None
        self.logger = get_logger("provisioner.events.poll")

    def wants(self, event: LedgerEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    async def catch_up(self, after: int) -> Tuple[List[LedgerEvent], int]:
        """Fetch everything after ``after`` up to the current head.

        Returns the matching events and the cursor the feed has been read
        through, which may be past the last returned event when ``kinds``
        filters some out.
        """
        collected: List[LedgerEvent] = []
        cursor = after
        while True:
            events, next_cursor = await self.client.fetch_events(cursor, self.kinds, self.batch_size)
            collected.extend(events)
            cursor = max(cursor, next_cursor)
            if len(events) < self.batch_size:
                return collected, cursor

    async def stream(self, after: int) -> AsyncIterator[LedgerEvent]:
        cursor = after
        while True:
            try:
                events, next_cursor = await self.client.fetch_events(cursor, self.kinds, self.batch_size)
            except ClawCloudException as e:
                self.logger.error("Event poll failed", cursor=cursor, error=str(e))
                await asyncio.sleep(self.interval)
                continue

            for event in events:
                yield event
            cursor = max(cursor, next_cursor)

            if len(events) < self.batch_size:
                await asyncio.sleep(self.interval)


class InProcessLedgerSource(EventSource):
    """Push subscription to an in-process ledger.

    Subscribes first, then catches up from the cursor, then switches to the
    live queue, skipping anything the catch-up already covered.
    """

    name = "subscribe"

    def __init__(self, ledger: EntitlementLedger, batch_size: int = 500,
                 kinds: Optional[Iterable[EventKind]] = None):
        self.ledger = ledger
        self.batch_size = batch_size
        self.kinds: Optional[Set[EventKind]] = set(kinds) if kinds else None

    def _wanted(self, event: LedgerEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    async def stream(self, after: int) -> AsyncIterator[LedgerEvent]:
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[LedgerEvent]" = asyncio.Queue()

        def on_event(event: LedgerEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        unsubscribe = self.ledger.subscribe(on_event)
        try:
            last = after
            while True:
                batch = self.ledger.events_since(last, None, self.batch_size)
                for event in batch:
                    last = event.sequence
                    if self._wanted(event):
                        yield event
                if len(batch) < self.batch_size:
                    break

            while True:
                event = await queue.get()
                if event.sequence <= last:
                    continue
                last = event.sequence
                if self._wanted(event):
                    yield event
        finally:
            unsubscribe()
