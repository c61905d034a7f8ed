"""
Reconciler worker: feeds observed events to the reconciler.
"""

import asyncio
from typing import Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception
from service_ledger.app.models import LedgerEvent

from .events import EventObserver
from .reconciler import ProvisioningReconciler


class ReconcilerWorker:
    """Runs reconciliations for different ids in parallel, up to a limit.

    An event is acknowledged only after the reconciler has recorded an
    outcome for it. Handling that raises is retried; once the attempts run
    out the failure is recorded in the status store for an operator retry.
    If even that fails the event is released unacknowledged, so its key can
    be delivered again and a restart replays it.
    """

    def __init__(
        self,
        observer: EventObserver,
        reconciler: ProvisioningReconciler,
        max_concurrency: int = 8,
        metrics: Optional[MetricsCollector] = None,
        recover_on_start: bool = True,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.observer = observer
        self.reconciler = reconciler
        self.metrics = metrics
        self.recover_on_start = recover_on_start
        self.retry_config = retry_config or RetryConfig()
        self.logger = get_logger("provisioner.worker")

        self._handle = retry_on_exception((Exception,), self.retry_config)(reconciler.handle)
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._tasks: Set[asyncio.Task] = set()
        self._main: Optional[asyncio.Task] = None
        self.running = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self) -> None:
        self.running = True
        self._main = asyncio.create_task(self.run())
        self.logger.info("Reconciler worker started")

    async def stop(self) -> None:
        """Cancel intake and every in-flight reconciliation."""
        self.running = False
        tasks = list(self._tasks)
        if self._main is not None:
            tasks.append(self._main)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._main = None
        self.logger.info("Reconciler worker stopped", cancelled=len(tasks))

    async def run(self) -> None:
        if self.recover_on_start:
            try:
                await self.reconciler.recover()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Startup recovery failed", error=str(e))

        while self.running:
            try:
                async for event in self.observer.events():
                    await self._semaphore.acquire()
                    task = asyncio.create_task(self._process(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Event intake failed", error=str(e))
                await asyncio.sleep(5)

    async def _process(self, event: LedgerEvent) -> None:
        if self.metrics:
            self.metrics.adjust_gauge("reconciliations_in_flight", 1)
        try:
            try:
                await self._handle(event)
            except RetryError as e:
                await self._give_up(event, e)
            else:
                await self.observer.ack(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "Event could not be settled, releasing it",
                entitlement_id=event.entitlement_id,
                sequence=event.sequence,
                kind=event.kind.value,
                error=str(e)
            )
            await self.observer.release(event)
        finally:
            self._semaphore.release()
            if self.metrics:
                self.metrics.adjust_gauge("reconciliations_in_flight", -1)

    async def _give_up(self, event: LedgerEvent, error: RetryError) -> None:
        message = f"Reconciliation raised after {error.attempts} attempts: {error.last_exception}"
        try:
            await self.reconciler.record_failure(event, message)
        except Exception as e:
            self.logger.error(
                "Failure could not be recorded, releasing event",
                entitlement_id=event.entitlement_id,
                sequence=event.sequence,
                error=str(e)
            )
            await self.observer.release(event)
            return

        self.logger.error(
            "Reconciliation failed, recorded for operator retry",
            entitlement_id=event.entitlement_id,
            sequence=event.sequence,
            kind=event.kind.value,
            error=str(error.last_exception)
        )
        await self.observer.ack(event)
