"""Background scheduler for status reconciliation and feed sync.

Wraps an AsyncIOScheduler with one interval job. Each run reconciles
every active application, refreshes the feed cache from the snapshots
that pass observed, then imports manager edits from the CRM change log.

A tick that fires while the previous run is still in progress is
skipped, so runs never overlap.

Exports:
    ReconciliationScheduler: Interval scheduler for the reconciliation cycle.
"""

from __future__ import annotations

import asyncio

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.feed import FeedService
from src.credit_bridge.credit.history import sync_crm_history
from src.credit_bridge.credit.reconciliation import ReconciliationEngine
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.schemas import BatchResult

logger = structlog.get_logger(__name__)

JOB_ID = "credit_reconciliation"


class ReconciliationScheduler:
    """Runs the reconciliation cycle every interval_minutes.

    Args:
        engine: Reconciliation engine.
        feed: Feed service.
        crm: CRM client, for the change-history import.
        repository: Feed store, for the change-history import.
        interval_minutes: Minutes between runs.
        initial_delay: Seconds after start before the first feed sync;
            None disables the startup sync.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        feed: FeedService,
        crm: CRMClient,
        repository: FeedRepository,
        interval_minutes: int = 1,
        initial_delay: float | None = 5.0,
    ) -> None:
        self._engine = engine
        self._feed = feed
        self._crm = crm
        self._repository = repository
        self._interval_minutes = interval_minutes
        self._initial_delay = initial_delay
        self._scheduler: AsyncIOScheduler | None = None
        self._initial_task: asyncio.Task | None = None
        self._running = False
        self._started = False

    @property
    def is_running(self) -> bool:
        """True while a reconciliation run is in progress."""
        return self._running

    def start(self) -> bool:
        """Start the interval job. Returns False if the scheduler failed to start."""
        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self.run_once,
                trigger=IntervalTrigger(minutes=self._interval_minutes),
                id=JOB_ID,
                name="Credit application status reconciliation",
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()
            self._started = True
        except Exception as exc:
            logger.warning("scheduler.start_failed", error=str(exc))
            return False

        if self._initial_delay is not None:
            self._initial_task = asyncio.create_task(
                self._initial_sync(), name="credit_initial_feed_sync"
            )
        logger.info("scheduler.started", interval_minutes=self._interval_minutes)
        return True

    def stop(self) -> None:
        """Shut down the scheduler and cancel a pending startup sync."""
        if self._initial_task is not None and not self._initial_task.done():
            self._initial_task.cancel()
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("scheduler.stopped")

    async def _initial_sync(self) -> None:
        await asyncio.sleep(self._initial_delay or 0)
        if self._running:
            return
        self._running = True
        try:
            await self._feed.sync_feed_to_database()
        except Exception as exc:
            logger.warning("scheduler.initial_sync_failed", error=str(exc))
        finally:
            self._running = False

    async def run_cycle(self) -> BatchResult | None:
        """Run one reconciliation cycle and return its batch result.

        Feed and history sync failures are logged; a reconcile_all failure
        propagates to the caller.

        Returns:
            None if skipped because a previous run is still in progress.
        """
        if self._running:
            logger.warning("scheduler.run_skipped", reason="previous_run_in_progress")
            return None

        self._running = True
        try:
            logger.info("scheduler.run_started")
            batch = await self._engine.reconcile_all()
            try:
                await self._feed.sync_feed_to_database(batch.snapshots)
            except Exception as exc:
                logger.error("scheduler.feed_sync_failed", error=str(exc))
            try:
                await sync_crm_history(self._crm, self._repository)
            except Exception as exc:
                logger.error("scheduler.history_sync_failed", error=str(exc))
            logger.info(
                "scheduler.run_completed",
                total=batch.total,
                updated=batch.updated,
                errors=len(batch.errors),
            )
            return batch
        finally:
            self._running = False

    async def run_once(self) -> bool:
        """Interval job entry point; never raises.

        Returns:
            False if skipped because a previous run is still in progress.
        """
        try:
            return await self.run_cycle() is not None
        except Exception as exc:
            logger.error("scheduler.run_failed", error=str(exc))
            return True
