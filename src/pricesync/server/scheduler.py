"""Scheduler for sync cadences and maintenance tasks.

This module provides:
- Interval ticks for the realtime, incremental and bulk cadences
- The periodic conflict detection sweep
- Daily retention at 3:00 AM (archive closed conflicts, purge price history)
- Manual run_now helpers for CLI/API usage
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from pricesync.core.types import SyncCadence
from pricesync.engine.errors import PriceSyncError

if TYPE_CHECKING:
    from pricesync.engine.service import PriceSyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Drives the engine on fixed cadences.

    Each tick fans out over the tenants with ERP integration enabled. A
    tick for a tenant whose job of that cadence is still running is
    skipped by the orchestrator, not queued.
    """

    def __init__(
        self,
        engine: PriceSyncEngine,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine to drive.
            hour: Hour to run the daily retention job (0-23).
            minute: Minute to run the daily retention job (0-59).
        """
        self._engine = engine
        self._hour = hour
        self._minute = minute
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def job_ids(self) -> list[str]:
        """Get the ids of scheduled jobs."""
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    async def _tenants(self) -> list[str]:
        return await asyncio.to_thread(self._engine.db.list_sync_tenants)

    async def _sync_tick(self, cadence: SyncCadence) -> None:
        """Job function for a cadence tick."""
        for tenant_id in await self._tenants():
            try:
                await self._engine.trigger_sync(tenant_id, cadence)
            except (PriceSyncError, SQLAlchemyError):
                logger.exception(
                    "Could not trigger %s sync for tenant %s", cadence.value, tenant_id
                )

    async def _detection_tick(self) -> None:
        """Job function for the conflict sweep."""
        for tenant_id in await self._tenants():
            try:
                await self._engine.detect_conflicts(tenant_id)
            except (PriceSyncError, SQLAlchemyError):
                logger.exception("Conflict sweep failed for tenant %s", tenant_id)

    async def _retention_job(self) -> None:
        """Job function for scheduled retention."""
        logger.info("Starting scheduled retention")
        try:
            await asyncio.to_thread(self._engine.run_retention)
        except SQLAlchemyError:
            logger.exception("Error during scheduled retention")

    def start(self) -> None:
        """Start the scheduler (requires a running event loop)."""
        if self._scheduler is not None:
            return  # Already running

        config = self._engine.config.current()
        self._scheduler = AsyncIOScheduler()

        for cadence, seconds in (
            (SyncCadence.REALTIME, config.realtime_interval),
            (SyncCadence.INCREMENTAL, config.incremental_interval),
            (SyncCadence.BULK, config.bulk_interval),
        ):
            self._scheduler.add_job(
                self._sync_tick,
                trigger=IntervalTrigger(seconds=seconds),
                args=[cadence],
                id=f"sync_{cadence.value}",
                name=f"{cadence.value.capitalize()} sync",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self._scheduler.add_job(
            self._detection_tick,
            trigger=IntervalTrigger(seconds=config.detection_interval),
            id="conflict_sweep",
            name="Conflict detection sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self._retention_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="retention",
            name="Daily retention",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started (realtime %ss, incremental %ss, bulk %ss, "
            "sweep %ss, retention daily at %02d:%02d)",
            config.realtime_interval,
            config.incremental_interval,
            config.bulk_interval,
            config.detection_interval,
            self._hour,
            self._minute,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    async def run_now(self, cadence: SyncCadence) -> None:
        """Trigger one cadence for every tenant immediately."""
        await self._sync_tick(cadence)

    async def sweep_now(self) -> None:
        """Run the conflict sweep for every tenant immediately."""
        await self._detection_tick()

    def retention_now(self) -> tuple[int, int]:
        """Run retention immediately (manual trigger).

        Returns:
            Tuple of (conflicts archived, price history rows purged).
        """
        return self._engine.run_retention()
