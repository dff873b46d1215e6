"""Sync orchestrator: runs the three sync cadences.

Cadences:
- realtime: ERP facts updated within the last few minutes, small
  sequential batches
- incremental: ERP facts updated since the last completed incremental
  job started
- bulk: the whole local catalog, fixed-size batches started with a
  stagger and run with bounded concurrency

Per-record pipeline: ERP fact -> pricing rules -> change classifier ->
transactional apply + price history row. A failing record increments
failed_count and never aborts its batch; an ERP failure or a timeout
fails the whole job.

One job may be active per (tenant, cadence). Triggering while one is
pending or running returns the existing job id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from pricesync.core.timeutil import as_utc, utcnow
from pricesync.core.types import JobStatus, SyncCadence
from pricesync.engine.classifier import classify
from pricesync.engine.errors import (
    ConcurrentModificationError,
    ErpTimeoutError,
    JobNotFoundError,
)
from pricesync.engine.events import JobCompleted, JobStarted
from pricesync.engine.jobs import JobCounters
from pricesync.engine.rules import EntityAttributes, RuleResult, apply_rules

if TYPE_CHECKING:
    from pricesync.core.config import ConfigStore, EngineConfig, TenantPolicy
    from pricesync.engine.detector import ConflictDetector
    from pricesync.engine.erp import ErpClient, ErpFact
    from pricesync.engine.events import EventBus
    from pricesync.engine.rules import RuleCache, RuleSnapshot
    from pricesync.server.database import Database
    from pricesync.server.models import Product, SyncJob

logger = logging.getLogger(__name__)

WEBHOOK_SYNC_TYPE = "webhook"

WorkItem = tuple["Product", "ErpFact | None"]


class RecordOutcome(str, Enum):
    """What the per-record pipeline did with one product."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    DEFERRED = "deferred"  # concurrent local edit, handed to conflict detection
    STOCK_ONLY = "stock_only"  # price rejected, stock applied


def _chunks(items: Sequence[WorkItem], size: int) -> list[list[WorkItem]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _pair(products: list[Product], facts: list[ErpFact]) -> list[WorkItem]:
    by_external_id = {fact.external_id: fact for fact in facts}
    return [(product, by_external_id.get(product.external_id or "")) for product in products]


class SyncOrchestrator:
    """Owns sync jobs for every tenant and cadence."""

    def __init__(
        self,
        db: Database,
        erp: ErpClient,
        config: ConfigStore,
        rules: RuleCache,
        detector: ConflictDetector,
        bus: EventBus,
    ) -> None:
        self._db = db
        self._erp = erp
        self._config = config
        self._rules = rules
        self._detector = detector
        self._bus = bus
        self._active: dict[tuple[str, SyncCadence], str] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    # === Job lifecycle ===

    async def trigger_sync(
        self,
        tenant_id: str,
        cadence: SyncCadence,
        external_ids: Sequence[str] | None = None,
    ) -> str:
        """Start a sync job unless one is already active for (tenant, cadence).

        Args:
            tenant_id: Tenant to sync.
            cadence: Which cadence to run.
            external_ids: Restrict the job to these products.

        Returns:
            The new job id, or the id of the job already in flight.
        """
        key = (tenant_id, cadence)
        async with self._lock:
            active = self._active.get(key)
            if active is None:
                running = await asyncio.to_thread(
                    self._db.list_jobs, tenant_id, cadence.value, JobStatus.RUNNING.value, 1
                )
                if running:
                    active = running[0].id
            if active is not None:
                logger.warning(
                    "Skipping %s sync for tenant %s: job %s still in flight",
                    cadence.value,
                    tenant_id,
                    active,
                )
                return active

            job = await asyncio.to_thread(self._db.create_job, tenant_id, cadence.value)
            self._active[key] = job.id
            task = asyncio.create_task(
                self._run_job(job.id, tenant_id, cadence, external_ids),
                name=f"sync-{cadence.value}-{tenant_id}",
            )
            self._tasks[job.id] = task
            task.add_done_callback(lambda _t: self._forget(job.id, key))
        return job.id

    def _forget(self, job_id: str, key: tuple[str, SyncCadence]) -> None:
        self._tasks.pop(job_id, None)
        if self._active.get(key) == job_id:
            del self._active[key]

    def active_jobs(self) -> dict[tuple[str, SyncCadence], str]:
        """Get a copy of the in-flight job registry."""
        return dict(self._active)

    async def wait(self, job_id: str) -> SyncJob:
        """Wait for an in-process job to finish and return its final record.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        job = await asyncio.to_thread(self._db.get_job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def run_sync(
        self,
        tenant_id: str,
        cadence: SyncCadence,
        external_ids: Sequence[str] | None = None,
    ) -> SyncJob:
        """Trigger a job and wait for it to finish."""
        job_id = await self.trigger_sync(tenant_id, cadence, external_ids)
        return await self.wait(job_id)

    async def shutdown(self) -> None:
        """Cancel in-flight jobs; they are recorded as failed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def recover_stale_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process.

        Must run before any job is started in this process.
        """
        count = await asyncio.to_thread(self._db.fail_stale_jobs)
        if count:
            logger.warning("Marked %d interrupted sync job(s) as failed", count)
        return count

    async def _run_job(
        self,
        job_id: str,
        tenant_id: str,
        cadence: SyncCadence,
        external_ids: Sequence[str] | None,
    ) -> None:
        config = self._config.current()
        policy = config.policy_for(tenant_id)
        counters = JobCounters()
        started = time.monotonic()

        try:
            await asyncio.to_thread(self._db.transition_job, job_id, JobStatus.RUNNING)
        except SQLAlchemyError:
            logger.exception("Could not start sync job %s for tenant %s", job_id, tenant_id)
            return
        self._bus.publish(JobStarted(job_id=job_id, tenant_id=tenant_id, cadence=cadence.value))
        logger.info("Started %s sync job %s for tenant %s", cadence.value, job_id, tenant_id)

        try:
            async with asyncio.timeout(config.job_timeout):
                snapshot = await asyncio.to_thread(self._rules.snapshot, tenant_id)
                if cadence == SyncCadence.BULK:
                    await self._run_bulk(
                        job_id, tenant_id, config, policy, snapshot, counters, external_ids
                    )
                else:
                    await self._run_windowed(
                        job_id, tenant_id, cadence, config, policy, snapshot, counters, external_ids
                    )
        except asyncio.CancelledError:
            await self._fail(
                job_id, tenant_id, cadence, counters, started, "Cancelled", "Job was cancelled"
            )
            raise
        except TimeoutError:
            logger.error(
                "Sync job %s for tenant %s exceeded %ss", job_id, tenant_id, config.job_timeout
            )
            await self._fail(
                job_id,
                tenant_id,
                cadence,
                counters,
                started,
                "JobTimeout",
                f"Job exceeded {config.job_timeout}s",
            )
            return
        except Exception as e:
            logger.exception("Sync job %s for tenant %s failed", job_id, tenant_id)
            await self._fail(
                job_id, tenant_id, cadence, counters, started, type(e).__name__, str(e)
            )
            return

        job = await asyncio.to_thread(
            self._db.transition_job,
            job_id,
            JobStatus.COMPLETED,
            total_count=counters.total,
            processed_count=counters.processed,
            updated_count=counters.updated,
            failed_count=counters.failed,
            performance_metrics=counters.performance_metrics(time.monotonic() - started),
        )
        logger.info(
            "Completed %s sync job %s for tenant %s: %d processed, %d updated, %d failed",
            cadence.value,
            job_id,
            tenant_id,
            job.processed_count,
            job.updated_count,
            job.failed_count,
        )
        self._bus.publish(
            JobCompleted(
                job_id=job_id,
                tenant_id=tenant_id,
                cadence=cadence.value,
                status=JobStatus.COMPLETED.value,
                total=counters.total,
                processed=counters.processed,
                updated=counters.updated,
                failed=counters.failed,
            )
        )

        if cadence == SyncCadence.BULK:
            try:
                await asyncio.to_thread(self._db.generate_price_analytics, tenant_id)
            except SQLAlchemyError:
                logger.exception("Failed to generate price analytics for tenant %s", tenant_id)

    async def _fail(
        self,
        job_id: str,
        tenant_id: str,
        cadence: SyncCadence,
        counters: JobCounters,
        started: float,
        error_type: str,
        message: str,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._db.transition_job,
                job_id,
                JobStatus.FAILED,
                total_count=counters.total,
                processed_count=counters.processed,
                updated_count=counters.updated,
                failed_count=counters.failed,
                error_details={"type": error_type, "message": message},
                performance_metrics=counters.performance_metrics(time.monotonic() - started),
            )
        except SQLAlchemyError:
            logger.exception("Could not record failure of sync job %s", job_id)
        self._bus.publish(
            JobCompleted(
                job_id=job_id,
                tenant_id=tenant_id,
                cadence=cadence.value,
                status=JobStatus.FAILED.value,
                total=counters.total,
                processed=counters.processed,
                updated=counters.updated,
                failed=counters.failed,
                error=message,
            )
        )

    # === Cadences ===

    async def _fetch(
        self,
        tenant_id: str,
        config: EngineConfig,
        external_ids: Sequence[str] | None = None,
        updated_since: datetime | None = None,
    ) -> list[ErpFact]:
        try:
            return await asyncio.wait_for(
                self._erp.fetch_prices(tenant_id, external_ids, updated_since=updated_since),
                timeout=config.request_timeout,
            )
        except TimeoutError as e:
            raise ErpTimeoutError(
                f"ERP did not answer within {config.request_timeout}s"
            ) from e

    def _mirror_sync(self, tenant_id: str, facts: list[ErpFact]) -> None:
        for fact in facts:
            try:
                self._db.upsert_erp_product(
                    tenant_id,
                    fact.external_id,
                    fact.price,
                    fact.stock,
                    fact.updated_at,
                    name=fact.name,
                    description=fact.description,
                )
            except SQLAlchemyError:
                logger.exception("Failed to mirror ERP product %s", fact.external_id)

    async def _run_windowed(
        self,
        job_id: str,
        tenant_id: str,
        cadence: SyncCadence,
        config: EngineConfig,
        policy: TenantPolicy,
        snapshot: RuleSnapshot,
        counters: JobCounters,
        external_ids: Sequence[str] | None,
    ) -> None:
        """Realtime and incremental: ERP-side change window, sequential batches."""
        if cadence == SyncCadence.REALTIME:
            since = utcnow() - timedelta(minutes=config.realtime_window_minutes)
            batch_size = config.realtime_batch_size
        else:
            last = await asyncio.to_thread(
                self._db.last_completed_job, tenant_id, SyncCadence.INCREMENTAL.value
            )
            since = as_utc(last.started_at) if last else None
            batch_size = config.batch_size

        facts = await self._fetch(tenant_id, config, external_ids, updated_since=since)
        await asyncio.to_thread(self._mirror_sync, tenant_id, facts)
        if not facts:
            logger.debug("No ERP changes for tenant %s since %s", tenant_id, since)
            return

        products = await asyncio.to_thread(
            self._db.list_products, tenant_id, [fact.external_id for fact in facts]
        )
        work = _pair(products, facts)
        counters.total = len(work)

        for batch in _chunks(work, batch_size):
            result = await self._process_batch(tenant_id, batch, snapshot, policy, cadence.value)
            await self._merge(job_id, counters, result)

    async def _run_bulk(
        self,
        job_id: str,
        tenant_id: str,
        config: EngineConfig,
        policy: TenantPolicy,
        snapshot: RuleSnapshot,
        counters: JobCounters,
        external_ids: Sequence[str] | None,
    ) -> None:
        """Whole catalog: staggered batches under a concurrency cap."""
        products = await asyncio.to_thread(self._db.list_products, tenant_id, external_ids)
        counters.total = len(products)
        batches = [
            products[i : i + config.batch_size]
            for i in range(0, len(products), config.batch_size)
        ]
        semaphore = asyncio.Semaphore(config.max_concurrent_batches)

        async def run_batch(index: int, batch: list[Product]) -> None:
            await asyncio.sleep(index * config.batch_stagger)
            async with semaphore:
                facts = await self._fetch(
                    tenant_id, config, [p.external_id for p in batch if p.external_id]
                )
                await asyncio.to_thread(self._mirror_sync, tenant_id, facts)
                result = await self._process_batch(
                    tenant_id, _pair(batch, facts), snapshot, policy, SyncCadence.BULK.value
                )
                await self._merge(job_id, counters, result)
                logger.debug(
                    "Bulk batch %d/%d for tenant %s: %d updated, %d failed",
                    index + 1,
                    len(batches),
                    tenant_id,
                    result.updated,
                    result.failed,
                )

        try:
            async with asyncio.TaskGroup() as group:
                for index, batch in enumerate(batches):
                    group.create_task(run_batch(index, batch))
        except ExceptionGroup as eg:
            # First failure stops the job; the TaskGroup cancelled the rest
            raise eg.exceptions[0] from None

    async def _merge(self, job_id: str, counters: JobCounters, batch: JobCounters) -> None:
        counters.merge(batch)
        try:
            await asyncio.to_thread(
                self._db.update_job_progress,
                job_id,
                counters.total,
                counters.processed,
                counters.updated,
                counters.failed,
            )
        except SQLAlchemyError:
            logger.warning("Could not record progress of job %s", job_id, exc_info=True)

    # === Per-record pipeline ===

    async def _process_batch(
        self,
        tenant_id: str,
        work: list[WorkItem],
        snapshot: RuleSnapshot,
        policy: TenantPolicy,
        sync_type: str,
    ) -> JobCounters:
        batch = JobCounters()
        started = time.monotonic()
        for product, fact in work:
            batch.processed += 1
            if fact is None:
                logger.debug(
                    "No ERP price for %s (tenant %s), skipping", product.external_id, tenant_id
                )
                continue
            try:
                outcome = await self.process_record(product, fact, snapshot, policy, sync_type)
            except Exception:
                batch.failed += 1
                logger.exception(
                    "Failed to sync product %s (%s) for tenant %s",
                    product.id,
                    product.external_id,
                    tenant_id,
                )
                continue
            if outcome in (RecordOutcome.UPDATED, RecordOutcome.STOCK_ONLY):
                batch.updated += 1
            if outcome in (RecordOutcome.REJECTED, RecordOutcome.STOCK_ONLY):
                batch.rejected += 1
        batch.batch_durations.append(time.monotonic() - started)
        return batch

    async def process_record(
        self,
        product: Product,
        fact: ErpFact,
        snapshot: RuleSnapshot,
        policy: TenantPolicy,
        sync_type: str,
    ) -> RecordOutcome:
        """Run one ERP fact through rules, classification and apply.

        Args:
            product: Local product as read at batch start.
            fact: ERP price/stock for the product.
            snapshot: Rule snapshot taken at job start.
            policy: Tenant thresholds taken at job start.
            sync_type: Recorded on the price history row.

        Returns:
            What happened to the record.
        """
        try:
            result = apply_rules(snapshot, EntityAttributes.from_product(product), fact.price)
        except ValueError:
            # Non-positive ERP price: let the classifier reject it
            result = RuleResult(final_value=fact.price)
        proposed = result.final_value
        trace = [rule.to_dict() for rule in result.applied_rules]
        decision = classify(product.price, proposed, policy)

        if decision.rejected:
            await asyncio.to_thread(
                self._db.record_rejected_change,
                product,
                proposed,
                sync_type,
                trace,
                decision.reason.value,
            )
            logger.info(
                "Rejected price %.2f -> %.2f for %s (%s, %.1f%%)",
                product.price,
                proposed,
                product.external_id,
                decision.reason.value,
                decision.change_percent,
            )

        new_price = proposed if decision.should_update else None
        new_stock = fact.stock if fact.stock is not None and fact.stock != product.stock else None
        if new_price is None and new_stock is None:
            if decision.rejected:
                return RecordOutcome.REJECTED
            await asyncio.to_thread(self._db.mark_synced, product.id)
            return RecordOutcome.UNCHANGED

        try:
            await asyncio.to_thread(
                self._db.apply_price_change,
                product.id,
                product.price,
                new_price,
                new_stock,
                sync_type,
                trace,
                decision.reason.value,
            )
        except ConcurrentModificationError:
            logger.info(
                "Product %s changed during sync, checking for conflicts", product.external_id
            )
            await self._detector.check_entity(product.tenant_id, product.id)
            return RecordOutcome.DEFERRED
        return RecordOutcome.STOCK_ONLY if decision.rejected else RecordOutcome.UPDATED

    async def handle_webhook(self, tenant_id: str, fact: ErpFact) -> RecordOutcome | None:
        """Push one ERP fact through the per-record pipeline.

        Returns:
            The record outcome, or None if no local product matches.
        """
        config = self._config.current()
        await asyncio.to_thread(self._mirror_sync, tenant_id, [fact])
        products = await asyncio.to_thread(self._db.list_products, tenant_id, [fact.external_id])
        if not products:
            logger.debug("Webhook for unknown product %s (tenant %s)", fact.external_id, tenant_id)
            return None
        snapshot = await asyncio.to_thread(self._rules.snapshot, tenant_id)
        return await self.process_record(
            products[0], fact, snapshot, config.policy_for(tenant_id), WEBHOOK_SYNC_TYPE
        )
