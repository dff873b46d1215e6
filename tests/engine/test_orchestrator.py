"""Tests for sync jobs and the per-record pipeline."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any

import pytest

from pricesync.core.config import TenantPolicy
from pricesync.core.timeutil import as_utc, utcnow
from pricesync.core.types import (
    ConflictStatus,
    JobStatus,
    RuleType,
    SyncCadence,
    ValidationStatus,
)
from pricesync.engine.erp import ErpFact
from pricesync.engine.errors import ErpAuthError, ErpUnavailableError
from pricesync.engine.orchestrator import RecordOutcome
from pricesync.engine.rules import RuleSnapshot
from pricesync.engine.service import PriceSyncEngine, PricingRuleInput
from pricesync.server.database import Database
from tests.fakes import TENANT, FakeErpClient, RecordingPublisher


def seed_catalog(
    db: Database, erp: FakeErpClient, count: int, local: float = 100.0, remote: float = 105.0
) -> list[str]:
    ids = []
    for i in range(count):
        external_id = f"SKU-{i:03d}"
        product = db.create_product(TENANT, f"Product {i}", local, stock=5, external_id=external_id)
        erp.set_price(TENANT, external_id, remote, stock=5)
        ids.append(product.id)
    return ids


class TestBulkSync:
    """Tests for the bulk cadence."""

    @pytest.mark.asyncio
    async def test_updates_catalog(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        ids = seed_catalog(db, erp, 3)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.COMPLETED.value
        assert job.total_count == 3
        assert job.processed_count == 3
        assert job.updated_count == 3
        assert job.failed_count == 0
        assert job.started_at is not None
        assert job.ended_at is not None
        assert job.performance_metrics["batches"] == 1
        for product_id in ids:
            assert db.get_product(product_id).price == 105.0
        history = db.list_price_history(TENANT)
        assert len(history) == 3
        assert {h.sync_type for h in history} == {"bulk"}

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        engine.config.update(batch_size=2, max_concurrent_batches=2)
        seed_catalog(db, erp, 5)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.processed_count == 5
        assert job.performance_metrics["batches"] == 3
        assert sorted(len(call["external_ids"]) for call in erp.calls) == [1, 2, 2]

    @pytest.mark.asyncio
    async def test_concurrent_batches_capped(
        self,
        engine: PriceSyncEngine,
        db: Database,
        erp: FakeErpClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """No more than max_concurrent_batches ERP fetches should be in flight."""
        engine.config.update(batch_size=1, max_concurrent_batches=2)
        seed_catalog(db, erp, 6)
        erp.delay = 0.05
        original = erp.fetch_prices
        in_flight = 0
        peak = 0

        async def counting(*args: Any, **kwargs: Any) -> list[ErpFact]:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                return await original(*args, **kwargs)
            finally:
                in_flight -= 1

        monkeypatch.setattr(erp, "fetch_prices", counting)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.updated_count == 6
        assert len(erp.calls) == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_batch_starts_are_staggered(
        self,
        engine: PriceSyncEngine,
        db: Database,
        erp: FakeErpClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Batch i should not start before i * batch_stagger."""
        stagger = 0.05
        engine.config.update(batch_size=1, max_concurrent_batches=10, batch_stagger=stagger)
        seed_catalog(db, erp, 4)
        original = erp.fetch_prices
        starts: list[float] = []

        async def timed(*args: Any, **kwargs: Any) -> list[ErpFact]:
            starts.append(time.monotonic())
            return await original(*args, **kwargs)

        monkeypatch.setattr(erp, "fetch_prices", timed)

        began = time.monotonic()
        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.updated_count == 4
        offsets = sorted(start - began for start in starts)
        assert len(offsets) == 4
        for index, offset in enumerate(offsets):
            assert offset >= index * stagger - 0.01

    @pytest.mark.asyncio
    async def test_mistyped_rule_does_not_fail_records(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """A stored rule with a wrongly typed condition is skipped for every record."""
        ids = seed_catalog(db, erp, 3)
        db.upsert_rule(
            TENANT,
            "broken",
            RuleType.MARKUP.value,
            {"categories": 5},
            [{"type": "percentage_markup", "value": 10}],
            priority=5,
        )

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.COMPLETED.value
        assert job.failed_count == 0
        assert job.updated_count == 3
        for product_id in ids:
            assert db.get_product(product_id).price == 105.0

    @pytest.mark.asyncio
    async def test_regenerates_analytics(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 2)
        await engine.run_sync(TENANT, SyncCadence.BULK)

        analytics = db.list_price_analytics(TENANT)
        assert len(analytics) == 1
        assert analytics[0].products_with_price_changes == 2
        assert analytics[0].total_price_increase_amount == 10.0

    @pytest.mark.asyncio
    async def test_single_job_in_flight(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """A second trigger while a bulk job runs should return the same id."""
        seed_catalog(db, erp, 2)
        erp.delay = 0.2

        first = await engine.trigger_sync(TENANT, SyncCadence.BULK)
        second = await engine.trigger_sync(TENANT, SyncCadence.BULK)

        assert first == second
        assert engine.orchestrator.active_jobs() == {(TENANT, SyncCadence.BULK): first}
        job = await engine.orchestrator.wait(first)
        assert job.status == JobStatus.COMPLETED.value
        assert len(db.list_jobs(TENANT, SyncCadence.BULK.value)) == 1
        assert engine.orchestrator.active_jobs() == {}

    @pytest.mark.asyncio
    async def test_cadences_run_independently(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 1)
        erp.delay = 0.1

        bulk = await engine.trigger_sync(TENANT, SyncCadence.BULK)
        incremental = await engine.trigger_sync(TENANT, SyncCadence.INCREMENTAL)

        assert bulk != incremental
        await engine.orchestrator.wait(bulk)
        await engine.orchestrator.wait(incremental)

    @pytest.mark.asyncio
    async def test_record_failure_does_not_abort_job(
        self,
        engine: PriceSyncEngine,
        db: Database,
        erp: FakeErpClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """One failing record out of ten should be counted, not fatal."""
        seed_catalog(db, erp, 10)
        original = engine.orchestrator.process_record
        calls = 0

        async def flaky(*args: Any, **kwargs: Any) -> RecordOutcome:
            nonlocal calls
            calls += 1
            if calls == 4:
                raise RuntimeError("boom")
            return await original(*args, **kwargs)

        monkeypatch.setattr(engine.orchestrator, "process_record", flaky)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.COMPLETED.value
        assert job.processed_count == 10
        assert job.failed_count == 1
        assert job.updated_count == 9

    @pytest.mark.asyncio
    async def test_missing_erp_fact_counts_as_processed(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 1)
        db.create_product(TENANT, "Local only", 10.0, external_id="SKU-LOCAL")

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.processed_count == 2
        assert job.updated_count == 1
        assert job.failed_count == 0

    @pytest.mark.asyncio
    async def test_restricted_to_external_ids(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 3)

        job = await engine.orchestrator.run_sync(TENANT, SyncCadence.BULK, ["SKU-001"])

        assert job.total_count == 1
        assert job.updated_count == 1


class TestJobFailures:
    """Tests for job-level failures."""

    @pytest.mark.asyncio
    async def test_erp_error_fails_job(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 2)
        erp.error = ErpUnavailableError("ERP returned HTTP 503")

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.FAILED.value
        assert job.error_details == {
            "type": "ErpUnavailableError",
            "message": "ERP returned HTTP 503",
        }
        assert db.list_price_history(TENANT) == []

    @pytest.mark.asyncio
    async def test_erp_auth_error_fails_incremental(
        self, engine: PriceSyncEngine, erp: FakeErpClient
    ) -> None:
        erp.error = ErpAuthError("ERP rejected credentials (HTTP 401)")
        job = await engine.run_sync(TENANT, SyncCadence.INCREMENTAL)
        assert job.status == JobStatus.FAILED.value
        assert job.error_details["type"] == "ErpAuthError"

    @pytest.mark.asyncio
    async def test_slow_erp_times_out(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        engine.config.update(request_timeout=0.05)
        seed_catalog(db, erp, 1)
        erp.delay = 0.5

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.FAILED.value
        assert job.error_details["type"] == "ErpTimeoutError"

    @pytest.mark.asyncio
    async def test_job_timeout(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        engine.config.update(job_timeout=0.05)
        seed_catalog(db, erp, 1)
        erp.delay = 0.5

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.status == JobStatus.FAILED.value
        assert job.error_details["type"] == "JobTimeout"

    @pytest.mark.asyncio
    async def test_stale_jobs_failed_on_start(self, engine: PriceSyncEngine, db: Database) -> None:
        """Jobs left running by a crashed process should be failed at startup."""
        stale = db.create_job(TENANT, SyncCadence.BULK.value)
        db.transition_job(stale.id, JobStatus.RUNNING)

        await engine.start()
        try:
            job = db.get_job(stale.id)
        finally:
            await engine.stop()

        assert job.status == JobStatus.FAILED.value
        assert job.error_details["type"] == "Interrupted"

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 1)
        erp.delay = 1.0
        await engine.start()
        job_id = await engine.trigger_sync(TENANT, SyncCadence.BULK)
        await asyncio.sleep(0.05)

        await engine.stop()

        job = db.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_details["type"] == "Cancelled"


class TestWindowedSync:
    """Tests for the realtime and incremental cadences."""

    @pytest.mark.asyncio
    async def test_incremental_uses_last_completed_job(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        seed_catalog(db, erp, 2)

        first = await engine.run_sync(TENANT, SyncCadence.INCREMENTAL)
        second = await engine.run_sync(TENANT, SyncCadence.INCREMENTAL)

        assert erp.calls[0]["updated_since"] is None
        assert erp.calls[1]["updated_since"] == as_utc(first.started_at)
        assert first.updated_count == 2
        assert second.total_count == 0

    @pytest.mark.asyncio
    async def test_realtime_window(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """Only ERP changes from the last few minutes should be synced."""
        db.create_product(TENANT, "Fresh", 100.0, external_id="SKU-NEW")
        db.create_product(TENANT, "Stale", 100.0, external_id="SKU-OLD")
        erp.set_price(TENANT, "SKU-NEW", 110.0)
        erp.set_price(TENANT, "SKU-OLD", 110.0, updated_at=utcnow() - timedelta(hours=1))

        job = await engine.run_sync(TENANT, SyncCadence.REALTIME)

        assert job.total_count == 1
        assert job.updated_count == 1
        since = erp.calls[0]["updated_since"]
        assert utcnow() - since >= timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_mirrors_erp_state(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """Fetched facts should be stored for the conflict detector."""
        db.create_product(TENANT, "Widget", 100.0, external_id="SKU-1")
        erp.set_price(TENANT, "SKU-1", 300.0, name="Widget Pro")

        await engine.run_sync(TENANT, SyncCadence.INCREMENTAL)

        pairs = db.product_pairs(TENANT)
        assert len(pairs) == 1
        assert pairs[0][1].price == 300.0
        assert pairs[0][1].name == "Widget Pro"


class TestProcessRecord:
    """Tests for the per-record pipeline."""

    @pytest.mark.asyncio
    async def test_rules_applied_before_classification(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        product = db.create_product(TENANT, "Widget", 100.0, external_id="SKU-1")
        erp.set_price(TENANT, "SKU-1", 100.0)
        await engine.upsert_pricing_rule(
            TENANT,
            PricingRuleInput(
                rule_name="retail margin",
                rule_type=RuleType.MARKUP,
                actions=[{"type": "percentage_markup", "value": 10}],
            ),
        )

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.updated_count == 1
        assert db.get_product(product.id).price == 110.0
        change = db.list_price_history(TENANT, product.id)[0]
        assert change.applied_rules == [
            {"rule_name": "retail margin", "rule_type": "markup", "before": 100.0, "after": 110.0}
        ]
        assert change.change_reason == "applied"

    @pytest.mark.asyncio
    async def test_cap_exceeded_is_recorded_not_applied(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        product = db.create_product(TENANT, "Widget", 100.0, external_id="SKU-1")
        erp.set_price(TENANT, "SKU-1", 200.0)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.updated_count == 0
        assert db.get_product(product.id).price == 100.0
        change = db.list_price_history(TENANT, product.id)[0]
        assert change.validation_status == ValidationStatus.REJECTED.value
        assert change.change_reason == "exceeds_cap"
        assert job.performance_metrics["rejected"] == 1

    @pytest.mark.asyncio
    async def test_cap_exceeded_with_stock_change_counts_rejection(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """Stock is applied while the rejected price still shows in the job metrics."""
        product = db.create_product(TENANT, "Widget", 100.0, stock=5, external_id="SKU-1")
        erp.set_price(TENANT, "SKU-1", 200.0, stock=9)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        stored = db.get_product(product.id)
        assert stored.price == 100.0
        assert stored.stock == 9
        assert job.updated_count == 1
        assert job.performance_metrics["rejected"] == 1
        change = db.list_price_history(TENANT, product.id)[0]
        assert change.validation_status == ValidationStatus.REJECTED.value

    @pytest.mark.asyncio
    async def test_noise_is_skipped(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        product = db.create_product(TENANT, "Widget", 100.0, stock=5, external_id="SKU-1")
        erp.set_price(TENANT, "SKU-1", 100.3, stock=5)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)

        assert job.updated_count == 0
        assert db.get_product(product.id).price == 100.0
        assert db.list_price_history(TENANT) == []
        assert db.get_product(product.id).last_erp_sync is not None

    @pytest.mark.asyncio
    async def test_stock_only_change(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        product = db.create_product(TENANT, "Widget", 100.0, stock=5, external_id="SKU-1")
        fact = erp.set_price(TENANT, "SKU-1", 100.0, stock=8)

        outcome = await engine.orchestrator.process_record(
            product, fact, RuleSnapshot(TENANT), TenantPolicy(), "bulk"
        )

        assert outcome == RecordOutcome.UPDATED
        stored = db.get_product(product.id)
        assert stored.stock == 8
        assert stored.price == 100.0
        assert db.list_price_history(TENANT) == []

    @pytest.mark.asyncio
    async def test_concurrent_local_edit_is_deferred(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        """A local edit between read and write should hand off to conflict detection."""
        product = db.create_product(TENANT, "Widget", 100.0, external_id="SKU-1")
        fact = erp.set_price(TENANT, "SKU-1", 150.0)
        db.upsert_erp_product(TENANT, "SKU-1", 150.0, None, fact.updated_at)
        db.update_product(product.id, price=120.0)

        outcome = await engine.orchestrator.process_record(
            product,
            ErpFact(external_id="SKU-1", price=110.0, stock=None, updated_at=utcnow()),
            RuleSnapshot(TENANT),
            TenantPolicy(),
            "realtime",
        )

        assert outcome == RecordOutcome.DEFERRED
        assert db.get_product(product.id).price == 120.0
        conflicts = db.list_conflicts(TENANT, status=ConflictStatus.PENDING.value)
        assert [c.entity_id for c in conflicts] == [product.id]


class TestWebhook:
    """Tests for pushed ERP updates."""

    @pytest.mark.asyncio
    async def test_known_product(
        self, engine: PriceSyncEngine, db: Database, erp: FakeErpClient
    ) -> None:
        product = db.create_product(TENANT, "Widget", 100.0, external_id="SKU-1")
        fact = erp.set_price(TENANT, "SKU-1", 104.0)

        outcome = await engine.handle_webhook(TENANT, fact)

        assert outcome == RecordOutcome.UPDATED
        assert db.get_product(product.id).price == 104.0
        assert db.list_price_history(TENANT)[0].sync_type == "webhook"

    @pytest.mark.asyncio
    async def test_unknown_product(self, engine: PriceSyncEngine, erp: FakeErpClient) -> None:
        fact = erp.set_price(TENANT, "SKU-404", 10.0)
        assert await engine.handle_webhook(TENANT, fact) is None


class TestJobEvents:
    """Tests for job lifecycle events."""

    @pytest.mark.asyncio
    async def test_started_and_completed(
        self,
        engine: PriceSyncEngine,
        db: Database,
        erp: FakeErpClient,
        publisher: RecordingPublisher,
    ) -> None:
        seed_catalog(db, erp, 1)

        job = await engine.run_sync(TENANT, SyncCadence.BULK)
        await engine.bus.drain()

        assert publisher.topics() == ["price_sync.job_started", "price_sync.job_completed"]
        completed = publisher.published[1][1]
        assert completed["job_id"] == job.id
        assert completed["status"] == "completed"
        assert completed["updated"] == 1
        snapshot = engine.metrics.snapshot()
        assert snapshot["jobs_completed"] == 1
        assert snapshot["jobs_by_cadence"] == {"bulk": 1}
