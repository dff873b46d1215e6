"""Tests for engine counters."""

from __future__ import annotations

from pricesync.engine.events import ConflictDetected, ConflictResolved, JobCompleted, JobStarted
from pricesync.engine.metrics import EngineMetrics


class TestEngineMetrics:
    """Tests for EngineMetrics."""

    def test_empty_snapshot(self) -> None:
        snapshot = EngineMetrics().snapshot()
        assert snapshot["jobs_started"] == 0
        assert snapshot["jobs_by_cadence"] == {}
        assert snapshot["last_job_at"] == {}

    def test_job_counters(self) -> None:
        metrics = EngineMetrics()
        metrics.handle(JobStarted(job_id="j1", tenant_id="acme", cadence="bulk"))
        metrics.handle(JobStarted(job_id="j2", tenant_id="acme", cadence="realtime"))
        metrics.handle(
            JobCompleted(
                job_id="j1",
                tenant_id="acme",
                cadence="bulk",
                status="completed",
                processed=10,
                updated=7,
                failed=1,
            )
        )
        metrics.handle(
            JobCompleted(
                job_id="j2", tenant_id="acme", cadence="realtime", status="failed", error="down"
            )
        )

        snapshot = metrics.snapshot()
        assert snapshot["jobs_started"] == 2
        assert snapshot["jobs_completed"] == 1
        assert snapshot["jobs_failed"] == 1
        assert snapshot["records_processed"] == 10
        assert snapshot["prices_updated"] == 7
        assert snapshot["records_failed"] == 1
        assert snapshot["jobs_by_cadence"] == {"bulk": 1, "realtime": 1}
        assert "acme" in snapshot["last_job_at"]

    def test_conflict_counters(self) -> None:
        metrics = EngineMetrics()
        metrics.handle(
            ConflictDetected(
                conflict_id="c1",
                tenant_id="acme",
                conflict_type="price_major",
                severity="high",
                entity_id="p1",
                urgent=True,
            )
        )
        metrics.handle(
            ConflictDetected(
                conflict_id="c2",
                tenant_id="acme",
                conflict_type="stock_minor",
                severity="low",
                entity_id="p2",
            )
        )
        metrics.handle(
            ConflictResolved(
                conflict_id="c2", tenant_id="acme", conflict_type="stock_minor", resolved_by="auto"
            )
        )
        metrics.handle(
            ConflictResolved(
                conflict_id="c1", tenant_id="acme", conflict_type="price_major", resolved_by="bob"
            )
        )

        snapshot = metrics.snapshot()
        assert snapshot["conflicts_detected"] == 2
        assert snapshot["urgent_conflicts"] == 1
        assert snapshot["conflicts_resolved"] == 2
        assert snapshot["conflicts_auto_resolved"] == 1
        assert snapshot["conflicts_by_type"] == {"price_major": 1, "stock_minor": 1}

    def test_snapshot_is_a_copy(self) -> None:
        metrics = EngineMetrics()
        snapshot = metrics.snapshot()
        snapshot["jobs_by_cadence"]["bulk"] = 99
        assert metrics.snapshot()["jobs_by_cadence"] == {}
