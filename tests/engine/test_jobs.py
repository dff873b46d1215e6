"""Tests for the sync job state machine."""

from __future__ import annotations

import pytest

from pricesync.core.types import JobStatus
from pricesync.engine.errors import InvalidTransitionError
from pricesync.engine.jobs import JobCounters, check_transition


class TestCheckTransition:
    """Tests for check_transition."""

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (JobStatus.PENDING, JobStatus.RUNNING),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.RUNNING, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobStatus.FAILED),
        ],
    )
    def test_valid(self, current: JobStatus, new: JobStatus) -> None:
        check_transition(current, new)

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (JobStatus.PENDING, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobStatus.PENDING),
            (JobStatus.COMPLETED, JobStatus.FAILED),
            (JobStatus.FAILED, JobStatus.RUNNING),
        ],
    )
    def test_invalid(self, current: JobStatus, new: JobStatus) -> None:
        """Terminal jobs should never change again."""
        with pytest.raises(InvalidTransitionError):
            check_transition(current, new)


class TestJobCounters:
    """Tests for JobCounters."""

    def test_merge(self) -> None:
        total = JobCounters(total=10)
        total.merge(JobCounters(processed=4, updated=3, failed=1, batch_durations=[0.5]))
        total.merge(JobCounters(processed=6, updated=2, rejected=1, batch_durations=[1.5]))

        assert total.total == 10
        assert total.processed == 10
        assert total.updated == 5
        assert total.failed == 1
        assert total.rejected == 1
        assert total.batches == 2

    def test_performance_metrics(self) -> None:
        counters = JobCounters(processed=10, batches=2, batch_durations=[1.0, 3.0])
        metrics = counters.performance_metrics(elapsed=5.0)
        assert metrics["avg_batch_seconds"] == 2.0
        assert metrics["records_per_second"] == 2.0
        assert metrics["batches"] == 2

    def test_performance_metrics_empty(self) -> None:
        metrics = JobCounters().performance_metrics(elapsed=0.0)
        assert metrics["avg_batch_seconds"] == 0.0
        assert metrics["records_per_second"] == 0.0
