"""Sync job state machine.

States:
    PENDING -> RUNNING -> COMPLETED
                       -> FAILED

All state transitions are validated. Terminal jobs are audit records and
never change again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pricesync.core.types import JobStatus
from pricesync.engine.errors import InvalidTransitionError

# Valid state transitions
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),  # Terminal
    JobStatus.FAILED: set(),  # Terminal
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def check_transition(current: JobStatus, new: JobStatus) -> None:
    """Validate a job status transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if new not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot transition job from {current.value} to {new.value}")


@dataclass
class JobCounters:
    """Running counters for one job.

    Batches run as tasks on one event loop, so plain increments between
    awaits do not race.
    """

    total: int = 0
    processed: int = 0
    updated: int = 0
    failed: int = 0
    rejected: int = 0
    batches: int = 0
    batch_durations: list[float] = field(default_factory=list)

    def merge(self, other: JobCounters) -> None:
        """Add another counter set (one batch) into this one."""
        self.processed += other.processed
        self.updated += other.updated
        self.failed += other.failed
        self.rejected += other.rejected
        self.batches += 1
        self.batch_durations.extend(other.batch_durations)

    def performance_metrics(self, elapsed: float) -> dict[str, Any]:
        """Summarise timings for the job's performance_metrics column."""
        durations = self.batch_durations
        return {
            "elapsed_seconds": round(elapsed, 3),
            "batches": self.batches,
            "avg_batch_seconds": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "records_per_second": round(self.processed / elapsed, 2) if elapsed > 0 else 0.0,
            "rejected": self.rejected,
        }
