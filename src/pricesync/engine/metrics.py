"""In-process engine counters, fed by the event bus."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any

from pricesync.core.timeutil import to_iso, utcnow
from pricesync.engine.events import (
    ConflictDetected,
    ConflictResolved,
    Event,
    JobCompleted,
    JobStarted,
)


class EngineMetrics:
    """Counters for sync jobs, price updates and conflicts.

    Subscribe handle() to the EventBus; read with snapshot().
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._jobs_by_cadence: Counter[str] = Counter()
        self._conflicts_by_type: Counter[str] = Counter()
        self._last_job_at: dict[str, str] = {}

    def handle(self, event: Event) -> None:
        with self._lock:
            if isinstance(event, JobStarted):
                self._counters["jobs_started"] += 1
                self._jobs_by_cadence[event.cadence] += 1
            elif isinstance(event, JobCompleted):
                self._counters[f"jobs_{event.status}"] += 1
                self._counters["records_processed"] += event.processed
                self._counters["prices_updated"] += event.updated
                self._counters["records_failed"] += event.failed
                self._last_job_at[event.tenant_id] = to_iso(utcnow()) or ""
            elif isinstance(event, ConflictDetected):
                self._counters["conflicts_detected"] += 1
                self._conflicts_by_type[event.conflict_type] += 1
                if event.urgent:
                    self._counters["urgent_conflicts"] += 1
            elif isinstance(event, ConflictResolved):
                self._counters["conflicts_resolved"] += 1
                if event.resolved_by == "auto":
                    self._counters["conflicts_auto_resolved"] += 1

    def snapshot(self) -> dict[str, Any]:
        """Get a copy of all counters."""
        with self._lock:
            return {
                "jobs_started": self._counters["jobs_started"],
                "jobs_completed": self._counters["jobs_completed"],
                "jobs_failed": self._counters["jobs_failed"],
                "records_processed": self._counters["records_processed"],
                "prices_updated": self._counters["prices_updated"],
                "records_failed": self._counters["records_failed"],
                "conflicts_detected": self._counters["conflicts_detected"],
                "conflicts_resolved": self._counters["conflicts_resolved"],
                "conflicts_auto_resolved": self._counters["conflicts_auto_resolved"],
                "urgent_conflicts": self._counters["urgent_conflicts"],
                "jobs_by_cadence": dict(self._jobs_by_cadence),
                "conflicts_by_type": dict(self._conflicts_by_type),
                "last_job_at": dict(self._last_job_at),
            }
