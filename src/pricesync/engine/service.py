"""PriceSyncEngine: the operations exposed to the API, CLI and scheduler.

Wires the store, rule cache, dispatcher, detector, orchestrator and event
bus together. All store access from async code goes through
asyncio.to_thread so the event loop never blocks on SQLite.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pricesync.core.config import ConfigStore
from pricesync.core.types import RuleType, SyncCadence
from pricesync.engine.detector import ConflictDetector
from pricesync.engine.dispatcher import ConflictDispatcher, ManualResolution, ResolveResult
from pricesync.engine.errors import JobNotFoundError, RuleNotFoundError
from pricesync.engine.events import EventBus, EventPublisher, forward_to, log_event
from pricesync.engine.metrics import EngineMetrics
from pricesync.engine.orchestrator import RecordOutcome, SyncOrchestrator
from pricesync.engine.rules import RuleCache, RuleDefinition, validate_rule

if TYPE_CHECKING:
    from pricesync.core.config import TenantPolicy
    from pricesync.engine.erp import ErpClient, ErpFact
    from pricesync.server.database import Database
    from pricesync.server.models import (
        Conflict,
        PriceAnalytics,
        PriceChange,
        PricingRule,
        SyncJob,
    )

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricingRuleInput:
    """A rule as submitted by an admin (create when id is None)."""

    rule_name: str
    rule_type: RuleType
    actions: Sequence[Mapping[str, Any]]
    conditions: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 0
    is_active: bool = True
    id: int | None = None


class PriceSyncEngine:
    """Facade over the price synchronization engine."""

    def __init__(
        self,
        db: Database,
        erp: ErpClient,
        config: ConfigStore | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            db: Store.
            erp: ERP data source.
            config: Configuration holder (defaults apply when None).
            publisher: Optional external event publisher.
        """
        self.db = db
        self.config = config or ConfigStore()
        self.bus = EventBus()
        self.metrics = EngineMetrics()
        self.bus.subscribe(log_event)
        self.bus.subscribe(self.metrics.handle)
        if publisher is not None:
            self.bus.subscribe(forward_to(publisher))

        self.rules = RuleCache(self._load_rules)
        self.dispatcher = ConflictDispatcher(db, self.config, self.bus)
        self.detector = ConflictDetector(db, self.config, self.dispatcher)
        self.orchestrator = SyncOrchestrator(
            db, erp, self.config, self.rules, self.detector, self.bus
        )

    def _load_rules(self, tenant_id: str, rule_type: RuleType) -> list[RuleDefinition]:
        return [
            RuleDefinition.from_record(record)
            for record in self.db.list_rules(tenant_id, rule_type.value, active_only=True)
        ]

    async def start(self) -> None:
        """Start the event consumer and fail jobs orphaned by a previous run."""
        self.bus.start()
        await self.orchestrator.recover_stale_jobs()

    async def stop(self) -> None:
        """Cancel in-flight jobs and flush pending events."""
        await self.orchestrator.shutdown()
        await self.bus.stop()

    # === Sync ===

    async def trigger_sync(
        self,
        tenant_id: str,
        cadence: SyncCadence,
        external_ids: Sequence[str] | None = None,
    ) -> str:
        """Start a sync job; returns the running job's id if one is in flight."""
        return await self.orchestrator.trigger_sync(tenant_id, cadence, external_ids)

    async def run_sync(self, tenant_id: str, cadence: SyncCadence) -> SyncJob:
        """Run a sync job to completion."""
        return await self.orchestrator.run_sync(tenant_id, cadence)

    async def get_job_status(self, job_id: str) -> SyncJob:
        """Get a sync job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await asyncio.to_thread(self.db.get_job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def list_jobs(
        self,
        tenant_id: str | None = None,
        cadence: SyncCadence | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        return await asyncio.to_thread(
            self.db.list_jobs, tenant_id, cadence.value if cadence else None, status, limit
        )

    async def handle_webhook(self, tenant_id: str, fact: ErpFact) -> RecordOutcome | None:
        """Apply a pushed ERP price update immediately."""
        return await self.orchestrator.handle_webhook(tenant_id, fact)

    async def handle_order_webhook(
        self,
        tenant_id: str,
        external_id: str,
        status: str,
        total: float,
        updated_at: datetime,
    ) -> None:
        """Record a pushed ERP order state for the next conflict sweep."""
        await asyncio.to_thread(
            self.db.upsert_erp_order, tenant_id, external_id, status, total, updated_at
        )

    # === Conflicts ===

    async def detect_conflicts(self, tenant_id: str) -> list[Conflict]:
        return await self.detector.detect_conflicts(tenant_id)

    async def list_conflicts(
        self,
        status: str | None = None,
        conflict_type: str | None = None,
        severity: str | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[Conflict]:
        return await asyncio.to_thread(
            self.db.list_conflicts,
            tenant_id,
            status,
            conflict_type,
            severity,
            None,
            limit,
        )

    async def resolve_conflict(
        self,
        conflict_id: str,
        request: ManualResolution,
        operator: str,
    ) -> ResolveResult:
        return await self.dispatcher.resolve_conflict(conflict_id, request, operator)

    async def ignore_conflict(self, conflict_id: str, reason: str, operator: str) -> Conflict:
        return await self.dispatcher.ignore_conflict(conflict_id, reason, operator)

    async def conflict_metrics(self, tenant_id: str | None = None) -> dict[str, Any]:
        return await asyncio.to_thread(self.db.conflict_metrics, tenant_id)

    # === Pricing rules ===

    async def upsert_pricing_rule(self, tenant_id: str, rule: PricingRuleInput) -> int:
        """Create or update a pricing rule and invalidate the tenant's cache.

        Raises:
            RuleError: If the rule is malformed.
            RuleNotFoundError: If rule.id is unknown for the tenant.
        """
        validate_rule(rule.conditions, rule.actions)
        record, previous_type = await asyncio.to_thread(
            self.db.upsert_rule,
            tenant_id,
            rule.rule_name,
            rule.rule_type.value,
            dict(rule.conditions),
            [dict(action) for action in rule.actions],
            rule.priority,
            rule.is_active,
            rule.id,
        )
        self.rules.invalidate(tenant_id, rule.rule_type)
        if previous_type is not None and previous_type != rule.rule_type.value:
            self.rules.invalidate(tenant_id, RuleType(previous_type))
        logger.info(
            "%s pricing rule %s (id=%d) for tenant %s",
            "Updated" if rule.id is not None else "Created",
            record.rule_name,
            record.id,
            tenant_id,
        )
        return record.id

    async def delete_pricing_rule(self, tenant_id: str, rule_id: int) -> None:
        """Delete a pricing rule.

        Raises:
            RuleNotFoundError: If the rule does not exist for the tenant.
        """
        rule = await asyncio.to_thread(self.db.get_rule, rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            raise RuleNotFoundError(f"Pricing rule not found: {rule_id}")
        await asyncio.to_thread(self.db.delete_rule, rule_id)
        self.rules.invalidate(tenant_id, RuleType(rule.rule_type))
        logger.info(
            "Deleted pricing rule %s (id=%d) for tenant %s", rule.rule_name, rule_id, tenant_id
        )

    async def list_pricing_rules(
        self, tenant_id: str, rule_type: RuleType | None = None
    ) -> list[PricingRule]:
        return await asyncio.to_thread(
            self.db.list_rules, tenant_id, rule_type.value if rule_type else None
        )

    # === History & analytics ===

    async def price_history(
        self, tenant_id: str, product_id: str | None = None, limit: int = 100
    ) -> list[PriceChange]:
        return await asyncio.to_thread(self.db.list_price_history, tenant_id, product_id, limit)

    async def price_analytics(self, tenant_id: str, days: int = 30) -> list[PriceAnalytics]:
        return await asyncio.to_thread(self.db.list_price_analytics, tenant_id, days)

    # === Configuration ===

    def tenant_policy(self, tenant_id: str) -> TenantPolicy:
        return self.config.current().policy_for(tenant_id)

    def update_tenant_policy(self, tenant_id: str, changes: Mapping[str, Any]) -> TenantPolicy:
        """Swap in a new policy for a tenant; running jobs keep their snapshot.

        Raises:
            ValueError: If a value is invalid.
        """
        policy = self.config.update_tenant_policy(tenant_id, dict(changes))
        logger.info("Updated policy for tenant %s: %s", tenant_id, sorted(changes))
        return policy

    # === Maintenance ===

    def run_retention(self) -> tuple[int, int]:
        """Archive old closed conflicts and purge old price history.

        Returns:
            Tuple of (conflicts archived, price history rows purged).
        """
        config = self.config.current()
        archived = self.db.archive_conflicts(config.conflict_retention_days)
        purged = self.db.purge_price_history(config.price_history_retention_days)
        if archived or purged:
            logger.info(
                "Retention: %d conflict(s) archived, %d price history row(s) purged",
                archived,
                purged,
            )
        else:
            logger.debug("Retention: nothing to archive or purge")
        return archived, purged
