"""Conflict resolution dispatcher.

Owns the resolution lifecycle of a conflict:
- auto path: eligible conflicts (allow-listed type, severity not high)
  are resolved with the tenant's default strategy and written back
- manual path: everything else is flagged for review and notified once
- operator path: resolve_conflict / ignore_conflict

A failed auto apply leaves the conflict pending with the error attached;
the next detection sweep tries again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from pricesync.core.types import (
    ChosenSource,
    ConflictStatus,
    ConflictType,
    Severity,
    StrategyName,
)
from pricesync.engine.errors import (
    ConcurrentModificationError,
    ConflictNotFoundError,
    ConflictStateError,
    EntityNotFoundError,
)
from pricesync.engine.events import ConflictDetected, ConflictResolved
from pricesync.engine.strategies import (
    RESOLVABLE_FIELDS,
    ResolutionOutcome,
    can_auto_resolve,
    run_strategy,
    side_data,
    smart_merge,
)

if TYPE_CHECKING:
    from pricesync.core.config import ConfigStore, TenantPolicy
    from pricesync.engine.events import EventBus
    from pricesync.server.database import Database
    from pricesync.server.models import Conflict

logger = logging.getLogger(__name__)

AUTO_RESOLVER = "auto"


@dataclass(frozen=True)
class ManualResolution:
    """An operator's resolution request.

    Either name a strategy, or pick a side with chosen_source. CUSTOM
    requires custom_data carrying the explicit override values.
    """

    reason: str = ""
    strategy: StrategyName | None = None
    chosen_source: ChosenSource | None = None
    custom_data: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.chosen_source == ChosenSource.CUSTOM and not self.custom_data:
            raise ValueError("custom_data is required when chosen_source is 'custom'")
        if self.custom_data and self.chosen_source != ChosenSource.CUSTOM:
            raise ValueError("custom_data is only valid with chosen_source 'custom'")


@dataclass(frozen=True)
class ResolveResult:
    """Outcome of resolve_conflict()."""

    success: bool
    conflict: Conflict
    outcome: ResolutionOutcome


def is_urgent(conflict_type: ConflictType, severity: Severity, policy: TenantPolicy) -> bool:
    """High severity or a tenant-critical type needs immediate attention."""
    return severity == Severity.HIGH or conflict_type in policy.critical_types


class ConflictDispatcher:
    """Routes detected conflicts to auto-resolution or manual review."""

    def __init__(self, db: Database, config: ConfigStore, bus: EventBus) -> None:
        self._db = db
        self._config = config
        self._bus = bus

    async def dispatch(self, conflict: Conflict, created: bool) -> Conflict:
        """Handle a freshly detected (or re-detected) conflict.

        Args:
            conflict: Pending conflict as upserted by the detector.
            created: Whether the detector created it on this pass.

        Returns:
            The conflict after dispatch (resolved, or still pending).
        """
        policy = self._config.current().policy_for(conflict.tenant_id)
        conflict_type = ConflictType(conflict.conflict_type)
        severity = Severity(conflict.severity)
        urgent = is_urgent(conflict_type, severity, policy)

        if can_auto_resolve(conflict_type, severity, policy):
            outcome = run_strategy(conflict, policy)
            if outcome.success:
                if created:
                    self._publish_detected(conflict, urgent, requires_manual=False)
                return await self._auto_apply(conflict, outcome)
            logger.debug(
                "Strategy %s declined conflict %s: %s",
                outcome.strategy.value if outcome.strategy else None,
                conflict.id,
                outcome.reason,
            )

        await self._queue_for_review(conflict, urgent)
        return conflict

    async def _auto_apply(self, conflict: Conflict, outcome: ResolutionOutcome) -> Conflict:
        try:
            resolved = await asyncio.to_thread(
                self._db.apply_resolution,
                conflict.id,
                dict(outcome.data),
                outcome.to_dict(),
                AUTO_RESOLVER,
            )
        except ConflictStateError:
            logger.debug("Conflict %s closed concurrently, skipping auto-resolve", conflict.id)
            return conflict
        except (EntityNotFoundError, ConcurrentModificationError, SQLAlchemyError) as e:
            logger.warning("Auto-resolution of conflict %s failed: %s", conflict.id, e)
            await asyncio.to_thread(self._db.set_auto_resolution_error, conflict.id, str(e))
            conflict.auto_resolution_error = str(e)
            return conflict

        logger.info(
            "Auto-resolved %s conflict %s on %s (%s -> %s)",
            conflict.conflict_type,
            conflict.id,
            conflict.entity_id,
            outcome.strategy.value if outcome.strategy else None,
            outcome.chosen_source.value if outcome.chosen_source else None,
        )
        self._publish_resolved(resolved, AUTO_RESOLVER, outcome)
        return resolved

    async def _queue_for_review(self, conflict: Conflict, urgent: bool) -> None:
        first = await asyncio.to_thread(self._db.flag_manual, conflict.id)
        conflict.requires_manual = True
        if first:
            logger.info(
                "Conflict %s (%s, %s) queued for manual review",
                conflict.id,
                conflict.conflict_type,
                conflict.severity,
            )
            self._publish_detected(conflict, urgent, requires_manual=True)

    async def resolve_conflict(
        self,
        conflict_id: str,
        request: ManualResolution,
        operator: str,
    ) -> ResolveResult:
        """Resolve a pending conflict on behalf of an operator.

        Args:
            conflict_id: Conflict to resolve.
            request: Strategy or explicit side/custom values.
            operator: Operator id recorded as resolved_by.

        Returns:
            ResolveResult; success is False when the strategy declined
            (manual_required, non-numeric value_based) and the conflict
            is left pending.

        Raises:
            ConflictNotFoundError: Unknown conflict.
            ConflictStateError: Conflict already resolved or ignored.
            ValueError: custom_data names a field the conflict cannot write.
            EntityNotFoundError: The entity was deleted.
        """
        conflict = await asyncio.to_thread(self._db.get_conflict, conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
        if conflict.status != ConflictStatus.PENDING.value:
            raise ConflictStateError(f"Conflict {conflict_id} is already {conflict.status}")

        policy = self._config.current().policy_for(conflict.tenant_id)
        outcome = self._manual_outcome(conflict, request, policy)
        if not outcome.success:
            return ResolveResult(success=False, conflict=conflict, outcome=outcome)

        resolution = outcome.to_dict()
        resolution["reason"] = request.reason or outcome.reason
        resolution["operator"] = operator
        resolved = await asyncio.to_thread(
            self._db.apply_resolution,
            conflict.id,
            dict(outcome.data),
            resolution,
            operator,
            False,
        )
        logger.info(
            "Conflict %s resolved by %s (%s)",
            conflict.id,
            operator,
            outcome.chosen_source.value if outcome.chosen_source else None,
        )
        self._publish_resolved(resolved, operator, outcome)
        return ResolveResult(success=True, conflict=resolved, outcome=outcome)

    def _manual_outcome(
        self,
        conflict: Conflict,
        request: ManualResolution,
        policy: TenantPolicy,
    ) -> ResolutionOutcome:
        source = request.chosen_source
        if source == ChosenSource.CUSTOM:
            allowed = RESOLVABLE_FIELDS[ConflictType(conflict.conflict_type)]
            unknown = set(request.custom_data or {}) - set(allowed)
            if unknown:
                raise ValueError(
                    f"Cannot set {', '.join(sorted(unknown))} on a "
                    f"{conflict.conflict_type} conflict"
                )
            return ResolutionOutcome(
                success=True,
                strategy=None,
                chosen_source=ChosenSource.CUSTOM,
                data=dict(request.custom_data or {}),
                reason="Custom values provided by operator",
            )
        if source in (ChosenSource.LOCAL, ChosenSource.ERP):
            return ResolutionOutcome(
                success=True,
                strategy=None,
                chosen_source=source,
                data=side_data(conflict, source),
                reason=f"Operator chose {source.value}",
            )
        if source == ChosenSource.MERGED:
            return smart_merge(conflict, policy)
        return run_strategy(conflict, policy, request.strategy)

    async def ignore_conflict(self, conflict_id: str, reason: str, operator: str) -> Conflict:
        """Close a pending conflict without changing the entity.

        Raises:
            ConflictNotFoundError: Unknown conflict.
            ConflictStateError: Conflict already resolved or ignored.
        """
        conflict = await asyncio.to_thread(
            self._db.ignore_conflict, conflict_id, reason, operator
        )
        logger.info("Conflict %s ignored by %s: %s", conflict_id, operator, reason)
        return conflict

    def _publish_detected(self, conflict: Conflict, urgent: bool, requires_manual: bool) -> None:
        self._bus.publish(
            ConflictDetected(
                conflict_id=conflict.id,
                tenant_id=conflict.tenant_id,
                conflict_type=conflict.conflict_type,
                severity=conflict.severity,
                entity_id=conflict.entity_id,
                urgent=urgent,
                requires_manual=requires_manual,
            )
        )

    def _publish_resolved(
        self, conflict: Conflict, resolved_by: str, outcome: ResolutionOutcome
    ) -> None:
        self._bus.publish(
            ConflictResolved(
                conflict_id=conflict.id,
                tenant_id=conflict.tenant_id,
                conflict_type=conflict.conflict_type,
                resolved_by=resolved_by,
                strategy=outcome.strategy.value if outcome.strategy else None,
                chosen_source=outcome.chosen_source.value if outcome.chosen_source else None,
            )
        )
