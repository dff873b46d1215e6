"""Conflict resolution strategies.

Each strategy is a pure function of (conflict, policy) returning a
ResolutionOutcome. Strategies never touch the store; the dispatcher
applies the outcome.

Strategies:
- timestamp_priority: the side with the strictly later updated_at wins
  (ties and missing timestamps go to the ERP)
- source_priority: the tenant's preferred side always wins
- smart_merge: lower price, lower stock, local for everything else
- value_based: per-field "higher"/"lower" preference (numeric fields only)
- manual_required: never resolves, flags for human review
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pricesync.core.timeutil import parse_iso
from pricesync.core.types import ChosenSource, ConflictType, Severity, Source, StrategyName

if TYPE_CHECKING:
    from pricesync.core.config import TenantPolicy

# Fields a resolution writes back to the local entity, per conflict type
RESOLVABLE_FIELDS: dict[ConflictType, tuple[str, ...]] = {
    ConflictType.PRODUCT_DATA: ("name", "description"),
    ConflictType.PRICE_MINOR: ("price",),
    ConflictType.PRICE_MAJOR: ("price",),
    ConflictType.STOCK_MINOR: ("stock",),
    ConflictType.STOCK_MAJOR: ("stock",),
    ConflictType.ORDER_DATA: ("status", "total"),
}


class ConflictLike(Protocol):
    """What a strategy needs to know about a conflict."""

    conflict_type: str
    local_data: dict[str, Any]
    external_data: dict[str, Any]


@dataclass(frozen=True)
class ResolutionOutcome:
    """Decision produced by a strategy.

    Attributes:
        success: Whether a value was chosen.
        strategy: Strategy that produced the decision (None for an explicit pick).
        chosen_source: Side the data comes from (None when unresolved).
        data: Field values to write to the local entity.
        reason: Human-readable explanation.
        requires_manual: Whether the conflict must go to human review.
    """

    success: bool
    strategy: StrategyName | None
    chosen_source: ChosenSource | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""
    requires_manual: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict (stored as Conflict.resolution)."""
        return {
            "success": self.success,
            "strategy": self.strategy.value if self.strategy else None,
            "chosen_source": self.chosen_source.value if self.chosen_source else None,
            "data": dict(self.data),
            "reason": self.reason,
        }


Strategy = Callable[["ConflictLike", "TenantPolicy"], ResolutionOutcome]


def _fields(conflict: ConflictLike) -> tuple[str, ...]:
    return RESOLVABLE_FIELDS[ConflictType(conflict.conflict_type)]


def _pick(data: Mapping[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    # A side that never reported a field must not blank it locally
    return {name: data[name] for name in fields if data.get(name) is not None}


def side_data(conflict: ConflictLike, source: ChosenSource) -> dict[str, Any]:
    """Resolvable fields of one side (LOCAL or ERP) of a conflict."""
    data = conflict.local_data if source == ChosenSource.LOCAL else conflict.external_data
    return _pick(data, _fields(conflict))


def _source_of(
    chosen: Mapping[str, Any], local: Mapping[str, Any], erp: Mapping[str, Any]
) -> ChosenSource:
    if chosen == local:
        return ChosenSource.LOCAL
    if chosen == erp:
        return ChosenSource.ERP
    return ChosenSource.MERGED


def timestamp_priority(conflict: ConflictLike, policy: TenantPolicy) -> ResolutionOutcome:
    fields = _fields(conflict)
    local_ts = parse_iso(conflict.local_data.get("updated_at"))
    erp_ts = parse_iso(conflict.external_data.get("updated_at"))

    if local_ts is not None and (erp_ts is None or local_ts > erp_ts):
        return ResolutionOutcome(
            success=True,
            strategy=StrategyName.TIMESTAMP_PRIORITY,
            chosen_source=ChosenSource.LOCAL,
            data=_pick(conflict.local_data, fields),
            reason="Local data is more recent",
        )
    return ResolutionOutcome(
        success=True,
        strategy=StrategyName.TIMESTAMP_PRIORITY,
        chosen_source=ChosenSource.ERP,
        data=_pick(conflict.external_data, fields),
        reason="ERP data is more recent or equal",
    )


def source_priority(conflict: ConflictLike, policy: TenantPolicy) -> ResolutionOutcome:
    fields = _fields(conflict)
    if policy.preferred_source == Source.LOCAL:
        return ResolutionOutcome(
            success=True,
            strategy=StrategyName.SOURCE_PRIORITY,
            chosen_source=ChosenSource.LOCAL,
            data=_pick(conflict.local_data, fields),
            reason="Local is the preferred source",
        )
    return ResolutionOutcome(
        success=True,
        strategy=StrategyName.SOURCE_PRIORITY,
        chosen_source=ChosenSource.ERP,
        data=_pick(conflict.external_data, fields),
        reason="ERP is the preferred source",
    )


def smart_merge(conflict: ConflictLike, policy: TenantPolicy) -> ResolutionOutcome:
    """Field-aware merge that never disadvantages the buyer or oversells."""
    merged: dict[str, Any] = {}
    for name in _fields(conflict):
        local_value = conflict.local_data.get(name)
        erp_value = conflict.external_data.get(name)
        if name in ("price", "stock") and local_value is not None and erp_value is not None:
            merged[name] = min(local_value, erp_value)
        elif local_value is not None:
            merged[name] = local_value
    return ResolutionOutcome(
        success=True,
        strategy=StrategyName.SMART_MERGE,
        chosen_source=ChosenSource.MERGED,
        data=merged,
        reason="Merged field by field (lowest price, lowest stock, local otherwise)",
    )


def value_based(conflict: ConflictLike, policy: TenantPolicy) -> ResolutionOutcome:
    fields = _fields(conflict)
    chosen: dict[str, Any] = {}
    for name in fields:
        local_value = conflict.local_data.get(name)
        erp_value = conflict.external_data.get(name)
        if not isinstance(local_value, int | float) or not isinstance(erp_value, int | float):
            return ResolutionOutcome(
                success=False,
                strategy=StrategyName.VALUE_BASED,
                reason=f"Value-based resolution needs numeric values for '{name}'",
            )
        if policy.value_preference(name) == "higher":
            chosen[name] = max(local_value, erp_value)
        else:
            chosen[name] = min(local_value, erp_value)

    source = _source_of(
        chosen, _pick(conflict.local_data, fields), _pick(conflict.external_data, fields)
    )
    return ResolutionOutcome(
        success=True,
        strategy=StrategyName.VALUE_BASED,
        chosen_source=source,
        data=chosen,
        reason="Chosen by configured value preference",
    )


def manual_required(conflict: ConflictLike, policy: TenantPolicy) -> ResolutionOutcome:
    return ResolutionOutcome(
        success=False,
        strategy=StrategyName.MANUAL_REQUIRED,
        reason="Manual review required",
        requires_manual=True,
    )


STRATEGIES: dict[StrategyName, Strategy] = {
    StrategyName.TIMESTAMP_PRIORITY: timestamp_priority,
    StrategyName.SOURCE_PRIORITY: source_priority,
    StrategyName.SMART_MERGE: smart_merge,
    StrategyName.VALUE_BASED: value_based,
    StrategyName.MANUAL_REQUIRED: manual_required,
}


def run_strategy(
    conflict: ConflictLike,
    policy: TenantPolicy,
    strategy: StrategyName | None = None,
) -> ResolutionOutcome:
    """Run a named strategy, defaulting to the tenant's default strategy."""
    name = strategy or policy.default_strategy
    return STRATEGIES[name](conflict, policy)


def can_auto_resolve(
    conflict_type: ConflictType, severity: Severity, policy: TenantPolicy
) -> bool:
    """Auto-resolution needs an allow-listed type and a non-high severity."""
    return conflict_type in policy.auto_resolve_types and severity != Severity.HIGH
