"""Pricing rule evaluation.

A tenant's active rules are loaded once per job into a RuleSnapshot
(priority descending, ties by rule id ascending) and folded over a
proposed base price. Evaluation is pure: the snapshot and the entity
attributes fully determine the result.

Conditions (all optional, AND-ed):
    categories, tags_any, external_ids, min_quantity, max_quantity,
    min_price, max_price

Actions (applied in list order):
    percentage_markup, percentage_discount, fixed_markup, fixed_discount,
    min_price, max_price, round
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pricesync.core.types import RuleType
from pricesync.engine.errors import RuleError

if TYPE_CHECKING:
    from pricesync.server.models import PricingRule, Product

logger = logging.getLogger(__name__)

CONDITION_KEYS = frozenset(
    {
        "categories",
        "tags_any",
        "external_ids",
        "min_quantity",
        "max_quantity",
        "min_price",
        "max_price",
    }
)
LIST_CONDITIONS = frozenset({"categories", "tags_any", "external_ids"})


def _percentage_markup(value: float, amount: float) -> float:
    return value * (1 + amount / 100)


def _percentage_discount(value: float, amount: float) -> float:
    return value * (1 - amount / 100)


def _fixed_markup(value: float, amount: float) -> float:
    return value + amount


def _fixed_discount(value: float, amount: float) -> float:
    return value - amount


def _min_price(value: float, amount: float) -> float:
    return max(value, amount)


def _max_price(value: float, amount: float) -> float:
    return min(value, amount)


def _round(value: float, amount: float) -> float:
    return round(value, int(amount))


ACTIONS: dict[str, Callable[[float, float], float]] = {
    "percentage_markup": _percentage_markup,
    "percentage_discount": _percentage_discount,
    "fixed_markup": _fixed_markup,
    "fixed_discount": _fixed_discount,
    "min_price": _min_price,
    "max_price": _max_price,
    "round": _round,
}


@dataclass(frozen=True)
class EntityAttributes:
    """Attributes of a local entity that rule conditions may reference."""

    external_id: str | None = None
    category: str | None = None
    tags: frozenset[str] = frozenset()
    quantity_tier: int = 1

    @classmethod
    def from_product(cls, product: Product) -> EntityAttributes:
        """Extract rule-relevant attributes from a Product row."""
        return cls(
            external_id=product.external_id,
            category=product.category,
            tags=frozenset(product.tags or ()),
            quantity_tier=product.quantity_tier or 1,
        )


@dataclass(frozen=True)
class RuleDefinition:
    """An immutable copy of one pricing rule."""

    id: int
    tenant_id: str
    rule_name: str
    rule_type: RuleType
    priority: int
    conditions: Mapping[str, Any] = field(default_factory=dict)
    actions: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_record(cls, record: PricingRule) -> RuleDefinition:
        """Copy a PricingRule row into a detached definition."""
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            rule_name=record.rule_name,
            rule_type=RuleType(record.rule_type),
            priority=record.priority,
            conditions=dict(record.conditions or {}),
            actions=tuple(dict(a) for a in record.actions or ()),
        )


@dataclass(frozen=True)
class AppliedRule:
    """Trace entry for one rule that changed (or matched) the running value."""

    rule_name: str
    rule_type: str
    before: float
    after: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class RuleResult:
    """Result of folding a snapshot over a base price."""

    final_value: float
    applied_rules: tuple[AppliedRule, ...] = ()


@dataclass(frozen=True)
class RuleSnapshot:
    """Ordered, read-only rule list for one tenant."""

    tenant_id: str
    rules: tuple[RuleDefinition, ...] = ()

    @classmethod
    def build(cls, tenant_id: str, rules: Iterable[RuleDefinition]) -> RuleSnapshot:
        """Sort rules by priority descending, then id ascending."""
        ordered = sorted(rules, key=lambda r: (-r.priority, r.id))
        return cls(tenant_id=tenant_id, rules=tuple(ordered))

    def __len__(self) -> int:
        return len(self.rules)


def validate_rule(conditions: Mapping[str, Any], actions: Sequence[Mapping[str, Any]]) -> None:
    """Check that a rule only uses known conditions and actions.

    Raises:
        RuleError: If the rule is malformed.
    """
    unknown = set(conditions) - CONDITION_KEYS
    if unknown:
        raise RuleError(f"Unknown rule condition(s): {', '.join(sorted(unknown))}")
    for key, expected in conditions.items():
        if key in LIST_CONDITIONS:
            if not isinstance(expected, list | tuple):
                raise RuleError(f"Condition {key} requires a list")
        elif isinstance(expected, bool) or not isinstance(expected, int | float):
            raise RuleError(f"Condition {key} requires a numeric value")
    if not actions:
        raise RuleError("Rule must define at least one action")
    for action in actions:
        action_type = action.get("type")
        if action_type not in ACTIONS:
            raise RuleError(f"Unknown rule action: {action_type}")
        if not isinstance(action.get("value"), int | float):
            raise RuleError(f"Action {action_type} requires a numeric value")


def matches(conditions: Mapping[str, Any], entity: EntityAttributes, price: float) -> bool:
    """Evaluate a rule's condition predicate against an entity.

    Raises:
        RuleError: If a condition key is unknown.
    """
    for key, expected in conditions.items():
        if key == "categories":
            if entity.category not in expected:
                return False
        elif key == "tags_any":
            if not entity.tags.intersection(expected):
                return False
        elif key == "external_ids":
            if entity.external_id not in expected:
                return False
        elif key == "min_quantity":
            if entity.quantity_tier < expected:
                return False
        elif key == "max_quantity":
            if entity.quantity_tier > expected:
                return False
        elif key == "min_price":
            if price < expected:
                return False
        elif key == "max_price":
            if price > expected:
                return False
        else:
            raise RuleError(f"Unknown rule condition: {key}")
    return True


def apply_actions(value: float, actions: Sequence[Mapping[str, Any]]) -> float:
    """Apply a rule's actions to the running value.

    Raises:
        RuleError: If an action is unknown or lacks a numeric value.
    """
    for action in actions:
        handler = ACTIONS.get(action.get("type", ""))
        if handler is None:
            raise RuleError(f"Unknown rule action: {action.get('type')}")
        amount = action.get("value")
        if not isinstance(amount, int | float):
            raise RuleError(f"Action {action['type']} requires a numeric value")
        value = handler(value, float(amount))
    return value


def apply_rules(
    snapshot: RuleSnapshot,
    entity: EntityAttributes,
    base_price: float,
) -> RuleResult:
    """Fold a tenant's rule snapshot over a proposed price.

    Args:
        snapshot: Ordered rules for the tenant.
        entity: Attributes referenced by rule conditions.
        base_price: Proposed price from the ERP (must be > 0).

    Returns:
        RuleResult with the final value and the rules applied, in order.

    Raises:
        ValueError: If base_price is not positive.
    """
    if base_price <= 0:
        raise ValueError(f"base_price must be positive, got {base_price}")

    value = base_price
    applied: list[AppliedRule] = []

    for rule in snapshot.rules:
        try:
            if not matches(rule.conditions, entity, value):
                continue
            after = round(apply_actions(value, rule.actions), 2)
        except Exception:
            logger.exception(
                "Skipping failing pricing rule %s (id=%d) for tenant %s",
                rule.rule_name,
                rule.id,
                snapshot.tenant_id,
            )
            continue
        applied.append(
            AppliedRule(
                rule_name=rule.rule_name,
                rule_type=rule.rule_type.value,
                before=value,
                after=after,
            )
        )
        value = after

    return RuleResult(final_value=value, applied_rules=tuple(applied))


class RuleCache:
    """Cache of active rules keyed by (tenant_id, rule_type).

    The loader is called on a miss and returns the active rules for one
    key. Entries are dropped explicitly by invalidate() on rule CRUD.
    """

    def __init__(self, loader: Callable[[str, RuleType], list[RuleDefinition]]) -> None:
        self._loader = loader
        self._entries: dict[tuple[str, RuleType], tuple[RuleDefinition, ...]] = {}
        self._lock = threading.Lock()

    def rules(self, tenant_id: str, rule_type: RuleType) -> tuple[RuleDefinition, ...]:
        """Get the active rules for one key, loading them on a miss."""
        key = (tenant_id, rule_type)
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None:
            return cached

        loaded = tuple(self._loader(tenant_id, rule_type))
        with self._lock:
            self._entries[key] = loaded
        logger.debug(
            "Loaded %d %s rules for tenant %s", len(loaded), rule_type.value, tenant_id
        )
        return loaded

    def snapshot(
        self,
        tenant_id: str,
        rule_types: Iterable[RuleType] = tuple(RuleType),
    ) -> RuleSnapshot:
        """Build an ordered snapshot across the given rule types."""
        rules: list[RuleDefinition] = []
        for rule_type in rule_types:
            rules.extend(self.rules(tenant_id, rule_type))
        return RuleSnapshot.build(tenant_id, rules)

    def invalidate(self, tenant_id: str, rule_type: RuleType | None = None) -> None:
        """Drop cached entries for a tenant (one rule type or all)."""
        with self._lock:
            if rule_type is not None:
                self._entries.pop((tenant_id, rule_type), None)
                return
            for key in [k for k in self._entries if k[0] == tenant_id]:
                del self._entries[key]

    def __contains__(self, key: tuple[str, RuleType]) -> bool:
        with self._lock:
            return key in self._entries
