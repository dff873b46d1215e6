"""Configuration classes for pricesync.

Configuration is held as immutable snapshots. ConfigStore swaps the whole
snapshot on update, so a job that captured a snapshot at start keeps a
consistent view until it finishes.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any

from pricesync.core.types import ConflictType, Source, StrategyName


@dataclass(frozen=True)
class TenantPolicy:
    """Per-tenant business thresholds and resolution preferences.

    Attributes:
        tolerance_band_percent: Relative change below which a price is noise.
        min_absolute_change: Absolute change below which a price is noise.
        max_increase_percent: Largest accepted increase (None = unbounded).
        max_decrease_percent: Largest accepted decrease (None = unbounded).
        conflict_threshold: Relative price drift that raises a conflict.
        auto_resolve_types: Conflict types eligible for auto-resolution.
        critical_types: Conflict types whose notification is urgent.
        default_strategy: Strategy used when none is requested.
        preferred_source: Side chosen by source_priority.
        value_rules: Per-field "higher"/"lower" preference for value_based.
    """

    tolerance_band_percent: float = 0.5
    min_absolute_change: float = 0.5
    max_increase_percent: float | None = 50.0
    max_decrease_percent: float | None = 30.0
    conflict_threshold: float = 0.10
    auto_resolve_types: frozenset[ConflictType] = frozenset(
        {ConflictType.PRICE_MINOR, ConflictType.STOCK_MINOR}
    )
    critical_types: frozenset[ConflictType] = frozenset({ConflictType.PRICE_MAJOR})
    default_strategy: StrategyName = StrategyName.TIMESTAMP_PRIORITY
    preferred_source: Source = Source.ERP
    value_rules: tuple[tuple[str, str], ...] = (("price", "lower"), ("stock", "lower"))

    def value_preference(self, field_name: str) -> str:
        """Get the "higher"/"lower" preference for a field (default lower)."""
        return dict(self.value_rules).get(field_name, "lower")

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "tolerance_band_percent": self.tolerance_band_percent,
            "min_absolute_change": self.min_absolute_change,
            "max_increase_percent": self.max_increase_percent,
            "max_decrease_percent": self.max_decrease_percent,
            "conflict_threshold": self.conflict_threshold,
            "auto_resolve_types": sorted(t.value for t in self.auto_resolve_types),
            "critical_types": sorted(t.value for t in self.critical_types),
            "default_strategy": self.default_strategy.value,
            "preferred_source": self.preferred_source.value,
            "value_rules": dict(self.value_rules),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: TenantPolicy | None = None) -> TenantPolicy:
        """Build a policy from a (partial) dict, defaulting to base.

        Raises:
            ValueError: If an enum value is unknown.
        """
        policy = base or cls()
        changes: dict[str, Any] = {}
        for key in (
            "tolerance_band_percent",
            "min_absolute_change",
            "max_increase_percent",
            "max_decrease_percent",
            "conflict_threshold",
        ):
            if key in data:
                value = data[key]
                changes[key] = float(value) if value is not None else None
        if "auto_resolve_types" in data:
            changes["auto_resolve_types"] = frozenset(
                ConflictType(t) for t in data["auto_resolve_types"]
            )
        if "critical_types" in data:
            changes["critical_types"] = frozenset(ConflictType(t) for t in data["critical_types"])
        if "default_strategy" in data:
            changes["default_strategy"] = StrategyName(data["default_strategy"])
        if "preferred_source" in data:
            changes["preferred_source"] = Source(data["preferred_source"])
        if "value_rules" in data:
            rules = data["value_rules"]
            for pref in rules.values():
                if pref not in ("higher", "lower"):
                    raise ValueError(f"Invalid value rule preference: {pref}")
            changes["value_rules"] = tuple(sorted(rules.items()))
        return replace(policy, **changes)


@dataclass(frozen=True)
class EngineConfig:
    """Global engine settings.

    Intervals are in seconds. Tenant-specific thresholds live in
    TenantPolicy; tenants without an override use default_policy.
    """

    # Cadence intervals
    realtime_interval: float = 120.0
    incremental_interval: float = 600.0
    bulk_interval: float = 1800.0
    detection_interval: float = 300.0

    # Batching
    batch_size: int = 100
    realtime_batch_size: int = 25
    max_concurrent_batches: int = 5
    batch_stagger: float = 0.1

    # Timeouts
    request_timeout: float = 30.0
    job_timeout: float = 1800.0

    # Windows
    realtime_window_minutes: int = 5
    attribute_skew_seconds: float = 300.0

    # Retention
    conflict_retention_days: int = 30
    price_history_retention_days: int = 90

    default_policy: TenantPolicy = field(default_factory=TenantPolicy)
    tenant_policies: dict[str, TenantPolicy] = field(default_factory=dict)

    def policy_for(self, tenant_id: str) -> TenantPolicy:
        """Get the effective policy for a tenant."""
        return self.tenant_policies.get(tenant_id, self.default_policy)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from PRICESYNC_* environment variables."""
        defaults = cls()

        def _float(name: str, default: float) -> float:
            return float(os.environ.get(f"PRICESYNC_{name}", default))

        def _int(name: str, default: int) -> int:
            return int(os.environ.get(f"PRICESYNC_{name}", default))

        return cls(
            realtime_interval=_float("REALTIME_INTERVAL", defaults.realtime_interval),
            incremental_interval=_float("INCREMENTAL_INTERVAL", defaults.incremental_interval),
            bulk_interval=_float("BULK_INTERVAL", defaults.bulk_interval),
            detection_interval=_float("DETECTION_INTERVAL", defaults.detection_interval),
            batch_size=_int("BATCH_SIZE", defaults.batch_size),
            realtime_batch_size=_int("REALTIME_BATCH_SIZE", defaults.realtime_batch_size),
            max_concurrent_batches=_int("MAX_CONCURRENT_BATCHES", defaults.max_concurrent_batches),
            batch_stagger=_float("BATCH_STAGGER", defaults.batch_stagger),
            request_timeout=_float("REQUEST_TIMEOUT", defaults.request_timeout),
            job_timeout=_float("JOB_TIMEOUT", defaults.job_timeout),
            realtime_window_minutes=_int(
                "REALTIME_WINDOW_MINUTES", defaults.realtime_window_minutes
            ),
            attribute_skew_seconds=_float(
                "ATTRIBUTE_SKEW_SECONDS", defaults.attribute_skew_seconds
            ),
            conflict_retention_days=_int(
                "CONFLICT_RETENTION_DAYS", defaults.conflict_retention_days
            ),
            price_history_retention_days=_int(
                "PRICE_HISTORY_RETENTION_DAYS", defaults.price_history_retention_days
            ),
        )


class ConfigStore:
    """Holds the current EngineConfig and swaps it atomically.

    Readers call current() once and keep the returned snapshot; writers
    build a new snapshot with dataclasses.replace and swap the reference.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._lock = threading.Lock()

    def current(self) -> EngineConfig:
        """Get the current snapshot."""
        return self._config

    def update(self, **changes: Any) -> EngineConfig:
        """Swap in a snapshot with the given top-level fields changed."""
        with self._lock:
            self._config = replace(self._config, **changes)
            return self._config

    def update_tenant_policy(self, tenant_id: str, changes: dict[str, Any]) -> TenantPolicy:
        """Swap in a snapshot with one tenant's policy changed.

        Args:
            tenant_id: Tenant to update.
            changes: Partial policy fields (see TenantPolicy.from_dict).

        Returns:
            The tenant's new effective policy.
        """
        with self._lock:
            current = self._config
            policy = TenantPolicy.from_dict(changes, base=current.policy_for(tenant_id))
            policies = dict(current.tenant_policies)
            policies[tenant_id] = policy
            self._config = replace(current, tenant_policies=policies)
            return policy


@dataclass
class ErpConfig:
    """Configuration for connecting to the ERP HTTP API.

    Attributes:
        base_url: Base URL of the ERP API (e.g., "https://erp.example.com/api").
        token: Bearer token (its lifecycle is managed outside this package).
        timeout: Per-request timeout in seconds.
    """

    base_url: str
    token: str
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalize base URL."""
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> ErpConfig:
        """Build from PRICESYNC_ERP_URL / PRICESYNC_ERP_TOKEN / PRICESYNC_ERP_TIMEOUT."""
        return cls(
            base_url=os.environ.get("PRICESYNC_ERP_URL", "http://localhost:9000"),
            token=os.environ.get("PRICESYNC_ERP_TOKEN", ""),
            timeout=float(os.environ.get("PRICESYNC_ERP_TIMEOUT", "30")),
        )
