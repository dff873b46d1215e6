"""Core module - Shared configuration, enums and time helpers."""

from pricesync.core.config import ConfigStore, EngineConfig, ErpConfig, TenantPolicy
from pricesync.core.timeutil import as_utc, parse_iso, to_iso, utcnow
from pricesync.core.types import (
    ChosenSource,
    ConflictStatus,
    ConflictType,
    EntityType,
    JobStatus,
    RuleType,
    Severity,
    Source,
    StrategyName,
    SyncCadence,
    ValidationStatus,
)

__all__ = [
    # Config
    "ConfigStore",
    "EngineConfig",
    "ErpConfig",
    "TenantPolicy",
    # Time
    "as_utc",
    "parse_iso",
    "to_iso",
    "utcnow",
    # Types
    "ChosenSource",
    "ConflictStatus",
    "ConflictType",
    "EntityType",
    "JobStatus",
    "RuleType",
    "Severity",
    "Source",
    "StrategyName",
    "SyncCadence",
    "ValidationStatus",
]
