"""Shared types for pricesync.

This module defines the enums used by the engine, the store and the API.
String-valued enums are persisted as their value.
"""

from __future__ import annotations

from enum import Enum


class SyncCadence(str, Enum):
    """One of the three independent sync schedules."""

    REALTIME = "realtime"
    INCREMENTAL = "incremental"
    BULK = "bulk"


class JobStatus(str, Enum):
    """Lifecycle of a SyncJob."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Source(str, Enum):
    """Where an observed value came from."""

    LOCAL = "local"
    ERP = "erp"


class ChosenSource(str, Enum):
    """Which side a resolution picked.

    CUSTOM is only valid together with an explicit override payload
    (see ManualResolution).
    """

    LOCAL = "local"
    ERP = "erp"
    MERGED = "merged"
    CUSTOM = "custom"


class EntityType(str, Enum):
    """Entity classes scanned by the conflict detector."""

    PRODUCT = "product"
    ORDER = "order"


class ConflictType(str, Enum):
    """Kind of divergence between local and ERP state."""

    PRODUCT_DATA = "product_data"
    PRICE_MINOR = "price_minor"
    PRICE_MAJOR = "price_major"
    STOCK_MINOR = "stock_minor"
    STOCK_MAJOR = "stock_major"
    ORDER_DATA = "order_data"


class Severity(str, Enum):
    """Conflict severity, used for triage and auto-resolve eligibility."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConflictStatus(str, Enum):
    """Lifecycle of a Conflict."""

    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class StrategyName(str, Enum):
    """Named resolution strategies."""

    TIMESTAMP_PRIORITY = "timestamp_priority"
    SOURCE_PRIORITY = "source_priority"
    SMART_MERGE = "smart_merge"
    VALUE_BASED = "value_based"
    MANUAL_REQUIRED = "manual_required"


class ValidationStatus(str, Enum):
    """Outcome recorded on a PriceChange row."""

    APPLIED = "applied"
    REJECTED = "rejected"


class RuleType(str, Enum):
    """Pricing rule families."""

    MARKUP = "markup"
    DISCOUNT = "discount"
    TIER = "tier"
    PROMOTIONAL = "promotional"


# Sync type recorded on PriceChange rows written by conflict resolution
CONFLICT_RESOLUTION_SYNC_TYPE = "conflict_resolution"
