"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from pricesync.core.config import TenantPolicy
from pricesync.core.timeutil import to_iso
from pricesync.core.types import ChosenSource, RuleType, StrategyName
from pricesync.server.models import (
    Conflict,
    PriceAnalytics,
    PriceChange,
    PricingRule,
    SyncJob,
)

# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Sync schemas ===


class SyncTriggerRequest(BaseModel):
    """Request body for triggering a sync job."""

    tenant_id: str
    external_ids: list[str] | None = None


class SyncTriggerResponse(BaseModel):
    """Response for a sync trigger (existing job id if one is in flight)."""

    job_id: str


class JobResponse(BaseModel):
    """Sync job in responses."""

    id: str
    tenant_id: str
    job_type: str
    status: str
    total_count: int
    processed_count: int
    updated_count: int
    failed_count: int
    created_at: str | None
    started_at: str | None
    ended_at: str | None
    error_details: dict[str, Any] | None
    performance_metrics: dict[str, Any] | None


class ErpWebhookRequest(BaseModel):
    """Push notification from the ERP."""

    tenant_id: str
    event: Literal["price.updated", "order.updated"]
    data: dict[str, Any]


class WebhookResponse(BaseModel):
    """Response for an ERP webhook."""

    status: str
    outcome: str | None = None


# === Conflict schemas ===


class ConflictResponse(BaseModel):
    """Conflict in responses."""

    id: str
    tenant_id: str
    conflict_type: str
    severity: str
    entity_type: str
    entity_id: str
    external_id: str | None
    local_data: dict[str, Any]
    external_data: dict[str, Any]
    differences: list[dict[str, Any]]
    status: str
    detected_at: str | None
    detection_count: int
    requires_manual: bool
    auto_resolution_error: str | None
    resolution: dict[str, Any] | None
    resolved_by: str | None
    resolved_at: str | None
    ignore_reason: str | None


class DetectRequest(BaseModel):
    """Request body for an on-demand conflict sweep."""

    tenant_id: str


class DetectResponse(BaseModel):
    """Result of an on-demand conflict sweep."""

    count: int
    conflicts: list[ConflictResponse]


class ResolveConflictRequest(BaseModel):
    """Request body for manual resolution.

    Give a strategy, or pick a side with chosen_source. custom_data is
    required with chosen_source "custom".
    """

    reason: str = ""
    strategy: StrategyName | None = None
    chosen_source: ChosenSource | None = None
    custom_data: dict[str, Any] | None = None


class ResolveConflictResponse(BaseModel):
    """Result of a manual resolution."""

    success: bool
    reason: str
    conflict: ConflictResponse


class IgnoreConflictRequest(BaseModel):
    """Request body for ignoring a conflict."""

    reason: str


class ConflictMetricsResponse(BaseModel):
    """Conflict summary."""

    total: int
    pending: int
    resolved: int
    ignored: int
    auto_resolved: int
    manual_resolved: int
    awaiting_review: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    resolution_rate: float


# === Pricing rule schemas ===


class RuleRequest(BaseModel):
    """Request body for creating or updating a pricing rule."""

    tenant_id: str
    rule_name: str
    rule_type: RuleType
    actions: list[dict[str, Any]]
    conditions: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True
    id: int | None = None


class RuleUpsertResponse(BaseModel):
    """Response for a rule upsert."""

    id: int


class RuleResponse(BaseModel):
    """Pricing rule in responses."""

    id: int
    tenant_id: str
    rule_name: str
    rule_type: str
    conditions: dict[str, Any]
    actions: list[dict[str, Any]]
    priority: int
    is_active: bool
    created_at: str | None
    updated_at: str | None


# === History & analytics schemas ===


class PriceChangeResponse(BaseModel):
    """Price history row in responses."""

    id: int
    product_id: str
    external_id: str | None
    old_price: float
    new_price: float
    percent_change: float
    amount_change: float
    sync_type: str
    applied_rules: list[dict[str, Any]]
    validation_status: str
    change_reason: str | None
    created_at: str | None


class PriceAnalyticsResponse(BaseModel):
    """Daily price analytics in responses."""

    analysis_date: str
    total_products: int
    products_with_price_changes: int
    average_price_change_percent: float
    total_price_increase_amount: float
    total_price_decrease_amount: float
    most_changed_category: str | None


# === Configuration schemas ===


class TenantPolicyResponse(BaseModel):
    """Effective policy of a tenant."""

    tenant_id: str
    tolerance_band_percent: float
    min_absolute_change: float
    max_increase_percent: float | None
    max_decrease_percent: float | None
    conflict_threshold: float
    auto_resolve_types: list[str]
    critical_types: list[str]
    default_strategy: str
    preferred_source: str
    value_rules: dict[str, str]


class TenantPolicyUpdate(BaseModel):
    """Partial policy update; omitted fields keep their value."""

    tolerance_band_percent: float | None = Field(default=None, ge=0)
    min_absolute_change: float | None = Field(default=None, ge=0)
    max_increase_percent: float | None = Field(default=None, gt=0)
    max_decrease_percent: float | None = Field(default=None, gt=0)
    conflict_threshold: float | None = Field(default=None, gt=0)
    auto_resolve_types: list[str] | None = None
    critical_types: list[str] | None = None
    default_strategy: StrategyName | None = None
    preferred_source: Literal["local", "erp"] | None = None
    value_rules: dict[str, Literal["higher", "lower"]] | None = None


class MetricsResponse(BaseModel):
    """Engine counters plus in-flight jobs."""

    active_jobs: int
    counters: dict[str, Any]


# === Converters ===


def job_to_response(job: SyncJob) -> JobResponse:
    """Convert SyncJob to response model."""
    return JobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        job_type=job.job_type,
        status=job.status,
        total_count=job.total_count,
        processed_count=job.processed_count,
        updated_count=job.updated_count,
        failed_count=job.failed_count,
        created_at=to_iso(job.created_at),
        started_at=to_iso(job.started_at),
        ended_at=to_iso(job.ended_at),
        error_details=job.error_details,
        performance_metrics=job.performance_metrics,
    )


def conflict_to_response(conflict: Conflict) -> ConflictResponse:
    """Convert Conflict to response model."""
    return ConflictResponse(
        id=conflict.id,
        tenant_id=conflict.tenant_id,
        conflict_type=conflict.conflict_type,
        severity=conflict.severity,
        entity_type=conflict.entity_type,
        entity_id=conflict.entity_id,
        external_id=conflict.external_id,
        local_data=conflict.local_data,
        external_data=conflict.external_data,
        differences=conflict.differences,
        status=conflict.status,
        detected_at=to_iso(conflict.detected_at),
        detection_count=conflict.detection_count,
        requires_manual=conflict.requires_manual,
        auto_resolution_error=conflict.auto_resolution_error,
        resolution=conflict.resolution,
        resolved_by=conflict.resolved_by,
        resolved_at=to_iso(conflict.resolved_at),
        ignore_reason=conflict.ignore_reason,
    )


def rule_to_response(rule: PricingRule) -> RuleResponse:
    """Convert PricingRule to response model."""
    return RuleResponse(
        id=rule.id,
        tenant_id=rule.tenant_id,
        rule_name=rule.rule_name,
        rule_type=rule.rule_type,
        conditions=rule.conditions,
        actions=rule.actions,
        priority=rule.priority,
        is_active=rule.is_active,
        created_at=to_iso(rule.created_at),
        updated_at=to_iso(rule.updated_at),
    )


def price_change_to_response(change: PriceChange) -> PriceChangeResponse:
    """Convert PriceChange to response model."""
    return PriceChangeResponse(
        id=change.id,
        product_id=change.product_id,
        external_id=change.external_id,
        old_price=change.old_price,
        new_price=change.new_price,
        percent_change=change.percent_change,
        amount_change=change.amount_change,
        sync_type=change.sync_type,
        applied_rules=change.applied_rules,
        validation_status=change.validation_status,
        change_reason=change.change_reason,
        created_at=to_iso(change.created_at),
    )


def analytics_to_response(entry: PriceAnalytics) -> PriceAnalyticsResponse:
    """Convert PriceAnalytics to response model."""
    return PriceAnalyticsResponse(
        analysis_date=entry.analysis_date.isoformat(),
        total_products=entry.total_products,
        products_with_price_changes=entry.products_with_price_changes,
        average_price_change_percent=entry.average_price_change_percent,
        total_price_increase_amount=entry.total_price_increase_amount,
        total_price_decrease_amount=entry.total_price_decrease_amount,
        most_changed_category=entry.most_changed_category,
    )


def policy_to_response(tenant_id: str, policy: TenantPolicy) -> TenantPolicyResponse:
    """Convert TenantPolicy to response model."""
    return TenantPolicyResponse(tenant_id=tenant_id, **policy.to_dict())
