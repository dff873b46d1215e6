"""Conflict detection between local records and the last-known ERP mirror.

Detection rules per entity class:
- product_data: name/description differ textually, or the updated_at
  skew exceeds the skew window; the skew drives severity (>24h high,
  >1h medium, else low)
- price: |local - erp| > local * conflict_threshold; price_major (high)
  when drift > 20%, else price_minor (medium)
- stock: |local - erp| > 5 units; stock_major (high) when > 50 units,
  else stock_minor (low)
- order_data: status differs or totals differ by more than 0.01; high
  when the total differs, else medium

The check_* functions are pure. ConflictDetector upserts each finding
(one pending conflict per entity and type) and hands it straight to the
dispatcher.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from pricesync.core.timeutil import as_utc, to_iso
from pricesync.core.types import ConflictStatus, ConflictType, EntityType, Severity

if TYPE_CHECKING:
    from pricesync.core.config import ConfigStore, TenantPolicy
    from pricesync.engine.dispatcher import ConflictDispatcher
    from pricesync.server.database import Database
    from pricesync.server.models import (
        Conflict,
        ErpOrderMirror,
        ErpProductMirror,
        Order,
        Product,
    )

logger = logging.getLogger(__name__)

MAJOR_PRICE_DRIFT = 0.20
STOCK_THRESHOLD = 5
MAJOR_STOCK_DRIFT = 50
ORDER_TOTAL_TOLERANCE = 0.01
HIGH_SKEW_SECONDS = 24 * 3600
MEDIUM_SKEW_SECONDS = 3600


@dataclass(frozen=True)
class Finding:
    """One divergence found by a check, before it is persisted."""

    conflict_type: ConflictType
    severity: Severity
    entity_type: EntityType
    entity_id: str
    external_id: str | None
    local_data: dict[str, Any]
    external_data: dict[str, Any]
    differences: list[dict[str, Any]]
    details: dict[str, Any] = field(default_factory=dict)


def _skew_seconds(product: Product, mirror: ErpProductMirror) -> float:
    local_ts = as_utc(product.updated_at)
    erp_ts = as_utc(mirror.updated_at)
    if local_ts is None or erp_ts is None:
        return 0.0
    return abs((local_ts - erp_ts).total_seconds())


def check_attributes(
    product: Product,
    mirror: ErpProductMirror,
    skew_window: float = 300.0,
) -> Finding | None:
    """Compare name and description, and the updated_at skew.

    Fields the ERP did not send are skipped. A skew beyond skew_window is a
    conflict on its own, even when the text matches.
    """
    differences: list[dict[str, Any]] = []
    for name in ("name", "description"):
        erp_value = getattr(mirror, name)
        local_value = getattr(product, name)
        if erp_value is None:
            continue
        if (local_value or "").strip() != erp_value.strip():
            differences.append({"field": name, "local": local_value, "erp": erp_value})

    skew = _skew_seconds(product, mirror)
    if not differences and skew <= skew_window:
        return None

    if skew > skew_window:
        differences.append(
            {
                "field": "updated_at",
                "local": to_iso(product.updated_at),
                "erp": to_iso(mirror.updated_at),
                "skew_seconds": round(skew, 1),
            }
        )
    if skew > HIGH_SKEW_SECONDS:
        severity = Severity.HIGH
    elif skew > MEDIUM_SKEW_SECONDS:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    return Finding(
        conflict_type=ConflictType.PRODUCT_DATA,
        severity=severity,
        entity_type=EntityType.PRODUCT,
        entity_id=product.id,
        external_id=product.external_id,
        local_data={
            "name": product.name,
            "description": product.description,
            "updated_at": to_iso(product.updated_at),
        },
        external_data={
            "name": mirror.name,
            "description": mirror.description,
            "updated_at": to_iso(mirror.updated_at),
        },
        differences=differences,
        details={"skew_seconds": round(skew, 1)},
    )


def check_price(product: Product, mirror: ErpProductMirror, threshold: float) -> Finding | None:
    """Flag relative price drift beyond the tenant's conflict threshold."""
    local, erp = product.price, mirror.price
    difference = abs(local - erp)
    if difference <= local * threshold:
        return None

    drift = difference / local if local > 0 else float("inf")
    major = drift > MAJOR_PRICE_DRIFT
    return Finding(
        conflict_type=ConflictType.PRICE_MAJOR if major else ConflictType.PRICE_MINOR,
        severity=Severity.HIGH if major else Severity.MEDIUM,
        entity_type=EntityType.PRODUCT,
        entity_id=product.id,
        external_id=product.external_id,
        local_data={
            "price": local,
            "updated_at": to_iso(product.price_updated_at or product.updated_at),
        },
        external_data={"price": erp, "updated_at": to_iso(mirror.updated_at)},
        differences=[
            {
                "field": "price",
                "local": local,
                "erp": erp,
                "difference": round(difference, 2),
                "percent": round(drift * 100, 2) if local > 0 else None,
            }
        ],
        details={"threshold": threshold},
    )


def check_stock(product: Product, mirror: ErpProductMirror) -> Finding | None:
    """Flag stock differences of more than a handful of units."""
    if mirror.stock is None:
        return None
    local, erp = product.stock, mirror.stock
    difference = abs(local - erp)
    if difference <= STOCK_THRESHOLD:
        return None

    major = difference > MAJOR_STOCK_DRIFT
    return Finding(
        conflict_type=ConflictType.STOCK_MAJOR if major else ConflictType.STOCK_MINOR,
        severity=Severity.HIGH if major else Severity.LOW,
        entity_type=EntityType.PRODUCT,
        entity_id=product.id,
        external_id=product.external_id,
        local_data={"stock": local, "updated_at": to_iso(product.updated_at)},
        external_data={"stock": erp, "updated_at": to_iso(mirror.updated_at)},
        differences=[{"field": "stock", "local": local, "erp": erp, "difference": difference}],
    )


def check_order(order: Order, mirror: ErpOrderMirror) -> Finding | None:
    """Flag status or total disagreement on an order."""
    differences: list[dict[str, Any]] = []
    if order.status != mirror.status:
        differences.append({"field": "status", "local": order.status, "erp": mirror.status})
    total_differs = abs(order.total - mirror.total) > ORDER_TOTAL_TOLERANCE
    if total_differs:
        differences.append(
            {
                "field": "total",
                "local": order.total,
                "erp": mirror.total,
                "difference": round(abs(order.total - mirror.total), 2),
            }
        )
    if not differences:
        return None

    return Finding(
        conflict_type=ConflictType.ORDER_DATA,
        severity=Severity.HIGH if total_differs else Severity.MEDIUM,
        entity_type=EntityType.ORDER,
        entity_id=order.id,
        external_id=order.external_id,
        local_data={
            "status": order.status,
            "total": order.total,
            "updated_at": to_iso(order.updated_at),
        },
        external_data={
            "status": mirror.status,
            "total": mirror.total,
            "updated_at": to_iso(mirror.updated_at),
        },
        differences=differences,
    )


def product_findings(
    product: Product,
    mirror: ErpProductMirror,
    policy: TenantPolicy,
    skew_window: float,
    attributes: bool = True,
) -> list[Finding]:
    """Run every product check against one local/mirror pair."""
    checks = [
        check_price(product, mirror, policy.conflict_threshold),
        check_stock(product, mirror),
    ]
    if attributes:
        checks.append(check_attributes(product, mirror, skew_window))
    return [finding for finding in checks if finding is not None]


class ConflictDetector:
    """Scans a tenant's local/ERP pairs and pipelines findings to the dispatcher."""

    def __init__(
        self,
        db: Database,
        config: ConfigStore,
        dispatcher: ConflictDispatcher,
    ) -> None:
        self._db = db
        self._config = config
        self._dispatcher = dispatcher

    async def detect_conflicts(self, tenant_id: str) -> list[Conflict]:
        """Run a full detection sweep for one tenant.

        Returns:
            Conflicts touched by this sweep, after dispatch.
        """
        config = self._config.current()
        policy = config.policy_for(tenant_id)

        findings: list[Finding] = []
        for product, mirror in await asyncio.to_thread(self._db.product_pairs, tenant_id):
            findings.extend(
                product_findings(product, mirror, policy, config.attribute_skew_seconds)
            )
        for order, order_mirror in await asyncio.to_thread(self._db.order_pairs, tenant_id):
            finding = check_order(order, order_mirror)
            if finding is not None:
                findings.append(finding)

        conflicts = await self._record(tenant_id, findings)
        logger.info(
            "Conflict sweep for tenant %s: %d finding(s), %d still pending",
            tenant_id,
            len(findings),
            sum(1 for c in conflicts if c.status == ConflictStatus.PENDING.value),
        )
        return conflicts

    async def check_entity(self, tenant_id: str, product_id: str) -> list[Conflict]:
        """Run the price and stock checks for a single product."""
        config = self._config.current()
        policy = config.policy_for(tenant_id)
        pairs = await asyncio.to_thread(self._db.product_pairs, tenant_id, product_id)
        findings: list[Finding] = []
        for product, mirror in pairs:
            findings.extend(
                product_findings(
                    product, mirror, policy, config.attribute_skew_seconds, attributes=False
                )
            )
        return await self._record(tenant_id, findings)

    async def _record(self, tenant_id: str, findings: list[Finding]) -> list[Conflict]:
        conflicts: list[Conflict] = []
        for finding in findings:
            try:
                conflict, created = await asyncio.to_thread(
                    self._db.upsert_conflict,
                    tenant_id,
                    finding.conflict_type.value,
                    finding.severity.value,
                    finding.entity_type.value,
                    finding.entity_id,
                    finding.external_id,
                    finding.local_data,
                    finding.external_data,
                    finding.differences,
                    finding.details,
                )
            except SQLAlchemyError:
                logger.exception(
                    "Failed to record %s conflict for %s",
                    finding.conflict_type.value,
                    finding.entity_id,
                )
                continue
            if created:
                logger.debug(
                    "New %s conflict %s on %s",
                    conflict.conflict_type,
                    conflict.id,
                    conflict.entity_id,
                )
            conflicts.append(await self._dispatcher.dispatch(conflict, created))
        return conflicts
