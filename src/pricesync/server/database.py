"""Pricesync store using SQLAlchemy with SQLite.

This module provides:
- Tenant, product and order storage (local catalog)
- ERP mirror upserts and local/ERP pairing for conflict detection
- Sync job lifecycle with validated state transitions
- Price history (append-only) and daily price analytics
- Pricing rule CRUD
- Conflict upsert, resolution, ignore and archival
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, create_engine, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pricesync.core.timeutil import utcnow
from pricesync.core.types import (
    CONFLICT_RESOLUTION_SYNC_TYPE,
    ConflictStatus,
    EntityType,
    JobStatus,
    ValidationStatus,
)
from pricesync.engine.classifier import change_percent
from pricesync.engine.errors import (
    ConcurrentModificationError,
    ConflictNotFoundError,
    ConflictStateError,
    EntityNotFoundError,
    JobNotFoundError,
    RuleNotFoundError,
)
from pricesync.engine.jobs import TERMINAL_STATUSES, check_transition
from pricesync.server.models import (
    Base,
    Conflict,
    ConflictHistory,
    ErpOrderMirror,
    ErpProductMirror,
    Order,
    PriceAnalytics,
    PriceChange,
    PricingRule,
    Product,
    SyncJob,
    Tenant,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Absolute tolerance for float equality on monetary values
PRICE_EPSILON = 0.005


def _same_value(current: Any, observed: Any) -> bool:
    if isinstance(current, int | float) and isinstance(observed, int | float):
        return abs(current - observed) < PRICE_EPSILON
    return current == observed


class Database:
    """SQLAlchemy database for the pricesync store.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Every public method runs in its own session; returned objects are
    detached from it.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: engine calls run in worker threads
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run a block atomically; commits on success, rolls back on error."""
        with self._session() as session, session.begin():
            yield session

    # === Tenant operations ===

    def create_tenant(
        self,
        tenant_id: str,
        name: str,
        is_active: bool = True,
        erp_integration_enabled: bool = True,
    ) -> Tenant:
        """Register a tenant.

        Raises:
            IntegrityError: If the tenant already exists.
        """
        with self._session() as session:
            tenant = Tenant(
                id=tenant_id,
                name=name,
                is_active=is_active,
                erp_integration_enabled=erp_integration_enabled,
            )
            session.add(tenant)
            session.commit()
            session.expunge(tenant)
            return tenant

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant:
                session.expunge(tenant)
            return tenant

    def list_sync_tenants(self) -> list[str]:
        """Get ids of active tenants with ERP integration enabled."""
        with self._session() as session:
            stmt = (
                select(Tenant.id)
                .where(Tenant.is_active.is_(True), Tenant.erp_integration_enabled.is_(True))
                .order_by(Tenant.id)
            )
            return list(session.execute(stmt).scalars().all())

    # === Product operations ===

    def create_product(
        self,
        tenant_id: str,
        name: str,
        price: float,
        stock: int = 0,
        external_id: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
        quantity_tier: int = 1,
        updated_at: datetime | None = None,
    ) -> Product:
        """Add a product to the local catalog."""
        with self._session() as session:
            product = Product(
                tenant_id=tenant_id,
                name=name,
                price=price,
                stock=stock,
                external_id=external_id,
                category=category,
                tags=list(tags or []),
                description=description,
                quantity_tier=quantity_tier,
                updated_at=updated_at or utcnow(),
            )
            session.add(product)
            session.commit()
            session.expunge(product)
            return product

    def get_product(self, product_id: str) -> Product | None:
        with self._session() as session:
            product = session.get(Product, product_id)
            if product:
                session.expunge(product)
            return product

    def list_products(
        self,
        tenant_id: str,
        external_ids: list[str] | None = None,
    ) -> list[Product]:
        """List a tenant's ERP-linked products (those with an external id).

        Args:
            tenant_id: Tenant to list.
            external_ids: Optional filter on external ids.

        Returns:
            Products ordered by external id.
        """
        with self._session() as session:
            stmt = select(Product).where(
                Product.tenant_id == tenant_id,
                Product.external_id.is_not(None),
            )
            if external_ids is not None:
                stmt = stmt.where(Product.external_id.in_(external_ids))
            stmt = stmt.order_by(Product.external_id)
            products = list(session.execute(stmt).scalars().all())
            for product in products:
                session.expunge(product)
            return products

    def update_product(self, product_id: str, **fields: Any) -> Product:
        """Change local product fields (a storefront-side edit).

        Raises:
            EntityNotFoundError: If the product does not exist.
        """
        with self._session() as session:
            product = session.get(Product, product_id)
            if product is None:
                raise EntityNotFoundError(f"Product not found: {product_id}")
            for name, value in fields.items():
                setattr(product, name, value)
            if "updated_at" not in fields:
                product.updated_at = utcnow()
            session.commit()
            session.expunge(product)
            return product

    def delete_product(self, product_id: str) -> bool:
        with self._session() as session:
            product = session.get(Product, product_id)
            if product is None:
                return False
            session.delete(product)
            session.commit()
            return True

    def apply_price_change(
        self,
        product_id: str,
        expected_price: float,
        new_price: float | None,
        new_stock: int | None,
        sync_type: str,
        applied_rules: list[dict[str, Any]] | None = None,
        change_reason: str | None = None,
    ) -> PriceChange | None:
        """Write ERP-derived values to one product in a single transaction.

        The product row is read for update and must still hold the price
        the caller classified against; otherwise another writer got there
        first and nothing is written.

        Args:
            product_id: Product to update.
            expected_price: Local price observed when the change was computed.
            new_price: Price to write (None leaves the price alone).
            new_stock: Stock to write (None leaves the stock alone).
            sync_type: Cadence or origin recorded on the history row.
            applied_rules: Rule trace recorded on the history row.
            change_reason: Classifier reason recorded on the history row.

        Returns:
            The appended PriceChange row, or None if only stock changed.

        Raises:
            EntityNotFoundError: If the product was deleted.
            ConcurrentModificationError: If the price changed underneath us.
        """
        now = utcnow()
        with self.transaction() as session:
            product = session.get(Product, product_id, with_for_update=True)
            if product is None:
                raise EntityNotFoundError(f"Product not found: {product_id}")
            if not _same_value(product.price, expected_price):
                raise ConcurrentModificationError(
                    f"Product {product_id} price changed: expected {expected_price}, "
                    f"found {product.price}"
                )

            change: PriceChange | None = None
            if new_price is not None:
                old_price = product.price
                change = PriceChange(
                    tenant_id=product.tenant_id,
                    product_id=product.id,
                    external_id=product.external_id,
                    old_price=old_price,
                    new_price=new_price,
                    percent_change=round(change_percent(old_price, new_price), 4),
                    amount_change=round(new_price - old_price, 2),
                    sync_type=sync_type,
                    applied_rules=list(applied_rules or []),
                    validation_status=ValidationStatus.APPLIED.value,
                    change_reason=change_reason,
                    created_at=now,
                )
                session.add(change)
                product.price = new_price
                product.price_updated_at = now
            if new_stock is not None:
                product.stock = new_stock
            product.updated_at = now
            product.last_erp_sync = now
            session.flush()
            if change is not None:
                session.expunge(change)
            return change

    def record_rejected_change(
        self,
        product: Product,
        proposed_price: float,
        sync_type: str,
        applied_rules: list[dict[str, Any]] | None = None,
        change_reason: str | None = None,
    ) -> PriceChange:
        """Append a rejected PriceChange row; the product is not touched."""
        with self._session() as session:
            change = PriceChange(
                tenant_id=product.tenant_id,
                product_id=product.id,
                external_id=product.external_id,
                old_price=product.price,
                new_price=proposed_price,
                percent_change=round(change_percent(product.price, proposed_price), 4),
                amount_change=round(proposed_price - product.price, 2),
                sync_type=sync_type,
                applied_rules=list(applied_rules or []),
                validation_status=ValidationStatus.REJECTED.value,
                change_reason=change_reason,
            )
            session.add(change)
            session.commit()
            session.expunge(change)
            return change

    def mark_synced(self, product_id: str) -> None:
        """Stamp last_erp_sync on a product the ERP agreed with."""
        with self._session() as session:
            product = session.get(Product, product_id)
            if product:
                product.last_erp_sync = utcnow()
                session.commit()

    # === Order operations ===

    def create_order(
        self,
        tenant_id: str,
        status: str,
        total: float,
        external_id: str | None = None,
        updated_at: datetime | None = None,
    ) -> Order:
        with self._session() as session:
            order = Order(
                tenant_id=tenant_id,
                status=status,
                total=total,
                external_id=external_id,
                updated_at=updated_at or utcnow(),
            )
            session.add(order)
            session.commit()
            session.expunge(order)
            return order

    def get_order(self, order_id: str) -> Order | None:
        with self._session() as session:
            order = session.get(Order, order_id)
            if order:
                session.expunge(order)
            return order

    # === ERP mirror operations ===

    def upsert_erp_product(
        self,
        tenant_id: str,
        external_id: str,
        price: float,
        stock: int | None,
        updated_at: datetime,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """Record the last-known ERP state of a product (atomic upsert)."""
        values = {
            "tenant_id": tenant_id,
            "external_id": external_id,
            "price": price,
            "stock": stock,
            "updated_at": updated_at,
            "mirrored_at": utcnow(),
        }
        update = {k: v for k, v in values.items() if k not in ("tenant_id", "external_id")}
        # Attribute fields are only overwritten when the ERP sent them
        if name is not None:
            values["name"] = update["name"] = name
        if description is not None:
            values["description"] = update["description"] = description

        stmt = sqlite_insert(ErpProductMirror).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=["tenant_id", "external_id"], set_=update)
        with self.transaction() as session:
            session.execute(stmt)

    def upsert_erp_order(
        self,
        tenant_id: str,
        external_id: str,
        status: str,
        total: float,
        updated_at: datetime,
    ) -> None:
        """Record the last-known ERP state of an order (atomic upsert)."""
        values = {
            "tenant_id": tenant_id,
            "external_id": external_id,
            "status": status,
            "total": total,
            "updated_at": updated_at,
            "mirrored_at": utcnow(),
        }
        update = {k: v for k, v in values.items() if k not in ("tenant_id", "external_id")}
        stmt = sqlite_insert(ErpOrderMirror).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=["tenant_id", "external_id"], set_=update)
        with self.transaction() as session:
            session.execute(stmt)

    def product_pairs(
        self,
        tenant_id: str,
        product_id: str | None = None,
    ) -> list[tuple[Product, ErpProductMirror]]:
        """Join local products with their ERP mirror rows.

        Args:
            tenant_id: Tenant to scan.
            product_id: Restrict to one product.

        Returns:
            (local, mirror) pairs for products that have a mirror row.
        """
        with self._session() as session:
            stmt = (
                select(Product, ErpProductMirror)
                .join(
                    ErpProductMirror,
                    and_(
                        ErpProductMirror.tenant_id == Product.tenant_id,
                        ErpProductMirror.external_id == Product.external_id,
                    ),
                )
                .where(Product.tenant_id == tenant_id)
                .order_by(Product.external_id)
            )
            if product_id is not None:
                stmt = stmt.where(Product.id == product_id)
            pairs = []
            for product, mirror in session.execute(stmt).all():
                session.expunge(product)
                session.expunge(mirror)
                pairs.append((product, mirror))
            return pairs

    def order_pairs(self, tenant_id: str) -> list[tuple[Order, ErpOrderMirror]]:
        """Join local orders with their ERP mirror rows."""
        with self._session() as session:
            stmt = (
                select(Order, ErpOrderMirror)
                .join(
                    ErpOrderMirror,
                    and_(
                        ErpOrderMirror.tenant_id == Order.tenant_id,
                        ErpOrderMirror.external_id == Order.external_id,
                    ),
                )
                .where(Order.tenant_id == tenant_id)
                .order_by(Order.external_id)
            )
            pairs = []
            for order, mirror in session.execute(stmt).all():
                session.expunge(order)
                session.expunge(mirror)
                pairs.append((order, mirror))
            return pairs

    # === Sync job operations ===

    def create_job(self, tenant_id: str, job_type: str) -> SyncJob:
        """Create a pending sync job."""
        with self._session() as session:
            job = SyncJob(tenant_id=tenant_id, job_type=job_type, status=JobStatus.PENDING.value)
            session.add(job)
            session.commit()
            session.expunge(job)
            return job

    def get_job(self, job_id: str) -> SyncJob | None:
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job:
                session.expunge(job)
            return job

    def list_jobs(
        self,
        tenant_id: str | None = None,
        job_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        """List jobs, newest first."""
        with self._session() as session:
            stmt = select(SyncJob)
            if tenant_id is not None:
                stmt = stmt.where(SyncJob.tenant_id == tenant_id)
            if job_type is not None:
                stmt = stmt.where(SyncJob.job_type == job_type)
            if status is not None:
                stmt = stmt.where(SyncJob.status == status)
            stmt = stmt.order_by(SyncJob.created_at.desc()).limit(limit)
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    def last_completed_job(self, tenant_id: str, job_type: str) -> SyncJob | None:
        """Get the most recently started completed job of a type."""
        with self._session() as session:
            stmt = (
                select(SyncJob)
                .where(
                    SyncJob.tenant_id == tenant_id,
                    SyncJob.job_type == job_type,
                    SyncJob.status == JobStatus.COMPLETED.value,
                )
                .order_by(SyncJob.started_at.desc())
                .limit(1)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if job:
                session.expunge(job)
            return job

    def transition_job(
        self,
        job_id: str,
        status: JobStatus,
        **fields: Any,
    ) -> SyncJob:
        """Move a job to a new status, validating the transition.

        Sets started_at on RUNNING and ended_at on terminal statuses.
        Extra fields (counts, error_details, performance_metrics) are
        written in the same commit.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the transition is not allowed.
        """
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            check_transition(JobStatus(job.status), status)

            job.status = status.value
            if status == JobStatus.RUNNING:
                job.started_at = utcnow()
            if status in TERMINAL_STATUSES:
                job.ended_at = utcnow()
            for name, value in fields.items():
                setattr(job, name, value)
            session.commit()
            session.expunge(job)
            return job

    def update_job_progress(
        self,
        job_id: str,
        total: int,
        processed: int,
        updated: int,
        failed: int,
    ) -> None:
        """Write running counters of a running job."""
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job is None or job.status != JobStatus.RUNNING.value:
                return
            job.total_count = total
            job.processed_count = processed
            job.updated_count = updated
            job.failed_count = failed
            session.commit()

    def fail_stale_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process.

        Returns:
            Number of jobs failed.
        """
        with self._session() as session:
            stmt = select(SyncJob).where(
                SyncJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value])
            )
            jobs = list(session.execute(stmt).scalars().all())
            now = utcnow()
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.ended_at = now
                job.error_details = {
                    "type": "Interrupted",
                    "message": "Process stopped before the job finished",
                }
            session.commit()
            return len(jobs)

    # === Pricing rule operations ===

    def upsert_rule(
        self,
        tenant_id: str,
        rule_name: str,
        rule_type: str,
        conditions: dict[str, Any],
        actions: list[dict[str, Any]],
        priority: int = 0,
        is_active: bool = True,
        rule_id: int | None = None,
    ) -> tuple[PricingRule, str | None]:
        """Create a rule, or replace an existing one of the same tenant.

        Returns:
            Tuple of (rule, previous rule_type or None when created).

        Raises:
            RuleNotFoundError: If rule_id is given but unknown for the tenant.
        """
        with self._session() as session:
            previous_type: str | None = None
            if rule_id is None:
                rule = PricingRule(tenant_id=tenant_id)
                session.add(rule)
            else:
                rule = session.get(PricingRule, rule_id)
                if rule is None or rule.tenant_id != tenant_id:
                    raise RuleNotFoundError(f"Pricing rule not found: {rule_id}")
                previous_type = rule.rule_type
            rule.rule_name = rule_name
            rule.rule_type = rule_type
            rule.conditions = dict(conditions)
            rule.actions = [dict(a) for a in actions]
            rule.priority = priority
            rule.is_active = is_active
            rule.updated_at = utcnow()
            session.commit()
            session.expunge(rule)
            return rule, previous_type

    def get_rule(self, rule_id: int) -> PricingRule | None:
        with self._session() as session:
            rule = session.get(PricingRule, rule_id)
            if rule:
                session.expunge(rule)
            return rule

    def list_rules(
        self,
        tenant_id: str,
        rule_type: str | None = None,
        active_only: bool = False,
    ) -> list[PricingRule]:
        """List a tenant's rules by priority descending, then id."""
        with self._session() as session:
            stmt = select(PricingRule).where(PricingRule.tenant_id == tenant_id)
            if rule_type is not None:
                stmt = stmt.where(PricingRule.rule_type == rule_type)
            if active_only:
                stmt = stmt.where(PricingRule.is_active.is_(True))
            stmt = stmt.order_by(PricingRule.priority.desc(), PricingRule.id.asc())
            rules = list(session.execute(stmt).scalars().all())
            for rule in rules:
                session.expunge(rule)
            return rules

    def delete_rule(self, rule_id: int) -> PricingRule | None:
        """Delete a rule.

        Returns:
            The deleted rule (detached), or None if it did not exist.
        """
        with self._session() as session:
            rule = session.get(PricingRule, rule_id)
            if rule is None:
                return None
            session.delete(rule)
            session.commit()
            return rule

    # === Conflict operations ===

    def upsert_conflict(
        self,
        tenant_id: str,
        conflict_type: str,
        severity: str,
        entity_type: str,
        entity_id: str,
        external_id: str | None,
        local_data: dict[str, Any],
        external_data: dict[str, Any],
        differences: list[dict[str, Any]],
        details: dict[str, Any] | None = None,
    ) -> tuple[Conflict, bool]:
        """Create or refresh the pending conflict for (entity_id, type).

        At most one pending conflict exists per pair (partial unique
        index). A concurrent insert that loses the race falls back to
        updating the winner's row.

        Returns:
            Tuple of (conflict, created).
        """
        args = (
            tenant_id,
            conflict_type,
            severity,
            entity_type,
            entity_id,
            external_id,
            local_data,
            external_data,
            differences,
            details or {},
        )
        try:
            return self._upsert_conflict(*args)
        except IntegrityError:
            logger.debug(
                "Concurrent insert of %s conflict for %s, retrying as update",
                conflict_type,
                entity_id,
            )
            return self._upsert_conflict(*args)

    def _upsert_conflict(
        self,
        tenant_id: str,
        conflict_type: str,
        severity: str,
        entity_type: str,
        entity_id: str,
        external_id: str | None,
        local_data: dict[str, Any],
        external_data: dict[str, Any],
        differences: list[dict[str, Any]],
        details: dict[str, Any],
    ) -> tuple[Conflict, bool]:
        now = utcnow()
        with self.transaction() as session:
            stmt = select(Conflict).where(
                Conflict.entity_id == entity_id,
                Conflict.conflict_type == conflict_type,
                Conflict.status == ConflictStatus.PENDING.value,
            )
            conflict = session.execute(stmt).scalar_one_or_none()
            created = conflict is None
            if conflict is None:
                conflict = Conflict(
                    tenant_id=tenant_id,
                    conflict_type=conflict_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    external_id=external_id,
                    status=ConflictStatus.PENDING.value,
                    created_at=now,
                    detection_count=1,
                )
                session.add(conflict)
            else:
                conflict.detection_count += 1
            conflict.severity = severity
            conflict.local_data = dict(local_data)
            conflict.external_data = dict(external_data)
            conflict.differences = list(differences)
            conflict.details = dict(details)
            conflict.detected_at = now
            session.flush()
            session.expunge(conflict)
            return conflict, created

    def get_conflict(self, conflict_id: str) -> Conflict | None:
        with self._session() as session:
            conflict = session.get(Conflict, conflict_id)
            if conflict:
                session.expunge(conflict)
            return conflict

    def list_conflicts(
        self,
        tenant_id: str | None = None,
        status: str | None = None,
        conflict_type: str | None = None,
        severity: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[Conflict]:
        """List conflicts, newest detection first."""
        with self._session() as session:
            stmt = select(Conflict)
            if tenant_id is not None:
                stmt = stmt.where(Conflict.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(Conflict.status == status)
            if conflict_type is not None:
                stmt = stmt.where(Conflict.conflict_type == conflict_type)
            if severity is not None:
                stmt = stmt.where(Conflict.severity == severity)
            if entity_id is not None:
                stmt = stmt.where(Conflict.entity_id == entity_id)
            stmt = stmt.order_by(Conflict.detected_at.desc()).limit(limit)
            conflicts = list(session.execute(stmt).scalars().all())
            for conflict in conflicts:
                session.expunge(conflict)
            return conflicts

    def flag_manual(self, conflict_id: str) -> bool:
        """Queue a pending conflict for manual review.

        Returns:
            True if this call set notified_at (first notification), False
            if the conflict was already notified or is no longer pending.
        """
        with self._session() as session:
            conflict = session.get(Conflict, conflict_id)
            if conflict is None or conflict.status != ConflictStatus.PENDING.value:
                return False
            conflict.requires_manual = True
            first = conflict.notified_at is None
            if first:
                conflict.notified_at = utcnow()
            session.commit()
            return first

    def set_auto_resolution_error(self, conflict_id: str, error: str) -> None:
        with self._session() as session:
            conflict = session.get(Conflict, conflict_id)
            if conflict is not None and conflict.status == ConflictStatus.PENDING.value:
                conflict.auto_resolution_error = error
                session.commit()

    def apply_resolution(
        self,
        conflict_id: str,
        data: dict[str, Any],
        resolution: dict[str, Any],
        resolved_by: str,
        verify_local: bool = True,
    ) -> Conflict:
        """Write a resolution to the local entity and close the conflict.

        Both writes happen in one transaction. With verify_local, the
        entity must still hold the values recorded in the conflict's
        local_data for every field being written.

        Args:
            conflict_id: Conflict to resolve.
            data: Field values to write to the local entity.
            resolution: Outcome stored on the conflict.
            resolved_by: "auto" or an operator id.
            verify_local: Whether to check the entity is unchanged.

        Returns:
            The resolved conflict.

        Raises:
            ConflictNotFoundError: If the conflict does not exist.
            ConflictStateError: If the conflict is not pending.
            EntityNotFoundError: If the entity was deleted.
            ConcurrentModificationError: If the entity changed since detection.
        """
        now = utcnow()
        with self.transaction() as session:
            conflict = session.get(Conflict, conflict_id, with_for_update=True)
            if conflict is None:
                raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
            if conflict.status != ConflictStatus.PENDING.value:
                raise ConflictStateError(f"Conflict {conflict_id} is already {conflict.status}")

            model = Order if conflict.entity_type == EntityType.ORDER.value else Product
            entity = session.get(model, conflict.entity_id, with_for_update=True)
            if entity is None:
                raise EntityNotFoundError(
                    f"{conflict.entity_type.capitalize()} not found: {conflict.entity_id}"
                )

            if verify_local:
                for name in data:
                    if name not in conflict.local_data:
                        continue
                    if not _same_value(getattr(entity, name), conflict.local_data[name]):
                        raise ConcurrentModificationError(
                            f"{conflict.entity_type} {conflict.entity_id} field '{name}' "
                            "changed since detection"
                        )

            old_price = getattr(entity, "price", None)
            for name, value in data.items():
                if name == "stock" and value is not None:
                    value = int(value)
                elif name in ("price", "total") and value is not None:
                    value = float(value)
                setattr(entity, name, value)
            entity.conflict_resolved_at = now
            entity.updated_at = now

            new_price = data.get("price")
            if (
                isinstance(entity, Product)
                and new_price is not None
                and old_price is not None
                and not _same_value(old_price, new_price)
            ):
                entity.price_updated_at = now
                session.add(
                    PriceChange(
                        tenant_id=entity.tenant_id,
                        product_id=entity.id,
                        external_id=entity.external_id,
                        old_price=old_price,
                        new_price=float(new_price),
                        percent_change=round(change_percent(old_price, float(new_price)), 4),
                        amount_change=round(float(new_price) - old_price, 2),
                        sync_type=CONFLICT_RESOLUTION_SYNC_TYPE,
                        applied_rules=[],
                        validation_status=ValidationStatus.APPLIED.value,
                        change_reason=resolution.get("reason"),
                        created_at=now,
                    )
                )

            conflict.status = ConflictStatus.RESOLVED.value
            conflict.resolution = dict(resolution)
            conflict.resolved_by = resolved_by
            conflict.resolved_at = now
            conflict.auto_resolution_error = None
            session.flush()
            session.expunge(conflict)
            return conflict

    def ignore_conflict(self, conflict_id: str, reason: str, operator: str) -> Conflict:
        """Close a pending conflict without touching the entity.

        Raises:
            ConflictNotFoundError: If the conflict does not exist.
            ConflictStateError: If the conflict is not pending.
        """
        with self.transaction() as session:
            conflict = session.get(Conflict, conflict_id, with_for_update=True)
            if conflict is None:
                raise ConflictNotFoundError(f"Conflict not found: {conflict_id}")
            if conflict.status != ConflictStatus.PENDING.value:
                raise ConflictStateError(f"Conflict {conflict_id} is already {conflict.status}")
            conflict.status = ConflictStatus.IGNORED.value
            conflict.ignore_reason = reason
            conflict.resolved_by = operator
            conflict.resolved_at = utcnow()
            session.flush()
            session.expunge(conflict)
            return conflict

    def conflict_metrics(self, tenant_id: str | None = None) -> dict[str, Any]:
        """Summarise conflicts in the active table.

        Returns:
            Dict with totals, per-status/type/severity counts, resolved-by
            split and resolution_rate (percent of conflicts resolved).
        """
        with self._session() as session:
            stmt = select(
                Conflict.status,
                Conflict.conflict_type,
                Conflict.severity,
                Conflict.resolved_by,
                Conflict.requires_manual,
            )
            if tenant_id is not None:
                stmt = stmt.where(Conflict.tenant_id == tenant_id)
            rows = session.execute(stmt).all()

        by_status: Counter[str] = Counter()
        by_type: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        auto_resolved = manual_resolved = awaiting_review = 0
        for row in rows:
            by_status[row.status] += 1
            by_type[row.conflict_type] += 1
            by_severity[row.severity] += 1
            if row.status == ConflictStatus.RESOLVED.value:
                if row.resolved_by == "auto":
                    auto_resolved += 1
                else:
                    manual_resolved += 1
            elif row.status == ConflictStatus.PENDING.value and row.requires_manual:
                awaiting_review += 1

        total = len(rows)
        resolved = by_status[ConflictStatus.RESOLVED.value]
        return {
            "total": total,
            "pending": by_status[ConflictStatus.PENDING.value],
            "resolved": resolved,
            "ignored": by_status[ConflictStatus.IGNORED.value],
            "auto_resolved": auto_resolved,
            "manual_resolved": manual_resolved,
            "awaiting_review": awaiting_review,
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
            "resolution_rate": round(resolved / total * 100, 2) if total else 0.0,
        }

    def archive_conflicts(self, older_than_days: int = 30) -> int:
        """Move closed conflicts older than the retention window to history.

        Args:
            older_than_days: Archive conflicts closed more than this many days ago.

        Returns:
            Number of conflicts archived.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        with self.transaction() as session:
            stmt = select(Conflict).where(
                Conflict.status.in_(
                    [ConflictStatus.RESOLVED.value, ConflictStatus.IGNORED.value]
                ),
                Conflict.resolved_at < cutoff,
            )
            conflicts = list(session.execute(stmt).scalars().all())
            for conflict in conflicts:
                session.add(
                    ConflictHistory(
                        id=conflict.id,
                        tenant_id=conflict.tenant_id,
                        conflict_type=conflict.conflict_type,
                        severity=conflict.severity,
                        entity_type=conflict.entity_type,
                        entity_id=conflict.entity_id,
                        status=conflict.status,
                        payload={
                            "local_data": conflict.local_data,
                            "external_data": conflict.external_data,
                            "differences": conflict.differences,
                            "resolution": conflict.resolution,
                            "resolved_by": conflict.resolved_by,
                            "ignore_reason": conflict.ignore_reason,
                            "detection_count": conflict.detection_count,
                        },
                        detected_at=conflict.detected_at,
                        closed_at=conflict.resolved_at,
                    )
                )
                session.delete(conflict)
            return len(conflicts)

    def list_conflict_history(self, tenant_id: str, limit: int = 100) -> list[ConflictHistory]:
        with self._session() as session:
            stmt = (
                select(ConflictHistory)
                .where(ConflictHistory.tenant_id == tenant_id)
                .order_by(ConflictHistory.detected_at.desc())
                .limit(limit)
            )
            entries = list(session.execute(stmt).scalars().all())
            for entry in entries:
                session.expunge(entry)
            return entries

    # === Price history operations ===

    def list_price_history(
        self,
        tenant_id: str,
        product_id: str | None = None,
        limit: int = 100,
    ) -> list[PriceChange]:
        """List price history, newest first."""
        with self._session() as session:
            stmt = select(PriceChange).where(PriceChange.tenant_id == tenant_id)
            if product_id is not None:
                stmt = stmt.where(PriceChange.product_id == product_id)
            stmt = stmt.order_by(PriceChange.created_at.desc(), PriceChange.id.desc()).limit(limit)
            changes = list(session.execute(stmt).scalars().all())
            for change in changes:
                session.expunge(change)
            return changes

    def purge_price_history(self, older_than_days: int = 90) -> int:
        """Delete price history rows older than the retention window.

        Returns:
            Number of rows deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        with self._session() as session:
            stmt = select(PriceChange).where(PriceChange.created_at < cutoff)
            changes = list(session.execute(stmt).scalars().all())
            for change in changes:
                session.delete(change)
            session.commit()
            return len(changes)

    def generate_price_analytics(
        self,
        tenant_id: str,
        analysis_date: date | None = None,
    ) -> PriceAnalytics:
        """Compute (or recompute) one day's price summary for a tenant.

        Only applied changes count. The most changed category is the one
        with the most applied changes that day.
        """
        day = analysis_date or utcnow().date()
        start = datetime(day.year, day.month, day.day, tzinfo=UTC)
        end = start + timedelta(days=1)

        with self.transaction() as session:
            stmt = (
                select(PriceChange, Product.category)
                .join(Product, Product.id == PriceChange.product_id, isouter=True)
                .where(
                    PriceChange.tenant_id == tenant_id,
                    PriceChange.validation_status == ValidationStatus.APPLIED.value,
                    PriceChange.created_at >= start,
                    PriceChange.created_at < end,
                )
            )
            rows = session.execute(stmt).all()
            total_products = (
                session.execute(
                    select(func.count(Product.id)).where(Product.tenant_id == tenant_id)
                ).scalar()
                or 0
            )

            changed_products = {change.product_id for change, _ in rows}
            increases = sum(c.amount_change for c, _ in rows if c.amount_change > 0)
            decreases = sum(-c.amount_change for c, _ in rows if c.amount_change < 0)
            categories = Counter(category for _, category in rows if category)
            average = sum(c.percent_change for c, _ in rows) / len(rows) if rows else 0.0

            stmt = select(PriceAnalytics).where(
                PriceAnalytics.tenant_id == tenant_id,
                PriceAnalytics.analysis_date == day,
            )
            analytics = session.execute(stmt).scalar_one_or_none()
            if analytics is None:
                analytics = PriceAnalytics(tenant_id=tenant_id, analysis_date=day)
                session.add(analytics)
            analytics.total_products = total_products
            analytics.products_with_price_changes = len(changed_products)
            analytics.average_price_change_percent = round(average, 4)
            analytics.total_price_increase_amount = round(increases, 2)
            analytics.total_price_decrease_amount = round(decreases, 2)
            analytics.most_changed_category = (
                categories.most_common(1)[0][0] if categories else None
            )
            analytics.created_at = utcnow()
            session.flush()
            session.expunge(analytics)
            return analytics

    def list_price_analytics(self, tenant_id: str, days: int = 30) -> list[PriceAnalytics]:
        """List daily analytics for the last N days, newest first."""
        since = utcnow().date() - timedelta(days=days)
        with self._session() as session:
            stmt = (
                select(PriceAnalytics)
                .where(
                    PriceAnalytics.tenant_id == tenant_id,
                    PriceAnalytics.analysis_date >= since,
                )
                .order_by(PriceAnalytics.analysis_date.desc())
            )
            entries = list(session.execute(stmt).scalars().all())
            for entry in entries:
                session.expunge(entry)
            return entries
