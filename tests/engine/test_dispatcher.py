"""Tests for the conflict dispatcher (auto, manual and operator paths)."""

from __future__ import annotations

import pytest

from pricesync.core.timeutil import utcnow
from pricesync.core.types import (
    CONFLICT_RESOLUTION_SYNC_TYPE,
    ChosenSource,
    ConflictStatus,
    ConflictType,
    Severity,
    StrategyName,
)
from pricesync.engine.dispatcher import ManualResolution
from pricesync.engine.errors import ConflictNotFoundError, ConflictStateError
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.database import Database
from pricesync.server.models import Conflict, Product
from tests.fakes import TENANT, RecordingPublisher


def price_conflict(
    db: Database,
    product: Product,
    erp_price: float,
    conflict_type: ConflictType = ConflictType.PRICE_MAJOR,
    severity: Severity = Severity.HIGH,
) -> Conflict:
    conflict, _ = db.upsert_conflict(
        TENANT,
        conflict_type.value,
        severity.value,
        "product",
        product.id,
        product.external_id,
        {"price": product.price, "updated_at": "2025-01-01T00:00:00+00:00"},
        {"price": erp_price, "updated_at": "2025-01-02T00:00:00+00:00"},
        [{"field": "price", "local": product.price, "erp": erp_price}],
    )
    return conflict


@pytest.fixture
def product(db: Database) -> Product:
    return db.create_product(TENANT, "Widget", 100.0, stock=10, external_id="SKU-1")


class TestDispatch:
    """Tests for ConflictDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_auto_resolves_eligible_conflict(
        self,
        engine: PriceSyncEngine,
        db: Database,
        product: Product,
        publisher: RecordingPublisher,
    ) -> None:
        """price_minor/medium should be resolved with the default strategy."""
        conflict = price_conflict(db, product, 112.0, ConflictType.PRICE_MINOR, Severity.MEDIUM)

        result = await engine.dispatcher.dispatch(conflict, created=True)
        await engine.bus.drain()

        assert result.status == ConflictStatus.RESOLVED.value
        assert result.resolved_by == "auto"
        assert result.resolution["chosen_source"] == ChosenSource.ERP.value
        assert db.get_product(product.id).price == 112.0
        history = db.list_price_history(TENANT, product.id)
        assert history[0].sync_type == CONFLICT_RESOLUTION_SYNC_TYPE
        assert publisher.topics() == [
            "price_sync.conflict_detected",
            "price_sync.conflict_resolved",
        ]

    @pytest.mark.asyncio
    async def test_high_severity_goes_to_review_once(
        self,
        engine: PriceSyncEngine,
        db: Database,
        product: Product,
        publisher: RecordingPublisher,
    ) -> None:
        """A re-detected manual conflict should not be notified twice."""
        conflict = price_conflict(db, product, 150.0)

        await engine.dispatcher.dispatch(conflict, created=True)
        await engine.dispatcher.dispatch(conflict, created=False)
        await engine.bus.drain()

        stored = db.get_conflict(conflict.id)
        assert stored.status == ConflictStatus.PENDING.value
        assert stored.requires_manual is True
        assert publisher.topics() == ["price_sync.conflict_detected"]
        assert publisher.published[0][1]["urgent"] is True
        assert db.get_product(product.id).price == 100.0

    @pytest.mark.asyncio
    async def test_failed_auto_apply_stays_pending(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        """A local edit after detection should block the auto apply."""
        conflict = price_conflict(db, product, 112.0, ConflictType.PRICE_MINOR, Severity.MEDIUM)
        db.update_product(product.id, price=105.0)

        result = await engine.dispatcher.dispatch(conflict, created=True)

        assert result.status == ConflictStatus.PENDING.value
        stored = db.get_conflict(conflict.id)
        assert stored.status == ConflictStatus.PENDING.value
        assert "changed since detection" in stored.auto_resolution_error
        assert db.get_product(product.id).price == 105.0

    @pytest.mark.asyncio
    async def test_manual_required_strategy_queues(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        """A declining default strategy should fall through to manual review."""
        engine.update_tenant_policy(TENANT, {"default_strategy": "manual_required"})
        conflict = price_conflict(db, product, 112.0, ConflictType.PRICE_MINOR, Severity.MEDIUM)

        result = await engine.dispatcher.dispatch(conflict, created=True)

        assert result.status == ConflictStatus.PENDING.value
        assert db.get_conflict(conflict.id).requires_manual is True


class TestResolveConflict:
    """Tests for operator resolution."""

    @pytest.mark.asyncio
    async def test_choose_local(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)

        result = await engine.resolve_conflict(
            conflict.id, ManualResolution(chosen_source=ChosenSource.LOCAL), "alice"
        )

        assert result.success is True
        assert result.conflict.status == ConflictStatus.RESOLVED.value
        assert result.conflict.resolved_by == "alice"
        assert result.conflict.resolution["operator"] == "alice"
        assert db.get_product(product.id).price == 100.0
        # Price unchanged, so no history row
        assert db.list_price_history(TENANT, product.id) == []

    @pytest.mark.asyncio
    async def test_choose_erp_skips_local_verification(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        """Operators resolve against the current entity, even if it moved."""
        conflict = price_conflict(db, product, 150.0)
        db.update_product(product.id, price=120.0)

        result = await engine.resolve_conflict(
            conflict.id,
            ManualResolution(chosen_source=ChosenSource.ERP, reason="ERP is right"),
            "alice",
        )

        assert result.success is True
        assert result.conflict.resolution["reason"] == "ERP is right"
        assert db.get_product(product.id).price == 150.0
        history = db.list_price_history(TENANT, product.id)
        assert history[0].old_price == 120.0
        assert history[0].new_price == 150.0

    @pytest.mark.asyncio
    async def test_choose_erp_keeps_fields_erp_never_sent(
        self, engine: PriceSyncEngine, db: Database
    ) -> None:
        """Picking the ERP side writes only what the ERP reported."""
        product = db.create_product(
            TENANT,
            "Widget",
            100.0,
            stock=10,
            external_id="SKU-D",
            description="Local description",
        )
        db.upsert_erp_product(TENANT, "SKU-D", 100.0, 10, utcnow(), name="Gadget")
        conflicts = await engine.detect_conflicts(TENANT)
        assert [c.conflict_type for c in conflicts] == [ConflictType.PRODUCT_DATA.value]

        result = await engine.resolve_conflict(
            conflicts[0].id, ManualResolution(chosen_source=ChosenSource.ERP), "alice"
        )

        assert result.success is True
        assert result.outcome.data == {"name": "Gadget"}
        stored = db.get_product(product.id)
        assert stored.name == "Gadget"
        assert stored.description == "Local description"

    @pytest.mark.asyncio
    async def test_custom_values(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)

        result = await engine.resolve_conflict(
            conflict.id,
            ManualResolution(chosen_source=ChosenSource.CUSTOM, custom_data={"price": 125.0}),
            "alice",
        )

        assert result.success is True
        assert result.outcome.chosen_source == ChosenSource.CUSTOM
        assert db.get_product(product.id).price == 125.0

    @pytest.mark.asyncio
    async def test_custom_unknown_field(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)
        request = ManualResolution(chosen_source=ChosenSource.CUSTOM, custom_data={"stock": 3})
        with pytest.raises(ValueError, match="stock"):
            await engine.resolve_conflict(conflict.id, request, "alice")
        assert db.get_conflict(conflict.id).status == ConflictStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_declining_strategy_leaves_pending(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)

        result = await engine.resolve_conflict(
            conflict.id, ManualResolution(strategy=StrategyName.MANUAL_REQUIRED), "alice"
        )

        assert result.success is False
        assert result.conflict.status == ConflictStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_merged_uses_smart_merge(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 90.0)
        result = await engine.resolve_conflict(
            conflict.id, ManualResolution(chosen_source=ChosenSource.MERGED), "alice"
        )
        assert result.outcome.strategy == StrategyName.SMART_MERGE
        assert db.get_product(product.id).price == 90.0

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, engine: PriceSyncEngine) -> None:
        with pytest.raises(ConflictNotFoundError):
            await engine.resolve_conflict("missing", ManualResolution(), "alice")

    @pytest.mark.asyncio
    async def test_already_closed(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)
        await engine.ignore_conflict(conflict.id, "known issue", "alice")
        with pytest.raises(ConflictStateError):
            await engine.resolve_conflict(
                conflict.id, ManualResolution(chosen_source=ChosenSource.ERP), "bob"
            )


class TestIgnoreConflict:
    """Tests for ignore_conflict."""

    @pytest.mark.asyncio
    async def test_ignore(self, engine: PriceSyncEngine, db: Database, product: Product) -> None:
        conflict = price_conflict(db, product, 150.0)

        ignored = await engine.ignore_conflict(conflict.id, "ERP test data", "alice")

        assert ignored.status == ConflictStatus.IGNORED.value
        assert ignored.ignore_reason == "ERP test data"
        assert db.get_product(product.id).price == 100.0

    @pytest.mark.asyncio
    async def test_ignore_twice(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        conflict = price_conflict(db, product, 150.0)
        await engine.ignore_conflict(conflict.id, "once", "alice")
        with pytest.raises(ConflictStateError):
            await engine.ignore_conflict(conflict.id, "twice", "alice")

    @pytest.mark.asyncio
    async def test_redetection_after_close_opens_new_conflict(
        self, engine: PriceSyncEngine, db: Database, product: Product
    ) -> None:
        first = price_conflict(db, product, 150.0)
        await engine.ignore_conflict(first.id, "later", "alice")
        second = price_conflict(db, product, 150.0)
        assert second.id != first.id
        assert second.detection_count == 1


class TestManualResolution:
    """Tests for ManualResolution validation."""

    def test_custom_requires_data(self) -> None:
        with pytest.raises(ValueError):
            ManualResolution(chosen_source=ChosenSource.CUSTOM)

    def test_data_requires_custom(self) -> None:
        with pytest.raises(ValueError):
            ManualResolution(chosen_source=ChosenSource.ERP, custom_data={"price": 1.0})

    def test_custom_data_without_source(self) -> None:
        with pytest.raises(ValueError):
            ManualResolution(custom_data={"price": 1.0})
