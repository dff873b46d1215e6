"""Price history and analytics API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_engine
from pricesync.server.schemas import (
    PriceAnalyticsResponse,
    PriceChangeResponse,
    analytics_to_response,
    price_change_to_response,
)

router = APIRouter(prefix="/api", tags=["history"])


@router.get("/history", response_model=list[PriceChangeResponse])
async def price_history(
    tenant_id: str,
    product_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: PriceSyncEngine = Depends(get_engine),
) -> list[PriceChangeResponse]:
    """List recorded price changes, newest first."""
    changes = await engine.price_history(tenant_id, product_id, limit)
    return [price_change_to_response(c) for c in changes]


@router.get("/analytics", response_model=list[PriceAnalyticsResponse])
async def price_analytics(
    tenant_id: str,
    days: int = Query(default=30, ge=1, le=365),
    engine: PriceSyncEngine = Depends(get_engine),
) -> list[PriceAnalyticsResponse]:
    """List daily price analytics."""
    entries = await engine.price_analytics(tenant_id, days)
    return [analytics_to_response(e) for e in entries]
