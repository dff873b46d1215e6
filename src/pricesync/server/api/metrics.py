"""Engine metrics API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_engine
from pricesync.server.schemas import MetricsResponse

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("", response_model=MetricsResponse)
def get_metrics(engine: PriceSyncEngine = Depends(get_engine)) -> MetricsResponse:
    """Get engine counters."""
    return MetricsResponse(
        active_jobs=len(engine.orchestrator.active_jobs()),
        counters=engine.metrics.snapshot(),
    )
