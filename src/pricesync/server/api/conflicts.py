"""Conflict management API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from pricesync.core.types import ConflictStatus, ConflictType, Severity
from pricesync.engine.dispatcher import ManualResolution
from pricesync.engine.errors import (
    ConflictNotFoundError,
    ConflictStateError,
    EntityNotFoundError,
)
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_engine, get_operator
from pricesync.server.schemas import (
    ConflictMetricsResponse,
    ConflictResponse,
    DetectRequest,
    DetectResponse,
    IgnoreConflictRequest,
    ResolveConflictRequest,
    ResolveConflictResponse,
    conflict_to_response,
)

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


@router.get("", response_model=list[ConflictResponse])
async def list_conflicts(
    conflict_status: ConflictStatus | None = Query(default=None, alias="status"),
    conflict_type: ConflictType | None = Query(default=None, alias="type"),
    severity: Severity | None = None,
    tenant_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: PriceSyncEngine = Depends(get_engine),
) -> list[ConflictResponse]:
    """List conflicts, newest detection first."""
    conflicts = await engine.list_conflicts(
        status=conflict_status.value if conflict_status else None,
        conflict_type=conflict_type.value if conflict_type else None,
        severity=severity.value if severity else None,
        tenant_id=tenant_id,
        limit=limit,
    )
    return [conflict_to_response(c) for c in conflicts]


@router.get("/metrics", response_model=ConflictMetricsResponse)
async def conflict_metrics(
    tenant_id: str | None = None,
    engine: PriceSyncEngine = Depends(get_engine),
) -> ConflictMetricsResponse:
    """Summarize conflicts by status, type and severity."""
    return ConflictMetricsResponse(**await engine.conflict_metrics(tenant_id))


@router.post("/detect", response_model=DetectResponse)
async def detect_conflicts(
    request: DetectRequest,
    engine: PriceSyncEngine = Depends(get_engine),
) -> DetectResponse:
    """Run a detection sweep for one tenant now."""
    conflicts = await engine.detect_conflicts(request.tenant_id)
    return DetectResponse(
        count=len(conflicts),
        conflicts=[conflict_to_response(c) for c in conflicts],
    )


@router.post("/{conflict_id}/resolve", response_model=ResolveConflictResponse)
async def resolve_conflict(
    conflict_id: str,
    request: ResolveConflictRequest,
    engine: PriceSyncEngine = Depends(get_engine),
    operator: str = Depends(get_operator),
) -> ResolveConflictResponse:
    """Resolve a pending conflict with a strategy or an explicit choice."""
    try:
        resolution = ManualResolution(
            reason=request.reason,
            strategy=request.strategy,
            chosen_source=request.chosen_source,
            custom_data=request.custom_data,
        )
        result = await engine.resolve_conflict(conflict_id, resolution, operator)
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (ConflictStateError, EntityNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return ResolveConflictResponse(
        success=result.success,
        reason=result.outcome.reason,
        conflict=conflict_to_response(result.conflict),
    )


@router.post("/{conflict_id}/ignore", response_model=ConflictResponse)
async def ignore_conflict(
    conflict_id: str,
    request: IgnoreConflictRequest,
    engine: PriceSyncEngine = Depends(get_engine),
    operator: str = Depends(get_operator),
) -> ConflictResponse:
    """Close a pending conflict without touching the entity."""
    try:
        conflict = await engine.ignore_conflict(conflict_id, request.reason, operator)
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ConflictStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return conflict_to_response(conflict)
