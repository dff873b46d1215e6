"""Sync job API routes."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from pricesync.core.types import JobStatus, SyncCadence
from pricesync.engine.errors import JobNotFoundError
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_db, get_engine
from pricesync.server.database import Database
from pricesync.server.schemas import (
    JobResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
    job_to_response,
)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post(
    "/{cadence}",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    cadence: SyncCadence,
    request: SyncTriggerRequest,
    engine: PriceSyncEngine = Depends(get_engine),
    db: Database = Depends(get_db),
) -> SyncTriggerResponse:
    """Start a sync job for a tenant.

    If a job of the same cadence is already running for the tenant, its
    id is returned instead of starting a new one.
    """
    if await asyncio.to_thread(db.get_tenant, request.tenant_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tenant not found: {request.tenant_id}",
        )
    job_id = await engine.trigger_sync(request.tenant_id, cadence, request.external_ids)
    return SyncTriggerResponse(job_id=job_id)


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    tenant_id: str | None = None,
    cadence: SyncCadence | None = None,
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    engine: PriceSyncEngine = Depends(get_engine),
) -> list[JobResponse]:
    """List recent sync jobs, newest first."""
    jobs = await engine.list_jobs(
        tenant_id, cadence, job_status.value if job_status else None, limit
    )
    return [job_to_response(j) for j in jobs]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    engine: PriceSyncEngine = Depends(get_engine),
) -> JobResponse:
    """Get the status of a sync job."""
    try:
        job = await engine.get_job_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return job_to_response(job)
