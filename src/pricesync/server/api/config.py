"""Tenant policy API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_engine
from pricesync.server.schemas import (
    TenantPolicyResponse,
    TenantPolicyUpdate,
    policy_to_response,
)

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("/tenants/{tenant_id}", response_model=TenantPolicyResponse)
def get_tenant_policy(
    tenant_id: str,
    engine: PriceSyncEngine = Depends(get_engine),
) -> TenantPolicyResponse:
    """Get a tenant's effective policy."""
    return policy_to_response(tenant_id, engine.tenant_policy(tenant_id))


@router.put("/tenants/{tenant_id}", response_model=TenantPolicyResponse)
def update_tenant_policy(
    tenant_id: str,
    request: TenantPolicyUpdate,
    engine: PriceSyncEngine = Depends(get_engine),
) -> TenantPolicyResponse:
    """Update a tenant's policy; jobs already running keep the old one."""
    changes = request.model_dump(exclude_unset=True, mode="json")
    try:
        policy = engine.update_tenant_policy(tenant_id, changes)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return policy_to_response(tenant_id, policy)
