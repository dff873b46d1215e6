"""Pricing rule API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from pricesync.core.types import RuleType
from pricesync.engine.errors import RuleError, RuleNotFoundError
from pricesync.engine.service import PriceSyncEngine, PricingRuleInput
from pricesync.server.api.deps import get_engine
from pricesync.server.schemas import (
    RuleRequest,
    RuleResponse,
    RuleUpsertResponse,
    rule_to_response,
)

router = APIRouter(prefix="/api/rules", tags=["rules"])


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    tenant_id: str,
    rule_type: RuleType | None = None,
    engine: PriceSyncEngine = Depends(get_engine),
) -> list[RuleResponse]:
    """List a tenant's pricing rules in evaluation order."""
    rules = await engine.list_pricing_rules(tenant_id, rule_type)
    return [rule_to_response(r) for r in rules]


@router.post("", response_model=RuleUpsertResponse)
async def upsert_rule(
    request: RuleRequest,
    engine: PriceSyncEngine = Depends(get_engine),
) -> RuleUpsertResponse:
    """Create a pricing rule, or update it when id is given."""
    rule = PricingRuleInput(
        rule_name=request.rule_name,
        rule_type=request.rule_type,
        actions=request.actions,
        conditions=request.conditions,
        priority=request.priority,
        is_active=request.is_active,
        id=request.id,
    )
    try:
        rule_id = await engine.upsert_pricing_rule(request.tenant_id, rule)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except RuleError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return RuleUpsertResponse(id=rule_id)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: int,
    tenant_id: str,
    engine: PriceSyncEngine = Depends(get_engine),
) -> None:
    """Delete a pricing rule."""
    try:
        await engine.delete_pricing_rule(tenant_id, rule_id)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
