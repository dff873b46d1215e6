"""ERP webhook API route."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from pricesync.core.timeutil import parse_iso, utcnow
from pricesync.engine.erp import ErpFact
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.deps import get_engine
from pricesync.server.schemas import ErpWebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/erp", response_model=WebhookResponse)
async def erp_webhook(
    request: ErpWebhookRequest,
    engine: PriceSyncEngine = Depends(get_engine),
) -> WebhookResponse:
    """Receive a price or order update pushed by the ERP."""
    if request.event == "order.updated":
        data = request.data
        try:
            external_id = str(data["external_id"])
            order_status = str(data["status"])
            total = float(data["total"])
            updated_at = parse_iso(data.get("updated_at")) or utcnow()
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Malformed order payload: {e}",
            ) from e
        await engine.handle_order_webhook(
            request.tenant_id, external_id, order_status, total, updated_at
        )
        return WebhookResponse(status="accepted")

    try:
        fact = ErpFact.from_dict(request.data)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    outcome = await engine.handle_webhook(request.tenant_id, fact)
    if outcome is None:
        logger.info(
            "Ignored ERP webhook for %s: no local product (tenant %s)",
            fact.external_id,
            request.tenant_id,
        )
        return WebhookResponse(status="ignored")
    return WebhookResponse(status="processed", outcome=outcome.value)
