"""
Shopify Webhooks — order-paid attribution.

Endpoints:
  POST /api/v1/webhooks/orders-paid — HMAC-verified; enrich-or-insert the order's PURCHASE
"""

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from core.config import get_settings
from core.security import verify_webhook_signature
from tracking.orders import parse_order_payload, record_paid_order

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/orders-paid")
async def orders_paid(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
    x_shopify_shop_domain: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    Shopify retries non-2xx deliveries, so anything past signature/payload
    validation answers 200 even when the order matches no test.
    """
    body = await request.body()
    settings = get_settings()
    if not verify_webhook_signature(body, x_shopify_hmac_sha256 or "", settings.shopify_webhook_secret):
        logger.warning("webhook.invalid_signature", shop=x_shopify_shop_domain)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        order = parse_order_payload(json.loads(body))
    except (TypeError, ValueError) as exc:
        logger.warning("webhook.invalid_payload", shop=x_shopify_shop_domain, error=str(exc))
        raise HTTPException(status_code=400, detail="Invalid order payload")

    result = await record_paid_order(db, order, shop=x_shopify_shop_domain)
    if result is None:
        return {"success": True, "recorded": False, "message": "No A/B test found for this order"}

    payload = result.to_dict()
    payload["recorded"] = True
    payload["orderId"] = order.order_id
    return payload
