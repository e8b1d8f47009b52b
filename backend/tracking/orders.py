"""
Order-paid webhook handling.

The webhook carries authoritative revenue and quantity but usually no session
context. Attribution comes from the ``ModelSwapAB`` order note attribute that
the storefront script writes at checkout:

    {"testId": "...", "variant": "A"|"B", "productId": "...", "sessionId": "...", "assignedAt": "..."}

Without that attribute the RUNNING test for the first line item's product is
used. An existing purchase for the same order id is enriched in place; otherwise
a webhook-sourced purchase is created under session ``order:<orderId>``.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ABTest
from experiments.types import EventMetadata, EventSource, EventType, VariantScope, VariantTag
from tracking.ingest import (
    IngestResult,
    TrackedEvent,
    enrich_purchase,
    find_purchase_by_order,
    ingest,
    to_naive_utc,
)
from tracking.resolution import find_running_test, load_test, normalized_ids

logger = structlog.get_logger()

ATTRIBUTION_NOTE_KEY = "ModelSwapAB"


@dataclass
class OrderAttribution:
    test_id: str | None = None
    variant: str | None = None
    product_id: str | None = None
    session_id: str | None = None
    assigned_at: str | None = None


@dataclass
class PaidOrder:
    order_id: str
    order_number: str | None
    revenue: float
    quantity: int
    line_item_count: int
    first_product_id: str | None
    first_variant_id: str | None
    created_at: datetime | None
    attribution: OrderAttribution = field(default_factory=OrderAttribution)

    @property
    def session_id(self) -> str:
        return self.attribution.session_id or f"order:{self.order_id}"


def _parse_attribution(note_attributes: list[dict[str, Any]] | None) -> OrderAttribution:
    for attribute in note_attributes or []:
        if attribute.get("name") != ATTRIBUTION_NOTE_KEY:
            continue
        raw = attribute.get("value")
        try:
            data = json.loads(raw) if isinstance(raw, str) else dict(raw or {})
        except (TypeError, ValueError):
            logger.warning("webhook.attribution_unparseable", value=str(raw)[:200])
            return OrderAttribution()
        return OrderAttribution(
            test_id=data.get("testId"),
            variant=data.get("variant"),
            product_id=str(data["productId"]) if data.get("productId") else None,
            session_id=data.get("sessionId"),
            assigned_at=data.get("assignedAt"),
        )
    return OrderAttribution()


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def parse_order_payload(payload: dict[str, Any]) -> PaidOrder:
    """Reduce a Shopify ``orders/paid`` payload to what attribution needs."""
    if not isinstance(payload, dict) or payload.get("id") is None:
        raise ValueError("Order payload has no id")

    line_items = payload.get("line_items") or []
    revenue = 0.0
    quantity = 0
    for item in line_items:
        qty = int(item.get("quantity") or 0)
        revenue += float(item.get("price") or 0) * qty
        quantity += qty

    first = line_items[0] if line_items else {}
    product_id = first.get("product_id")
    variant_id = first.get("variant_id")
    return PaidOrder(
        order_id=str(payload["id"]),
        order_number=str(payload["order_number"]) if payload.get("order_number") is not None else None,
        revenue=round(revenue, 2),
        quantity=quantity,
        line_item_count=len(line_items),
        first_product_id=str(product_id) if product_id is not None else None,
        first_variant_id=str(variant_id) if variant_id is not None else None,
        created_at=_parse_datetime(payload.get("processed_at") or payload.get("created_at")),
        attribution=_parse_attribution(payload.get("note_attributes")),
    )


async def record_paid_order(db: AsyncSession, order: PaidOrder, shop: str | None = None) -> IngestResult | None:
    """
    Enrich-or-insert the order's PURCHASE. Returns None when the order cannot be
    tied to any test (nothing is stored).
    """
    metadata = EventMetadata(
        order_id=order.order_id,
        order_number=order.order_number,
        source=EventSource.WEBHOOK,
        line_item_count=order.line_item_count,
        webhook_received_at=datetime.utcnow().isoformat(),
    )

    existing = await find_purchase_by_order(db, order.order_id)
    if existing is not None:
        test = await load_test(db, existing.test_id) if existing.test_id else None
        if test is None:
            test = await _attributed_test(db, order, shop)
        enriched = enrich_purchase(
            existing,
            revenue=order.revenue,
            quantity=order.quantity,
            metadata=metadata,
            source=EventSource.WEBHOOK,
            test=test,
        )
        await db.commit()
        logger.info("webhook.purchase_enriched", order_id=order.order_id, changed=enriched)
        return IngestResult(
            event_id=existing.event_id,
            variant=VariantTag(existing.variant) if existing.variant else None,
            test_id=existing.test_id,
            deduplicated=True,
            enriched=enriched,
        )

    test = await _attributed_test(db, order, shop)
    if test is None:
        logger.info("webhook.no_test", order_id=order.order_id, product_id=order.first_product_id)
        return None

    result = await ingest(
        db,
        TrackedEvent(
            session_id=order.session_id,
            event_type=EventType.PURCHASE.value,
            product_id=order.attribution.product_id or order.first_product_id or test.product_id,
            test_id=test.test_id,
            shopify_variant_id=order.first_variant_id if test.variant_scope == VariantScope.VARIANT.value else None,
            revenue=order.revenue,
            quantity=order.quantity,
            source=EventSource.WEBHOOK,
            occurred_at=order.created_at,
            declared_variant=order.attribution.variant,
            shop=test.shop,
            metadata=metadata.to_json(),
        ),
    )
    logger.info(
        "webhook.purchase_recorded",
        order_id=order.order_id,
        test_id=str(test.test_id),
        variant=result.variant.value if result.variant else None,
        enriched=result.enriched,
    )
    return result


async def _attributed_test(db: AsyncSession, order: PaidOrder, shop: str | None) -> ABTest | None:
    if order.attribution.test_id:
        try:
            test = await load_test(db, uuid.UUID(str(order.attribution.test_id)))
        except ValueError:
            test = None
        if test is not None:
            return test

    product_id = order.attribution.product_id or order.first_product_id
    if not product_id:
        return None
    product_gid, _ = normalized_ids(product_id, None)
    return await find_running_test(db, product_gid, shop)

