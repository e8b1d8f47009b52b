"""
Event Ingest & Deduplication.

Pipeline for one storefront/webhook event:
  1. validate the payload (event type, session, product, amounts)
  2. resolve the test: the declared one, else the RUNNING test for the product
  3. pick the variant:
       pinned session binding → declared variant → slot history at occurred_at
     (a declared or history-derived variant on a non-IMPRESSION first event also
     stores a retroactive IMPRESSION so the session counts in the denominator)
  4. store with insert-or-ignore on (test, session, dedup_key); purchases that
     carry an order id are keyed by the order instead, and a second arrival for
     the same order enriches the stored row rather than inserting another
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ABTest, ABTestEvent
from experiments import rotation_store
from experiments.binder import find_binding, impression_for, insert_event_once
from experiments.errors import ValidationError
from experiments.types import (
    CASE_TO_TAG,
    ROTATION_TO_CASE,
    TAG_TO_CASE,
    ActiveCase,
    EventMetadata,
    EventSource,
    EventType,
    VariantTag,
    parse_declared_variant,
)
from tracking.resolution import SlotQuery, normalized_ids, resolve_slot, resolve_test

logger = structlog.get_logger()


@dataclass
class TrackedEvent:
    session_id: str
    event_type: str
    product_id: str
    test_id: str | uuid.UUID | None = None
    shopify_variant_id: str | None = None
    revenue: float | None = None
    quantity: int | None = None
    source: EventSource = EventSource.PIXEL
    occurred_at: datetime | None = None
    declared_variant: str | None = None
    shop: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    event_id: uuid.UUID | None
    variant: VariantTag | None
    test_id: uuid.UUID | None = None
    deduplicated: bool = False
    enriched: bool = False

    @property
    def active_case(self) -> ActiveCase | None:
        return TAG_TO_CASE[self.variant] if self.variant else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "eventId": str(self.event_id) if self.event_id else None,
            "variant": self.variant.value if self.variant else None,
            "activeCase": self.active_case.value if self.active_case else None,
            "testId": str(self.test_id) if self.test_id else None,
            "deduplicated": self.deduplicated,
            "enriched": self.enriched,
        }


def to_naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _validate(payload: TrackedEvent) -> EventType:
    try:
        event_type = EventType(str(payload.event_type).strip().upper())
    except ValueError as exc:
        raise ValidationError(f"Invalid eventType: {payload.event_type}") from exc
    if not payload.session_id or not str(payload.session_id).strip():
        raise ValidationError("sessionId is required")
    if not payload.product_id or not str(payload.product_id).strip():
        raise ValidationError("productId is required")
    if payload.revenue is not None and payload.revenue < 0:
        raise ValidationError("revenue cannot be negative")
    if payload.quantity is not None and payload.quantity < 0:
        raise ValidationError("quantity cannot be negative")
    return event_type


def _parse_test_id(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Malformed testId: {value}") from exc


def dedup_key_for(event_type: EventType, order_id: str | None) -> str:
    if event_type is EventType.PURCHASE and order_id:
        return f"{EventType.PURCHASE.value}:{order_id}"
    return event_type.value


async def find_purchase_by_order(db: AsyncSession, order_id: str) -> ABTestEvent | None:
    result = await db.execute(
        select(ABTestEvent).where(
            ABTestEvent.event_type == EventType.PURCHASE.value,
            ABTestEvent.order_id == order_id,
        )
    )
    return result.scalar_one_or_none()


def enrich_purchase(
    existing: ABTestEvent,
    *,
    revenue: float | None,
    quantity: int | None,
    metadata: EventMetadata,
    source: EventSource,
    test: ABTest | None = None,
    variant: VariantTag | None = None,
) -> bool:
    """
    Merge a second arrival for the same order into the stored purchase.

    Only webhook data is authoritative for revenue/quantity; a late pixel only
    fills attribution gaps. Returns whether anything changed.
    """
    changed = False
    stored = EventMetadata.from_raw(existing.event_metadata)

    if source is EventSource.WEBHOOK:
        if revenue is not None and existing.revenue != revenue:
            existing.revenue = revenue
            changed = True
        if quantity is not None and existing.quantity != quantity:
            existing.quantity = quantity
            changed = True
        if not stored.enriched_by_webhook and existing.source != EventSource.WEBHOOK.value:
            stored.enriched_by_webhook = True
            stored.webhook_received_at = metadata.webhook_received_at or datetime.utcnow().isoformat()
            changed = True
        if metadata.order_number and stored.order_number != metadata.order_number:
            stored.order_number = metadata.order_number
            changed = True
        if metadata.line_item_count is not None and stored.line_item_count != metadata.line_item_count:
            stored.line_item_count = metadata.line_item_count
            changed = True
    else:
        if existing.revenue is None and revenue is not None:
            existing.revenue = revenue
            changed = True
        if existing.quantity is None and quantity is not None:
            existing.quantity = quantity
            changed = True

    if existing.test_id is None and test is not None:
        existing.test_id = test.test_id
        existing.shop = existing.shop or test.shop
        changed = True
    if existing.variant is None and variant is not None:
        existing.variant = variant.value
        existing.active_case = TAG_TO_CASE[variant].value
        changed = True

    if changed:
        existing.event_metadata = stored.to_json()
    return changed


async def _variant_from_history(
    db: AsyncSession,
    test: ABTest,
    product_id: str,
    shopify_variant_id: str | None,
    occurred_at: datetime,
) -> VariantTag:
    slot = await resolve_slot(db, SlotQuery(product_id=product_id, shopify_variant_id=shopify_variant_id, shop=test.shop))
    if slot is None:
        return CASE_TO_TAG[ActiveCase(test.current_case)]
    rotation_variant = await rotation_store.variant_at(db, slot, occurred_at)
    return CASE_TO_TAG[ROTATION_TO_CASE[rotation_variant]]


async def _choose_variant(
    db: AsyncSession,
    test: ABTest,
    payload: TrackedEvent,
    event_type: EventType,
    product_id: str,
    shopify_variant_id: str | None,
    occurred_at: datetime,
) -> VariantTag:
    binding = await find_binding(db, test.test_id, payload.session_id)
    if binding is not None:
        return VariantTag(binding.variant)

    declared = parse_declared_variant(payload.declared_variant)
    variant = declared or await _variant_from_history(db, test, product_id, shopify_variant_id, occurred_at)

    if event_type is not EventType.IMPRESSION and payload.source is not EventSource.WEBHOOK:
        _, created = await insert_event_once(
            db,
            impression_for(
                test,
                payload.session_id,
                variant,
                product_id=product_id,
                shopify_variant_id=shopify_variant_id,
                occurred_at=occurred_at,
                source=payload.source,
                retroactive=True,
            ),
        )
        if created:
            logger.info(
                "tracking.retroactive_impression",
                test_id=str(test.test_id),
                session_id=payload.session_id,
                variant=variant.value,
                declared=declared is not None,
            )
    return variant


async def ingest(db: AsyncSession, payload: TrackedEvent) -> IngestResult:
    event_type = _validate(payload)
    test_id = _parse_test_id(payload.test_id)
    product_id, shopify_variant_id = normalized_ids(payload.product_id, payload.shopify_variant_id)
    occurred_at = to_naive_utc(payload.occurred_at)

    metadata = EventMetadata.from_raw(payload.metadata)
    metadata.source = payload.source
    order_id = metadata.order_id if event_type is EventType.PURCHASE else None

    test = await resolve_test(db, test_id, product_id, payload.shop)
    variant = None
    if test is not None:
        variant = await _choose_variant(db, test, payload, event_type, product_id, shopify_variant_id, occurred_at)

    if order_id:
        existing = await find_purchase_by_order(db, order_id)
        if existing is not None:
            return await _merge_into(db, existing, payload, metadata, test, variant)

    event = ABTestEvent(
        shop=test.shop if test is not None else payload.shop,
        test_id=test.test_id if test is not None else None,
        session_id=payload.session_id,
        event_type=event_type.value,
        variant=variant.value if variant else None,
        active_case=TAG_TO_CASE[variant].value if variant else None,
        product_id=product_id,
        shopify_variant_id=shopify_variant_id,
        revenue=payload.revenue,
        quantity=payload.quantity,
        order_id=order_id,
        source=payload.source.value,
        dedup_key=dedup_key_for(event_type, order_id),
        event_metadata=metadata.to_json(),
        occurred_at=occurred_at,
    )
    stored, created = await insert_event_once(db, event)
    if not created and order_id and stored.order_id == order_id:
        return await _merge_into(db, stored, payload, metadata, test, variant)

    await db.commit()
    if created:
        logger.info(
            "tracking.event_recorded",
            event_type=event_type.value,
            test_id=str(stored.test_id) if stored.test_id else None,
            variant=stored.variant,
            source=payload.source.value,
        )
    else:
        logger.info(
            "tracking.event_deduplicated",
            event_type=event_type.value,
            test_id=str(stored.test_id) if stored.test_id else None,
            session_id=payload.session_id,
        )
    return IngestResult(
        event_id=stored.event_id,
        variant=VariantTag(stored.variant) if stored.variant else None,
        test_id=stored.test_id,
        deduplicated=not created,
    )


async def _merge_into(
    db: AsyncSession,
    existing: ABTestEvent,
    payload: TrackedEvent,
    metadata: EventMetadata,
    test: ABTest | None,
    variant: VariantTag | None,
) -> IngestResult:
    enriched = enrich_purchase(
        existing,
        revenue=payload.revenue,
        quantity=payload.quantity,
        metadata=metadata,
        source=payload.source,
        test=test,
        variant=variant,
    )
    await db.commit()
    logger.info(
        "tracking.purchase_enriched" if enriched else "tracking.event_deduplicated",
        order_id=existing.order_id,
        test_id=str(existing.test_id) if existing.test_id else None,
        source=payload.source.value,
    )
    return IngestResult(
        event_id=existing.event_id,
        variant=VariantTag(existing.variant) if existing.variant else None,
        test_id=existing.test_id,
        deduplicated=True,
        enriched=enriched,
    )
