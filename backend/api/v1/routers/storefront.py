"""
Storefront API — public endpoints called by the theme script.

These never break a product page: a product without a live test (or any
internal failure) yields the neutral "no test" payload instead of an error.
Only malformed tracking payloads are rejected (422).

Endpoints:
  POST /api/v1/storefront/track                  — Record impression / add-to-cart / purchase
  GET  /api/v1/storefront/rotation-state         — Which case the product is showing now
  GET  /api/v1/storefront/variant/{product_id}   — Sticky per-session variant assignment
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_random_source
from experiments.binder import RandomSource, complete_pairs, load_variants, pair_for_scope, resolve_variant
from experiments.errors import ABTestError, ValidationError
from experiments.types import (
    CASE_TO_TAG,
    ROTATION_TO_CASE,
    TAG_TO_CASE,
    ActiveCase,
    EventSource,
    RotationVariant,
    parse_declared_variant,
)
from tracking.ingest import IngestResult, TrackedEvent, ingest
from tracking.resolution import SlotQuery, find_running_test, normalized_ids, resolve_slot

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/storefront", tags=["storefront"])

NO_TEST = {"testId": None, "activeCase": None, "variantCase": None}


class TrackRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str = Field(min_length=1)
    event_type: str
    product_id: str = Field(min_length=1)
    test_id: str | None = None
    shopify_variant_id: str | None = None
    revenue: float | None = None
    quantity: int | None = None
    occurred_at: datetime | None = None
    variant: str | None = None
    shop: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/track")
async def track_event(body: TrackRequest, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    # Storefront traffic is always pixel-sourced; only the orders webhook is authoritative
    metadata = dict(body.metadata)
    claimed = metadata.pop("source", None)
    if claimed is not None:
        metadata["clientSource"] = claimed

    try:
        result = await ingest(
            db,
            TrackedEvent(
                session_id=body.session_id,
                event_type=body.event_type,
                product_id=body.product_id,
                test_id=body.test_id,
                shopify_variant_id=body.shopify_variant_id,
                revenue=body.revenue,
                quantity=body.quantity,
                source=EventSource.PIXEL,
                occurred_at=body.occurred_at,
                declared_variant=body.variant,
                shop=body.shop,
                metadata=metadata,
            ),
        )
    except ValidationError as exc:
        logger.info("storefront.track_rejected", reason=str(exc), event_type=body.event_type)
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error("storefront.track_failed", error=str(exc), product_id=body.product_id, exc_info=True)
        return IngestResult(event_id=None, variant=None).to_dict()
    return result.to_dict()


@router.get("/rotation-state")
async def rotation_state(
    product_id: str = Query(alias="productId"),
    shopify_variant_id: str | None = Query(default=None, alias="shopifyVariantId"),
    shop: str | None = None,
    force_variant: str | None = Query(default=None, alias="forceVariant"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Read-only. ``forceVariant`` overrides the answer for QA and writes nothing."""
    try:
        product_gid, variant_gid = normalized_ids(product_id, shopify_variant_id)
        test = await find_running_test(db, product_gid, shop)
        if test is None:
            return NO_TEST

        active_case = ActiveCase(test.current_case)
        forced = parse_declared_variant(force_variant)
        if forced is not None:
            active_case = TAG_TO_CASE[forced]

        variant_case = None
        if variant_gid:
            slot = await resolve_slot(
                db, SlotQuery(product_id=product_gid, shopify_variant_id=variant_gid, shop=test.shop)
            )
            if slot is not None and slot.shopify_variant_id:
                variant_case = ROTATION_TO_CASE[RotationVariant(slot.active_variant)].value

        pair = pair_for_scope(test, complete_pairs(await load_variants(db, test.test_id)), variant_gid)
        image_urls = pair.images_for(CASE_TO_TAG[active_case]) if pair else []
    except ABTestError as exc:
        logger.warning("storefront.rotation_state_failed", error=str(exc), product_id=product_id)
        return NO_TEST

    return {
        "testId": str(test.test_id),
        "activeCase": active_case.value,
        "variantCase": variant_case,
        "forced": forced is not None,
        "imageUrls": image_urls,
    }


@router.get("/variant/{product_id}")
async def assign_variant(
    product_id: str,
    session_id: str = Query(alias="sessionId", min_length=1),
    shopify_variant_id: str | None = Query(default=None, alias="shopifyVariantId"),
    shop: str | None = None,
    force_variant: str | None = Query(default=None, alias="forceVariant"),
    db: AsyncSession = Depends(get_db),
    random_source: RandomSource = Depends(get_random_source),
) -> dict[str, Any]:
    """Sticky assignment for (test, session); the first call anchors an IMPRESSION."""
    product_gid, variant_gid = normalized_ids(product_id, shopify_variant_id)
    test = await find_running_test(db, product_gid, shop)
    assignment = await resolve_variant(
        db,
        test,
        session_id,
        forced_variant=force_variant,
        shopify_variant_id=variant_gid,
        random_source=random_source,
    )
    if assignment.variant is None:
        return {"testId": None, "variant": None, "activeCase": None, "imageUrls": []}

    pair = pair_for_scope(test, complete_pairs(await load_variants(db, test.test_id)), variant_gid)
    return {
        "testId": str(test.test_id),
        "variant": assignment.variant.value,
        "activeCase": assignment.active_case,
        "isNewBinding": assignment.is_new_binding,
        "forced": assignment.forced,
        "imageUrls": pair.images_for(assignment.variant) if pair else [],
    }

