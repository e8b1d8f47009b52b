"""
A/B Tests Admin API — shop-scoped test lifecycle, statistics and audit views.

Workflow:
  1. Create: POST /api/v1/ab-tests (status=DRAFT, A/B image sets)
  2. Start:  POST /api/v1/ab-tests/{id}/start (RUNNING, BASE displayed)
  3. Rotate: POST /api/v1/ab-tests/{id}/rotate (BASE↔TEST, or wait for the cron sweep)
  4. Pause / Complete: images restored to BASE
  5. Read:   GET /api/v1/ab-tests/{id}/statistics

Endpoints:
  GET    /api/v1/ab-tests                       — List tests
  POST   /api/v1/ab-tests                       — Create test
  GET    /api/v1/ab-tests/{id}                  — Test details with variants
  DELETE /api/v1/ab-tests/{id}                  — Delete test, variants and events
  POST   /api/v1/ab-tests/{id}/start            — Start or resume
  POST   /api/v1/ab-tests/{id}/pause            — Pause
  POST   /api/v1/ab-tests/{id}/complete         — Complete
  POST   /api/v1/ab-tests/{id}/archive          — Archive
  POST   /api/v1/ab-tests/{id}/rotate           — Rotate now
  GET    /api/v1/ab-tests/{id}/statistics       — Aggregates + z-test + sample size
  GET    /api/v1/ab-tests/{id}/rotation-events  — Rotation attempt log
  GET    /api/v1/ab-tests/{id}/events           — Recent events
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_rotation_engine
from api.errors import http_error
from db.models import ABTest, ABTestEvent, RotationEvent
from experiments.binder import load_variants
from experiments.errors import ABTestError
from experiments.rotation import RotationEngine, VariantInput
from experiments.stats import compute_statistics, required_sample_size
from experiments.types import ABTestStatus, ActiveCase, EventType, VariantScope, VariantTag
from integrations.shopify import normalize_product_id

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ab-tests", tags=["ab-tests"])


# ── Request/Response Models ─────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VariantImageSet(_CamelModel):
    variant: VariantTag
    image_urls: list[str] = Field(min_length=1)
    shopify_variant_id: str | None = None


class CreateTestRequest(_CamelModel):
    name: str
    product_id: str
    traffic_split: int = Field(default=50, ge=0, le=100)
    rotation_hours: float | None = Field(default=None, gt=0)
    variant_scope: VariantScope = VariantScope.PRODUCT
    variants: list[VariantImageSet]


class RotateRequest(_CamelModel):
    expected_case: ActiveCase | None = None


# ── Serialization ───────────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_test(test: ABTest) -> dict[str, Any]:
    return {
        "id": str(test.test_id),
        "shop": test.shop,
        "productId": test.product_id,
        "name": test.name,
        "status": test.status,
        "currentCase": test.current_case,
        "trafficSplit": test.traffic_split,
        "rotationHours": test.rotation_hours,
        "variantScope": test.variant_scope,
        "nextRotationAt": _iso(test.next_rotation_at),
        "lastRotationAt": _iso(test.last_rotation_at),
        "startDate": _iso(test.start_date),
        "endDate": _iso(test.end_date),
        "createdAt": _iso(test.created_at),
    }


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.get("")
async def list_tests(
    status: str | None = None,
    product_id: str | None = Query(default=None, alias="productId"),
    limit: int = Query(default=50, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
) -> list[dict[str, Any]]:
    """List the shop's tests, newest first. ``status`` accepts ACTIVE as RUNNING."""
    query = select(ABTest).where(ABTest.shop == user["shop"])
    if status:
        try:
            query = query.where(ABTest.status == ABTestStatus.parse(status).value)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status: {status}")
    if product_id:
        query = query.where(ABTest.product_id == normalize_product_id(product_id))
    result = await db.execute(query.order_by(ABTest.created_at.desc()).limit(limit))
    return [serialize_test(test) for test in result.scalars().all()]


@router.post("", status_code=201)
async def create_test(
    body: CreateTestRequest,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.create_test(
            shop=user["shop"],
            product_id=body.product_id,
            name=body.name,
            variants=[
                VariantInput(variant=v.variant, image_urls=v.image_urls, shopify_variant_id=v.shopify_variant_id)
                for v in body.variants
            ],
            traffic_split=body.traffic_split,
            rotation_hours=body.rotation_hours,
            variant_scope=body.variant_scope,
            created_by=user.get("email") or user.get("sub"),
        )
    except ABTestError as exc:
        raise http_error(exc)
    return serialize_test(test)


@router.get("/{test_id}")
async def get_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.get_test(test_id, shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    payload = serialize_test(test)
    payload["variants"] = [
        {
            "id": str(v.variant_id),
            "variant": v.variant,
            "imageUrls": v.image_list,
            "shopifyVariantId": v.shopify_variant_id,
        }
        for v in await load_variants(engine.db, test.test_id)
    ]
    return payload


@router.delete("/{test_id}")
async def delete_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        await engine.delete(test_id, user_id=user.get("sub"), shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    return {"success": True, "id": test_id}


@router.post("/{test_id}/start")
async def start_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.start(test_id, user_id=user.get("sub"), shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    return serialize_test(test)


@router.post("/{test_id}/pause")
async def pause_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.pause(test_id, user_id=user.get("sub"), shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    return serialize_test(test)


@router.post("/{test_id}/complete")
async def complete_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.complete(test_id, user_id=user.get("sub"), shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    return serialize_test(test)


@router.post("/{test_id}/archive")
async def archive_test(
    test_id: str,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        test = await engine.archive(test_id, user_id=user.get("sub"), shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    return serialize_test(test)


@router.post("/{test_id}/rotate")
async def rotate_test(
    test_id: str,
    body: RotateRequest | None = None,
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    """Manual rotation. ``expectedCase`` turns a stale double-click into a 409."""
    try:
        outcome = await engine.rotate(
            test_id,
            user_id=user.get("sub"),
            expected_case=body.expected_case if body else None,
            shop=user["shop"],
        )
    except ABTestError as exc:
        raise http_error(exc)
    return outcome.to_dict()


@router.get("/{test_id}/statistics")
async def get_statistics(
    test_id: str,
    minimum_detectable_effect: float = Query(default=0.1, gt=0, alias="mde"),
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    """Recomputed from the stored events on every call."""
    try:
        test = await engine.get_test(test_id, shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)

    result = await engine.db.execute(select(ABTestEvent).where(ABTestEvent.test_id == test.test_id))
    stats = compute_statistics(result.scalars().all())
    payload = stats.to_dict()

    sample_size = None
    baseline = stats.variant_a.rate
    if 0 < baseline < 1 and baseline * (1 + minimum_detectable_effect) < 1:
        sample_size = required_sample_size(baseline, minimum_detectable_effect)
    payload["sampleSize"] = {
        "minimumDetectableEffect": minimum_detectable_effect,
        "requiredPerVariant": sample_size,
    }
    payload["testId"] = str(test.test_id)
    payload["status"] = test.status
    return payload


@router.get("/{test_id}/rotation-events")
async def list_rotation_events(
    test_id: str,
    limit: int = Query(default=50, le=500),
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> list[dict[str, Any]]:
    try:
        test = await engine.get_test(test_id, shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    result = await engine.db.execute(
        select(RotationEvent)
        .where(RotationEvent.test_id == test.test_id)
        .order_by(RotationEvent.created_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": str(e.rotation_event_id),
            "fromCase": e.from_case,
            "toCase": e.to_case,
            "triggeredBy": e.triggered_by,
            "success": e.success,
            "durationMs": e.duration_ms,
            "errorMessage": e.error_message,
            "userId": e.user_id,
            "createdAt": _iso(e.created_at),
        }
        for e in result.scalars().all()
    ]


@router.get("/{test_id}/events")
async def list_events(
    test_id: str,
    event_type: str | None = Query(default=None, alias="eventType"),
    limit: int = Query(default=100, le=1000),
    engine: RotationEngine = Depends(get_rotation_engine),
    user: dict = Depends(get_current_user),
) -> list[dict[str, Any]]:
    try:
        test = await engine.get_test(test_id, shop=user["shop"])
    except ABTestError as exc:
        raise http_error(exc)
    query = select(ABTestEvent).where(ABTestEvent.test_id == test.test_id)
    if event_type:
        try:
            query = query.where(ABTestEvent.event_type == EventType(event_type.upper()).value)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown eventType: {event_type}")
    result = await engine.db.execute(query.order_by(ABTestEvent.occurred_at.desc()).limit(limit))
    return [
        {
            "id": str(e.event_id),
            "sessionId": e.session_id,
            "eventType": e.event_type,
            "variant": e.variant,
            "activeCase": e.active_case,
            "productId": e.product_id,
            "shopifyVariantId": e.shopify_variant_id,
            "revenue": e.revenue,
            "quantity": e.quantity,
            "orderId": e.order_id,
            "source": e.source,
            "metadata": e.event_metadata or {},
            "occurredAt": _iso(e.occurred_at),
        }
        for e in result.scalars().all()
    ]
