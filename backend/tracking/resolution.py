"""
Ordered lookup strategies for attributing a storefront event.

Storefront scripts and webhooks send product / product-variant ids in either
Shopify GID form or bare numeric form, and a test may be product-wide or
scoped to product-variants. Each tier is a separate strategy tried in order:

    variant slot (GID) → variant slot (numeric) → product-wide slot (GID) → product-wide slot (numeric)

Tests are resolved the same way: explicit test id first, then the RUNNING test
for the product in either id form.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ABTest, RotationSlot
from experiments import rotation_store
from experiments.types import ABTestStatus
from integrations.shopify import (
    PRODUCT_GID_PREFIX,
    VARIANT_GID_PREFIX,
    normalize_product_id,
    normalize_variant_id,
)

logger = structlog.get_logger()


def id_forms(value: str | None, prefix: str) -> list[str]:
    """GID form first, then the bare numeric tail, without duplicates."""
    if not value:
        return []
    value = str(value).strip()
    forms = []
    if value.isdigit():
        forms.append(f"{prefix}{value}")
    forms.append(value)
    if value.startswith(prefix):
        tail = value[len(prefix) :]
        if tail:
            forms.append(tail)
    return list(dict.fromkeys(forms))


@dataclass(frozen=True)
class SlotQuery:
    product_id: str
    shopify_variant_id: str | None = None
    shop: str | None = None


SlotStrategy = Callable[[AsyncSession, SlotQuery], Awaitable[RotationSlot | None]]


async def _lookup(db: AsyncSession, shop: str | None, product_id: str, variant_id: str | None) -> RotationSlot | None:
    if shop:
        return await rotation_store.get_slot(db, shop, product_id, variant_id)
    return await rotation_store.find_slot_any_shop(db, product_id, variant_id)


def _variant_slot(gid: bool) -> SlotStrategy:
    async def strategy(db: AsyncSession, query: SlotQuery) -> RotationSlot | None:
        if not query.shopify_variant_id:
            return None
        product_id = normalize_product_id(query.product_id)
        forms = id_forms(query.shopify_variant_id, VARIANT_GID_PREFIX)
        candidate = forms[0] if gid else (forms[-1] if len(forms) > 1 else None)
        if candidate is None:
            return None
        return await _lookup(db, query.shop, product_id, candidate)

    strategy.__name__ = f"variant_slot_{'gid' if gid else 'numeric'}"
    return strategy


def _product_slot(gid: bool) -> SlotStrategy:
    async def strategy(db: AsyncSession, query: SlotQuery) -> RotationSlot | None:
        forms = id_forms(query.product_id, PRODUCT_GID_PREFIX)
        candidate = forms[0] if gid else (forms[-1] if len(forms) > 1 else None)
        if candidate is None:
            return None
        return await _lookup(db, query.shop, candidate, None)

    strategy.__name__ = f"product_slot_{'gid' if gid else 'numeric'}"
    return strategy


SLOT_STRATEGIES: tuple[SlotStrategy, ...] = (
    _variant_slot(gid=True),
    _variant_slot(gid=False),
    _product_slot(gid=True),
    _product_slot(gid=False),
)


async def resolve_slot(
    db: AsyncSession,
    query: SlotQuery,
    strategies: Sequence[SlotStrategy] = SLOT_STRATEGIES,
) -> RotationSlot | None:
    for strategy in strategies:
        slot = await strategy(db, query)
        if slot is not None:
            logger.debug("tracking.slot_resolved", strategy=strategy.__name__, slot_id=str(slot.slot_id))
            return slot
    return None


async def load_test(db: AsyncSession, test_id: uuid.UUID) -> ABTest | None:
    result = await db.execute(select(ABTest).where(ABTest.test_id == test_id))
    return result.scalar_one_or_none()


async def find_running_test(db: AsyncSession, product_id: str, shop: str | None = None) -> ABTest | None:
    """RUNNING test for the product, trying the GID form before the numeric form."""
    for candidate in id_forms(product_id, PRODUCT_GID_PREFIX):
        query = select(ABTest).where(
            ABTest.product_id == candidate,
            ABTest.status == ABTestStatus.RUNNING.value,
        )
        if shop:
            query = query.where(ABTest.shop == shop)
        result = await db.execute(query.order_by(ABTest.start_date.desc()).limit(1))
        test = result.scalars().first()
        if test is not None:
            return test
    return None


async def resolve_test(
    db: AsyncSession,
    test_id: uuid.UUID | None,
    product_id: str,
    shop: str | None = None,
) -> ABTest | None:
    """
    The explicit test wins when it exists and is not DRAFT/ARCHIVED (late events
    for a completed test still count); otherwise the product's RUNNING test.
    """
    if test_id is not None:
        test = await load_test(db, test_id)
        if test is not None and test.status not in (ABTestStatus.DRAFT.value, ABTestStatus.ARCHIVED.value):
            return test
        logger.info("tracking.declared_test_unusable", test_id=str(test_id), found=test is not None)
    return await find_running_test(db, product_id, shop)


def normalized_ids(product_id: str, shopify_variant_id: str | None) -> tuple[str, str | None]:
    return normalize_product_id(product_id), normalize_variant_id(shopify_variant_id)
