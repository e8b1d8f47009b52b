"""
Rotation Store — durable "what is displayed" state per slot.

A slot is keyed by (shop, product_id, shopify_variant_id-or-product-wide) and
carries the active RotationVariant plus a switch timeline. The timeline is what
lets late events be attributed to the variant that was live when they happened.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ABTest, RotationHistory, RotationSlot, scope_key_for
from experiments.types import RotationTrigger, RotationVariant, SlotStatus

logger = structlog.get_logger()


async def get_slot(
    db: AsyncSession,
    shop: str,
    product_id: str,
    shopify_variant_id: str | None = None,
) -> RotationSlot | None:
    result = await db.execute(
        select(RotationSlot).where(
            RotationSlot.shop == shop,
            RotationSlot.product_id == product_id,
            RotationSlot.scope_key == scope_key_for(shopify_variant_id),
        )
    )
    return result.scalar_one_or_none()


async def find_slot_any_shop(
    db: AsyncSession,
    product_id: str,
    shopify_variant_id: str | None = None,
) -> RotationSlot | None:
    """Public storefront calls may not know the shop; prefer an ACTIVE slot."""
    result = await db.execute(
        select(RotationSlot)
        .where(
            RotationSlot.product_id == product_id,
            RotationSlot.scope_key == scope_key_for(shopify_variant_id),
        )
        .order_by((RotationSlot.status == SlotStatus.ACTIVE.value).desc(), RotationSlot.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def slots_for_test(db: AsyncSession, test_id: uuid.UUID) -> list[RotationSlot]:
    result = await db.execute(
        select(RotationSlot).where(RotationSlot.test_id == test_id).order_by(RotationSlot.scope_key)
    )
    return list(result.scalars().all())


async def attach_slot(
    db: AsyncSession,
    test: ABTest,
    shopify_variant_id: str | None,
    *,
    at: datetime,
    triggered_by: RotationTrigger,
) -> RotationSlot:
    """
    Bind the (shop, product, scope) slot to ``test`` showing CONTROL.

    Slots are reused across tests on the same product; the switch timeline is kept
    so events from an earlier test still resolve against their own history.
    """
    slot = await get_slot(db, test.shop, test.product_id, shopify_variant_id)
    if slot is None:
        slot = RotationSlot(
            shop=test.shop,
            product_id=test.product_id,
            shopify_variant_id=shopify_variant_id,
            scope_key=scope_key_for(shopify_variant_id),
        )
        db.add(slot)

    slot.test_id = test.test_id
    slot.status = SlotStatus.ACTIVE.value
    await db.flush()
    await record_switch(
        db,
        slot,
        RotationVariant.CONTROL,
        triggered_by=triggered_by,
        at=at,
        context={"reason": "slot_attached"},
    )
    return slot


async def record_switch(
    db: AsyncSession,
    slot: RotationSlot,
    variant: RotationVariant,
    *,
    triggered_by: RotationTrigger,
    at: datetime,
    context: dict[str, Any] | None = None,
) -> RotationHistory:
    slot.active_variant = variant.value
    slot.last_switch_at = at
    entry = RotationHistory(
        slot_id=slot.slot_id,
        test_id=slot.test_id,
        switched_variant=variant.value,
        triggered_by=triggered_by.value,
        switched_at=at,
        context=context or {},
    )
    db.add(entry)
    return entry


async def deactivate_slots(db: AsyncSession, test_id: uuid.UUID) -> None:
    await db.execute(
        update(RotationSlot).where(RotationSlot.test_id == test_id).values(status=SlotStatus.INACTIVE.value)
    )


async def release_slots(db: AsyncSession, test_id: uuid.UUID) -> None:
    """Detach slots from a deleted test; their timeline stays for the product."""
    await db.execute(
        update(RotationSlot)
        .where(RotationSlot.test_id == test_id)
        .values(test_id=None, status=SlotStatus.INACTIVE.value)
    )


async def variant_at(db: AsyncSession, slot: RotationSlot, at: datetime) -> RotationVariant:
    """
    The variant that was live on ``slot`` at ``at``.

    Latest switch at or before ``at`` wins; with no earlier switch the slot's
    current variant is used.
    """
    result = await db.execute(
        select(RotationHistory.switched_variant)
        .where(RotationHistory.slot_id == slot.slot_id, RotationHistory.switched_at <= at)
        .order_by(RotationHistory.switched_at.desc())
        .limit(1)
    )
    switched = result.scalar_one_or_none()
    if switched is None:
        return RotationVariant(slot.active_variant)
    return RotationVariant(switched)


async def get_timeline(db: AsyncSession, slot_id: uuid.UUID, limit: int = 50) -> list[RotationHistory]:
    result = await db.execute(
        select(RotationHistory)
        .where(RotationHistory.slot_id == slot_id)
        .order_by(RotationHistory.switched_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
