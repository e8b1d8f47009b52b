"""
Session/Variant Binder — sticky per-session assignment.

The first event stored for a (test, session) pair pins the session's variant for
the lifetime of the test. Fresh sessions are split by a uniform draw in [0, 100)
against the test's traffic split (A below the split, B otherwise), and the draw
is anchored by an IMPRESSION insert. The insert is insert-or-ignore on the
(test, session, dedup_key) unique constraint, so two concurrent first requests
converge on whichever row landed first.
"""

from __future__ import annotations

import random
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ABTest, ABTestEvent, ABTestVariant, PRODUCT_WIDE_SCOPE, scope_key_for
from experiments.types import (
    TAG_TO_CASE,
    ABTestStatus,
    EventSource,
    EventType,
    VariantScope,
    VariantTag,
    parse_declared_variant,
)

logger = structlog.get_logger()


class RandomSource(Protocol):
    """Anything with ``random() -> float`` in [0, 1); ``random.Random`` qualifies."""

    def random(self) -> float: ...


_default_source = random.Random()


@dataclass(frozen=True)
class VariantPair:
    """One usable A/B image-set pair for a scope (product-wide or one product-variant)."""

    scope_key: str
    shopify_variant_id: str | None
    control: ABTestVariant
    challenger: ABTestVariant

    def images_for(self, tag: VariantTag) -> list[str]:
        record = self.control if tag is VariantTag.A else self.challenger
        return record.image_list


@dataclass(frozen=True)
class Assignment:
    variant: VariantTag | None
    is_new_binding: bool = False
    forced: bool = False
    event_id: uuid.UUID | None = None

    @property
    def active_case(self) -> str | None:
        return TAG_TO_CASE[self.variant].value if self.variant else None


NO_ASSIGNMENT = Assignment(variant=None)


def complete_pairs(variants: Iterable[ABTestVariant]) -> dict[str, VariantPair]:
    """
    Group variant records by scope and keep only groups with exactly one A and one B.
    Incomplete groups are skipped, never an error.
    """
    grouped: dict[str, dict[str, list[ABTestVariant]]] = defaultdict(lambda: defaultdict(list))
    for record in variants:
        grouped[record.scope_key or PRODUCT_WIDE_SCOPE][record.variant].append(record)

    pairs: dict[str, VariantPair] = {}
    for scope_key, by_tag in grouped.items():
        controls, challengers = by_tag.get(VariantTag.A.value, []), by_tag.get(VariantTag.B.value, [])
        if len(controls) != 1 or len(challengers) != 1:
            logger.warning("binder.incomplete_variant_group", scope_key=scope_key, tags=sorted(by_tag))
            continue
        pairs[scope_key] = VariantPair(
            scope_key=scope_key,
            shopify_variant_id=controls[0].shopify_variant_id,
            control=controls[0],
            challenger=challengers[0],
        )
    return pairs


def pair_for_scope(
    test: ABTest,
    pairs: dict[str, VariantPair],
    shopify_variant_id: str | None = None,
) -> VariantPair | None:
    if test.variant_scope == VariantScope.VARIANT.value:
        if shopify_variant_id:
            return pairs.get(scope_key_for(shopify_variant_id))
        # No product-variant context: any usable group keeps the session bindable
        return next(iter(pairs.values()), None)
    return pairs.get(PRODUCT_WIDE_SCOPE)


def draw_variant(traffic_split: int, source: RandomSource | None = None) -> VariantTag:
    r = (source or _default_source).random() * 100
    return VariantTag.A if r < traffic_split else VariantTag.B


async def load_variants(db: AsyncSession, test_id: uuid.UUID) -> list[ABTestVariant]:
    result = await db.execute(select(ABTestVariant).where(ABTestVariant.test_id == test_id))
    return list(result.scalars().all())


async def find_binding(db: AsyncSession, test_id: uuid.UUID, session_id: str) -> ABTestEvent | None:
    """Earliest attributed event for the session; its variant is the pinned one."""
    result = await db.execute(
        select(ABTestEvent)
        .where(
            ABTestEvent.test_id == test_id,
            ABTestEvent.session_id == session_id,
            ABTestEvent.variant.is_not(None),
        )
        .order_by(ABTestEvent.occurred_at, ABTestEvent.created_at)
        .limit(1)
    )
    return result.scalars().first()


async def _find_conflicting(db: AsyncSession, event: ABTestEvent) -> ABTestEvent | None:
    clauses = []
    if event.test_id is not None:
        clauses.append(
            and_(
                ABTestEvent.test_id == event.test_id,
                ABTestEvent.session_id == event.session_id,
                ABTestEvent.dedup_key == event.dedup_key,
            )
        )
    if event.order_id is not None:
        clauses.append(and_(ABTestEvent.event_type == event.event_type, ABTestEvent.order_id == event.order_id))
    if not clauses:
        return None
    result = await db.execute(select(ABTestEvent).where(or_(*clauses)).limit(1))
    return result.scalars().first()


async def insert_event_once(db: AsyncSession, event: ABTestEvent) -> tuple[ABTestEvent, bool]:
    """
    Insert-or-ignore on the event unique constraints.

    Returns ``(row, created)``; on a constraint hit the already stored row is
    returned with ``created=False``. The caller owns the commit.
    """
    existing = await _find_conflicting(db, event)
    if existing is not None:
        return existing, False
    try:
        async with db.begin_nested():
            db.add(event)
            await db.flush()
    except IntegrityError:
        existing = await _find_conflicting(db, event)
        if existing is None:
            raise
        logger.info(
            "binder.insert_race_lost",
            test_id=str(event.test_id) if event.test_id else None,
            session_id=event.session_id,
            dedup_key=event.dedup_key,
        )
        return existing, False
    return event, True


def impression_for(
    test: ABTest,
    session_id: str,
    variant: VariantTag,
    *,
    product_id: str | None = None,
    shopify_variant_id: str | None = None,
    occurred_at: datetime | None = None,
    source: EventSource = EventSource.STOREFRONT,
    retroactive: bool = False,
) -> ABTestEvent:
    metadata = {"source": source.value}
    if retroactive:
        metadata["retroactive"] = True
    return ABTestEvent(
        shop=test.shop,
        test_id=test.test_id,
        session_id=session_id,
        event_type=EventType.IMPRESSION.value,
        variant=variant.value,
        active_case=TAG_TO_CASE[variant].value,
        product_id=product_id or test.product_id,
        shopify_variant_id=shopify_variant_id,
        source=source.value,
        dedup_key=EventType.IMPRESSION.value,
        event_metadata=metadata,
        occurred_at=occurred_at or datetime.utcnow(),
    )


async def resolve_variant(
    db: AsyncSession,
    test: ABTest | None,
    session_id: str,
    *,
    forced_variant: str | None = None,
    shopify_variant_id: str | None = None,
    random_source: RandomSource | None = None,
    now: datetime | None = None,
) -> Assignment:
    """
    Return the session's variant for ``test``, binding it on first sight.

    - A valid ``forced_variant`` is returned as-is and nothing is written.
    - A missing test, a test that is not RUNNING, or a missing/incomplete A/B pair
      for the requested scope yields ``Assignment(variant=None)``.
    - Otherwise the earliest stored event for (test, session) decides; with none,
      a fresh draw is anchored by an IMPRESSION (insert-or-ignore).
    """
    if test is None or test.status != ABTestStatus.RUNNING.value:
        return NO_ASSIGNMENT

    forced = parse_declared_variant(forced_variant)
    if forced is not None:
        return Assignment(variant=forced, forced=True)

    pairs = complete_pairs(await load_variants(db, test.test_id))
    if pair_for_scope(test, pairs, shopify_variant_id) is None:
        return NO_ASSIGNMENT

    binding = await find_binding(db, test.test_id, session_id)
    if binding is not None:
        return Assignment(variant=VariantTag(binding.variant), event_id=binding.event_id)

    drawn = draw_variant(test.traffic_split, random_source)
    anchor, created = await insert_event_once(
        db,
        impression_for(
            test,
            session_id,
            drawn,
            shopify_variant_id=shopify_variant_id,
            occurred_at=now,
        ),
    )
    await db.commit()

    if created:
        logger.info("binder.session_bound", test_id=str(test.test_id), session_id=session_id, variant=drawn.value)
    return Assignment(variant=VariantTag(anchor.variant), is_new_binding=created, event_id=anchor.event_id)
