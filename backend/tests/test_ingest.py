"""
Tests for event ingest — validation, test resolution, variant attribution and
deduplication.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from db.models import ABTestEvent
from experiments import binder
from experiments.binder import resolve_variant
from experiments.errors import ValidationError
from experiments.types import EventMetadata, EventSource, EventType, VariantTag
from fakes import PRODUCT_ID, SequenceRandom
from tracking import ingest as ingest_module
from tracking.ingest import TrackedEvent, dedup_key_for, ingest, to_naive_utc


async def _events(db, **filters) -> list[ABTestEvent]:
    query = select(ABTestEvent)
    for column, value in filters.items():
        query = query.where(getattr(ABTestEvent, column) == value)
    result = await db.execute(query.order_by(ABTestEvent.occurred_at))
    return list(result.scalars().all())


async def _count(db) -> int:
    return (await db.execute(select(func.count()).select_from(ABTestEvent))).scalar_one()


class TestHelpers:
    def test_dedup_keys(self):
        assert dedup_key_for(EventType.IMPRESSION, None) == "IMPRESSION"
        assert dedup_key_for(EventType.PURCHASE, None) == "PURCHASE"
        assert dedup_key_for(EventType.PURCHASE, "5001") == "PURCHASE:5001"
        assert dedup_key_for(EventType.ADD_TO_CART, "5001") == "ADD_TO_CART"

    def test_to_naive_utc(self):
        aware = datetime.fromisoformat("2024-06-01T12:00:00+02:00")
        assert to_naive_utc(aware) == datetime(2024, 6, 1, 10, 0, 0)
        assert to_naive_utc(datetime(2024, 6, 1)) == datetime(2024, 6, 1)

    def test_metadata_tolerates_loose_client_values(self):
        metadata = EventMetadata.from_raw(
            {"orderId": 555, "orderNumber": 1001, "lineItemCount": "several", "source": "kiosk", "cartToken": "abc"}
        )

        assert metadata.order_id == "555"
        assert metadata.order_number == "1001"
        assert metadata.line_item_count is None
        assert metadata.source is None
        assert metadata.extra == {"lineItemCount": "several", "source": "kiosk", "cartToken": "abc"}


@pytest.mark.asyncio
class TestValidation:
    async def test_unknown_event_type(self, test_db):
        with pytest.raises(ValidationError):
            await ingest(test_db, TrackedEvent(session_id="s", event_type="CLICK", product_id="1001"))

    async def test_event_type_is_case_insensitive(self, test_db):
        result = await ingest(test_db, TrackedEvent(session_id="s", event_type="impression", product_id="1001"))
        assert result.event_id is not None

    async def test_negative_amounts(self, test_db):
        with pytest.raises(ValidationError):
            await ingest(
                test_db, TrackedEvent(session_id="s", event_type="PURCHASE", product_id="1001", revenue=-1.0)
            )
        with pytest.raises(ValidationError):
            await ingest(
                test_db, TrackedEvent(session_id="s", event_type="PURCHASE", product_id="1001", quantity=-2)
            )

    async def test_malformed_test_id(self, test_db):
        with pytest.raises(ValidationError):
            await ingest(
                test_db, TrackedEvent(session_id="s", event_type="IMPRESSION", product_id="1001", test_id="abc")
            )

    async def test_missing_session(self, test_db):
        with pytest.raises(ValidationError):
            await ingest(test_db, TrackedEvent(session_id=" ", event_type="IMPRESSION", product_id="1001"))


@pytest.mark.asyncio
class TestAttribution:
    async def test_event_without_test_is_stored_unattributed(self, test_db):
        result = await ingest(test_db, TrackedEvent(session_id="s1", event_type="IMPRESSION", product_id="4242"))

        assert result.test_id is None
        assert result.variant is None
        (row,) = await _events(test_db)
        assert row.test_id is None
        assert row.product_id == "gid://shopify/Product/4242"

    async def test_identical_impression_is_deduplicated(self, test_db, make_test):
        test = await make_test()
        payload = TrackedEvent(session_id="s1", event_type="IMPRESSION", product_id="1001", declared_variant="B")

        first = await ingest(test_db, payload)
        second = await ingest(test_db, payload)

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert second.event_id == first.event_id
        assert first.test_id == test.test_id
        assert first.variant is VariantTag.B
        assert await _count(test_db) == 1

    async def test_binding_beats_declared_variant(self, test_db, make_test):
        test = await make_test()
        await resolve_variant(test_db, test, "s1", random_source=SequenceRandom([0.1]))

        result = await ingest(
            test_db,
            TrackedEvent(session_id="s1", event_type="ADD_TO_CART", product_id=PRODUCT_ID, declared_variant="B"),
        )

        assert result.variant is VariantTag.A
        assert result.to_dict()["activeCase"] == "BASE"

    async def test_declared_variant_on_first_conversion_adds_retroactive_impression(self, test_db, make_test):
        await make_test()

        result = await ingest(
            test_db,
            TrackedEvent(session_id="s2", event_type="ADD_TO_CART", product_id="1001", declared_variant="TEST"),
        )

        assert result.variant is VariantTag.B
        impressions = await _events(test_db, session_id="s2", event_type="IMPRESSION")
        assert len(impressions) == 1
        assert impressions[0].variant == "B"
        assert impressions[0].event_metadata["retroactive"] is True

    async def test_repeat_add_to_cart_is_deduplicated(self, test_db, make_test):
        await make_test()
        payload = TrackedEvent(session_id="s3", event_type="ADD_TO_CART", product_id="1001")

        await ingest(test_db, payload)
        again = await ingest(test_db, payload)

        assert again.deduplicated is True
        assert len(await _events(test_db, session_id="s3", event_type="ADD_TO_CART")) == 1

    async def test_late_events_use_variant_live_at_occurred_at(self, test_db, rotation_engine, make_test):
        test = await make_test()
        rotated_at = datetime.utcnow() + timedelta(hours=2)
        await rotation_engine.rotate(test.test_id, now=rotated_at)

        before = await ingest(
            test_db,
            TrackedEvent(
                session_id="early",
                event_type="ADD_TO_CART",
                product_id="1001",
                occurred_at=rotated_at - timedelta(hours=1),
            ),
        )
        after = await ingest(
            test_db,
            TrackedEvent(
                session_id="late",
                event_type="ADD_TO_CART",
                product_id="1001",
                occurred_at=rotated_at + timedelta(hours=1),
            ),
        )

        assert before.variant is VariantTag.A
        assert after.variant is VariantTag.B
        early_impression = (await _events(test_db, session_id="early", event_type="IMPRESSION"))[0]
        assert early_impression.variant == "A"
        assert early_impression.occurred_at == rotated_at - timedelta(hours=1)

    async def test_explicit_completed_test_still_collects_late_events(self, test_db, rotation_engine, make_test):
        test = await make_test()
        await rotation_engine.complete(test.test_id)

        result = await ingest(
            test_db,
            TrackedEvent(
                session_id="s4",
                event_type="IMPRESSION",
                product_id="1001",
                test_id=str(test.test_id),
                declared_variant="A",
            ),
        )

        assert result.test_id == test.test_id
        assert result.variant is VariantTag.A

    async def test_explicit_draft_test_falls_back_to_running(self, test_db, make_test):
        draft = await make_test(start=False, name="Unstarted idea")
        running = await make_test(name="Live idea")

        result = await ingest(
            test_db,
            TrackedEvent(session_id="s5", event_type="IMPRESSION", product_id="1001", test_id=str(draft.test_id)),
        )

        assert result.test_id == running.test_id


@pytest.mark.asyncio
class TestPurchases:
    async def test_pixel_purchase_keyed_by_order(self, test_db, make_test):
        await make_test()

        result = await ingest(
            test_db,
            TrackedEvent(
                session_id="s1",
                event_type="PURCHASE",
                product_id="1001",
                revenue=49.5,
                quantity=1,
                declared_variant="A",
                metadata={"orderId": 5001, "cartToken": "abc"},
            ),
        )

        (purchase,) = await _events(test_db, event_type="PURCHASE")
        assert purchase.event_id == result.event_id
        assert purchase.order_id == "5001"
        assert purchase.dedup_key == "PURCHASE:5001"
        assert purchase.event_metadata["extra"] == {"cartToken": "abc"}

    async def test_second_pixel_for_same_order_is_ignored(self, test_db, make_test):
        await make_test()
        payload = TrackedEvent(
            session_id="s1",
            event_type="PURCHASE",
            product_id="1001",
            revenue=49.5,
            metadata={"orderId": "5001"},
        )

        await ingest(test_db, payload)
        again = await ingest(test_db, payload)

        assert again.deduplicated is True
        assert again.enriched is False
        assert len(await _events(test_db, event_type="PURCHASE")) == 1

    async def test_pixel_after_webhook_fills_gaps_only(self, test_db, make_test):
        test = await make_test()
        webhook = TrackedEvent(
            session_id="order:5001",
            event_type="PURCHASE",
            product_id="1001",
            test_id=str(test.test_id),
            revenue=80.0,
            quantity=2,
            source=EventSource.WEBHOOK,
            metadata={"orderId": "5001"},
        )
        await ingest(test_db, webhook)

        pixel = await ingest(
            test_db,
            TrackedEvent(
                session_id="s1",
                event_type="PURCHASE",
                product_id="1001",
                revenue=75.0,
                metadata={"orderId": "5001"},
            ),
        )

        assert pixel.deduplicated is True
        (purchase,) = await _events(test_db, event_type="PURCHASE")
        assert purchase.revenue == 80.0
        assert purchase.quantity == 2

    async def test_webhook_racing_stored_pixel_merges_into_it(self, test_db, make_test, monkeypatch):
        test = await make_test()
        await ingest(
            test_db,
            TrackedEvent(
                session_id="s1",
                event_type="PURCHASE",
                product_id="1001",
                revenue=75.0,
                metadata={"orderId": "9001"},
            ),
        )

        # The webhook's lookups ran before the pixel row was visible
        async def no_purchase(db, order_id):
            return None

        real_find = binder._find_conflicting
        calls = {"n": 0}

        async def racing_find(db, event):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_find(db, event)

        monkeypatch.setattr(ingest_module, "find_purchase_by_order", no_purchase)
        monkeypatch.setattr(binder, "_find_conflicting", racing_find)

        result = await ingest(
            test_db,
            TrackedEvent(
                session_id="order:9001",
                event_type="PURCHASE",
                product_id="1001",
                test_id=str(test.test_id),
                revenue=80.0,
                quantity=2,
                source=EventSource.WEBHOOK,
                metadata={"orderId": "9001", "orderNumber": "#1009"},
            ),
        )

        assert result.deduplicated is True
        assert result.enriched is True
        (purchase,) = await _events(test_db, event_type="PURCHASE")
        assert purchase.revenue == 80.0
        assert purchase.quantity == 2
        assert purchase.source == "pixel"
        assert purchase.event_metadata["enrichedByWebhook"] is True
        assert purchase.event_metadata["orderNumber"] == "#1009"
