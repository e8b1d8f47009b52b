"""
Tests for the rotation sweep — due-test selection, per-test isolation, overlap
safety and the Celery beat entry point.
"""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import ABTest, RotationEvent
from db.session import Base
from experiments.rotation import RotationEngine, VariantInput
from experiments.types import VariantTag
from fakes import BASE_IMAGES, SHOP, TEST_IMAGES, FakeMediaAdapter
from workers.rotation import find_due_tests, rotate_due_tests, run_due_rotations


async def _make_due(db, test_id, now: datetime) -> None:
    await db.execute(
        update(ABTest).where(ABTest.test_id == test_id).values(next_rotation_at=now - timedelta(minutes=5))
    )
    await db.commit()


@pytest.mark.asyncio
class TestFindDueTests:
    async def test_only_running_scheduled_and_due(self, test_db, rotation_engine, make_test):
        now = datetime.utcnow()
        due = await make_test(product_id="1")
        await make_test(product_id="2")
        manual = await make_test(product_id="3", rotation_hours=None)
        paused = await make_test(product_id="4")
        await _make_due(test_db, due.test_id, now)
        await _make_due(test_db, paused.test_id, now)
        await rotation_engine.pause(paused.test_id)

        found = await find_due_tests(test_db, now)

        assert [t.test_id for t in found] == [due.test_id]
        assert manual.next_rotation_at is None


@pytest.mark.asyncio
class TestRunDueRotations:
    async def test_rotates_due_tests(self, test_db, session_factory, adapter_factory, make_test, fake_adapter):
        now = datetime.utcnow()
        due = await make_test(product_id="1")
        await make_test(product_id="2")
        await _make_due(test_db, due.test_id, now)

        summary = await run_due_rotations(session_factory, adapter_factory, now=now)

        assert summary["processed"] == 1
        assert summary["successful"] == 1
        assert summary["failed"] == 0
        (entry,) = summary["results"]
        assert entry["testId"] == str(due.test_id)
        assert entry["status"] == "success"
        assert entry["fromCase"] == "BASE"
        assert entry["toCase"] == "TEST"
        assert entry["nextRotationAt"] == (now + timedelta(hours=24)).isoformat()
        assert fake_adapter.published == [TEST_IMAGES]

        events = (await test_db.execute(select(RotationEvent))).scalars().all()
        assert [e.triggered_by for e in events] == ["CRON"]

    async def test_repeated_sweep_does_not_rotate_again(
        self, test_db, session_factory, adapter_factory, make_test, fake_adapter
    ):
        now = datetime.utcnow()
        due = await make_test()
        await _make_due(test_db, due.test_id, now)

        await run_due_rotations(session_factory, adapter_factory, now=now)
        again = await run_due_rotations(session_factory, adapter_factory, now=now + timedelta(minutes=10))

        assert again["processed"] == 0
        assert len(fake_adapter.calls) == 1

    async def test_failure_is_isolated_and_retried_next_sweep(
        self, test_db, session_factory, adapter_factory, make_test, fake_adapter
    ):
        now = datetime.utcnow()
        first = await make_test(product_id="1")
        second = await make_test(product_id="2")
        await _make_due(test_db, first.test_id, now)
        await _make_due(test_db, second.test_id, now)
        fake_adapter.fail_on_call = {1}

        summary = await run_due_rotations(session_factory, adapter_factory, now=now)

        assert summary["processed"] == 2
        assert summary["failed"] == 1
        assert summary["successful"] == 1
        failed = [r for r in summary["results"] if r["status"] == "failed"]
        assert "unavailable" in failed[0]["error"]

        # The failed test is still due and the next sweep picks it up
        retry = await run_due_rotations(session_factory, adapter_factory, now=now + timedelta(minutes=10))
        assert retry["processed"] == 1
        assert retry["successful"] == 1
        assert retry["results"][0]["testId"] == failed[0]["testId"]

    async def test_overlapping_sweeps_rotate_once(
        self, test_db, session_factory, adapter_factory, make_test, fake_adapter
    ):
        now = datetime.utcnow()
        due = await make_test()
        await _make_due(test_db, due.test_id, now)
        inner = {}

        async def overlapping_sweep():
            inner["summary"] = await run_due_rotations(session_factory, adapter_factory, now=now)

        fake_adapter.on_swap = overlapping_sweep
        outer = await run_due_rotations(session_factory, adapter_factory, now=now)

        assert outer["successful"] == 1
        assert inner["summary"]["skipped"] == 1
        assert inner["summary"]["successful"] == 0
        assert len(fake_adapter.calls) == 1

    async def test_no_due_tests(self, session_factory, adapter_factory):
        summary = await run_due_rotations(session_factory, adapter_factory)

        assert summary["processed"] == 0
        assert summary["results"] == []
        assert summary["durationMs"] >= 0


def test_celery_task_sweeps_due_tests(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'sweep.db'}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    adapter = FakeMediaAdapter()

    async def _factory(db, shop):
        return adapter

    async def _seed():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            rotation = RotationEngine(db, _factory)
            test = await rotation.create_test(
                shop=SHOP,
                product_id="1001",
                name="Hero image on-model",
                variants=[
                    VariantInput(variant=VariantTag.A, image_urls=BASE_IMAGES),
                    VariantInput(variant=VariantTag.B, image_urls=TEST_IMAGES),
                ],
                rotation_hours=6,
            )
            await rotation.start(test.test_id)
            await _make_due(db, test.test_id, datetime.utcnow())

    asyncio.run(_seed())
    asyncio.run(engine.dispose())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))
    monkeypatch.setattr("integrations.shopify.load_shop_adapter", _factory)

    result = rotate_due_tests.run()

    assert result["run_id"] == "manual"
    assert result["processed"] == 1
    assert result["successful"] == 1
    assert adapter.published == [TEST_IMAGES]
