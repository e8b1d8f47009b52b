"""
Test Configuration — Fixtures for async DB, test client, and a fake media adapter.

Each test gets its own SQLite file database so that separate sessions (cron
sweep, racing rotations) see each other's commits the way they would on
PostgreSQL.
"""

import random

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import (
    get_adapter_factory,
    get_current_user,
    get_db,
    get_random_source,
    get_session_factory,
)
from api.main import app
from db.models import ABTest
from db.session import Base
from experiments.rotation import RotationEngine, VariantInput
from experiments.types import VariantScope, VariantTag
from fakes import BASE_IMAGES, PRODUCT_ID, SHOP, TEST_IMAGES, FakeMediaAdapter


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine with real BEGIN/SAVEPOINT semantics."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'modelswap.db'}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_adapter():
    return FakeMediaAdapter()


@pytest.fixture
def adapter_factory(fake_adapter):
    async def _factory(db, shop):
        return fake_adapter

    return _factory


@pytest.fixture
def rotation_engine(test_db, adapter_factory):
    return RotationEngine(test_db, adapter_factory)


@pytest.fixture
def mock_user():
    """Mock authenticated merchant admin."""
    return {
        "sub": "merchant-admin",
        "email": "owner@test-shop.com",
        "shop": SHOP,
    }


@pytest.fixture
def random_source():
    return random.Random(1234)


@pytest.fixture
async def client(test_db, session_factory, adapter_factory, mock_user, random_source):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: mock_user
    app.dependency_overrides[get_adapter_factory] = lambda: adapter_factory
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_random_source] = lambda: random_source

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_test(rotation_engine):
    """Create (and optionally start) a product-wide test with BASE/TEST image sets."""

    async def _make(
        *,
        product_id: str = PRODUCT_ID,
        traffic_split: int = 50,
        rotation_hours: float | None = 24,
        start: bool = True,
        name: str = "Hero image on-model",
    ) -> ABTest:
        test = await rotation_engine.create_test(
            shop=SHOP,
            product_id=product_id,
            name=name,
            variants=[
                VariantInput(variant=VariantTag.A, image_urls=BASE_IMAGES),
                VariantInput(variant=VariantTag.B, image_urls=TEST_IMAGES),
            ],
            traffic_split=traffic_split,
            rotation_hours=rotation_hours,
            variant_scope=VariantScope.PRODUCT,
            created_by="owner@test-shop.com",
        )
        if start:
            test = await rotation_engine.start(test.test_id, user_id="merchant-admin")
        return test

    return _make
