"""
ModelSwap API Dependencies

Dependency injection for DB sessions, admin auth, the media adapter factory
and the variant random source.
"""

import random
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from db.session import AsyncSessionLocal
from experiments.binder import RandomSource
from experiments.rotation import AdapterFactory, RotationEngine
from integrations.shopify import load_shop_adapter

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_SHOP = "modelswap-dev.myshopify.com"

_random_source = random.Random()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Session factory for work that needs one session per unit (cron sweep)."""
    return AsyncSessionLocal


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@modelswap.app",
            "shop": DEV_SHOP,
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if not payload.get("shop"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No shop context",
        )
    return payload


def get_adapter_factory() -> AdapterFactory:
    return load_shop_adapter


def get_random_source() -> RandomSource:
    return _random_source


def get_rotation_engine(
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> RotationEngine:
    return RotationEngine(db, adapter_factory)
