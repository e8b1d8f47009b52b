"""
ModelSwap API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from db.session import engine

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(
        "api.startup",
        version=settings.app_version,
        env=settings.app_env,
        conversion_metric=settings.stats_conversion_metric,
    )
    yield
    await engine.dispose()
    logger.info("api.shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Server-side product image A/B testing for Shopify storefronts",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import ab_tests, rotation, storefront, webhooks

app.include_router(ab_tests.router)
app.include_router(storefront.router)
app.include_router(webhooks.router)
app.include_router(rotation.router)


@app.get("/health")
async def health_check():
    """Liveness probe for load balancers and the cron platform."""
    return {"status": "healthy", "version": settings.app_version}
