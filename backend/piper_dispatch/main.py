"""
Piper Dispatch - FastAPI Backend

Main application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from piper_dispatch.api.v1 import campaigns, health, tracking
from piper_dispatch.core.config import settings
from piper_dispatch.db.postgres import close_db, init_db
from piper_dispatch.db.redis import redis_client
from piper_dispatch.middleware.rate_limit import setup_rate_limiting
from piper_dispatch.services.email_provider import reset_email_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    logger.info("PostgreSQL: %s:%s", settings.postgres_host, settings.postgres_port)

    try:
        settings.validate_production_settings()
    except ValueError as e:
        if settings.environment == "production":
            logger.error("CRITICAL: %s", e)
            raise
        logger.warning("Production settings validation: %s", e)

    try:
        await init_db()
        logger.info("PostgreSQL connected and tables created")
    except Exception as e:
        logger.error("PostgreSQL initialization failed: %s", e)

    yield

    await reset_email_provider()
    await redis_client.close()
    logger.info("Redis disconnected")
    await close_db()
    logger.info("PostgreSQL disconnected")
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Piper Dispatch API

    Newsletter campaign delivery and engagement tracking.

    - **Campaigns**: create, schedule, pause, send and report on campaigns
    - **Tracking**: open pixel, click redirect, unsubscribe, spam and bounce intake
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
)

setup_rate_limiting(app)


@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


app.include_router(health.router)  # /health (no /api/v1 prefix)
app.include_router(campaigns.router, prefix=settings.api_v1_prefix)
app.include_router(tracking.router, prefix=settings.api_v1_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "piper_dispatch.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
