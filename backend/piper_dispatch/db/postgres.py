"""
PostgreSQL engine and session factory for the campaign and tracking stores.

Repositories open one short-lived ``AsyncSession`` per operation from
``async_session_maker``; nothing here holds a session across calls.
"""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from piper_dispatch.core.config import settings


class Base(DeclarativeBase):
    """Declarative base shared by campaign and tracking models."""


engine = create_async_engine(
    settings.postgres_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.postgres_pool_size,
    max_overflow=settings.postgres_max_overflow,
)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create missing tables. Schema changes go through Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database() -> None:
    """Round-trip a trivial query; raises if the store is unreachable."""
    async with async_session_maker() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose of pooled connections (bound to the current event loop)."""
    await engine.dispose()
