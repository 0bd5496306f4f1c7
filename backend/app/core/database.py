"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite in tests).

Provides:
    • Async engine and session factory builders
    • Base model for ORM entities
    • Table creation helper

Usage:
    from backend.app.core.database import create_engine, init_db, make_session_factory

    engine = create_engine(settings.DATABASE_URL)
    await init_db(engine)
    async with make_session_factory(engine)() as session:
        ...
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def create_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Build an async engine; in-memory SQLite gets a shared static pool."""
    if url.startswith("sqlite"):
        if url.endswith("://") or ":memory:" in url:
            # one connection, so every session sees the same database
            return create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=echo,
        pool_pre_ping=True,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM tables on Base.metadata
    from backend.app.notifications import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
