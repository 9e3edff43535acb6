"""
Database engine & async session factory.

Driver: asyncpg (postgresql+asyncpg) or aiosqlite (sqlite+aiosqlite)
ORM:    SQLAlchemy 2.0 async
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger("clawwatch.db")


# ── URL helpers ──────────────────────────────────────────────────────────────

def as_async_url(url: str) -> str:
    """Convert a plain database URL to its async driver dialect."""
    for prefix, target in (
        ("postgresql+asyncpg://", "postgresql+asyncpg://"),
        ("postgresql+psycopg://", "postgresql+asyncpg://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("sqlite+aiosqlite://", "sqlite+aiosqlite://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ):
        if url.startswith(prefix):
            return url.replace(prefix, target, 1)
    return url


# ── Engine + session factory ─────────────────────────────────────────────────

def create_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to PostgreSQL."""
    url = as_async_url(database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Schema bootstrapping ────────────────────────────────────────────────────

async def ensure_schema(engine: AsyncEngine) -> None:
    """Create all tables and indexes if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ready (%d tables)", len(Base.metadata.tables))


async def check_connection(engine: AsyncEngine) -> None:
    """Round-trip a trivial query so bad credentials fail at startup."""
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
