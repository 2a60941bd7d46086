"""
database.py — SQLAlchemy 2.0 async engine and session factory.

This module owns ALL database connection infrastructure.
Nothing else in the codebase creates engines or sessions directly.

The engine and session factory are built once in the FastAPI lifespan and
stored on app.state, no module-level engine, so tests can point the whole
app at a throwaway database.

Usage in routes (via dependency injection):
    from matchlens.database import get_db
    async def my_route(db: AsyncSession = Depends(get_db)): ...

Usage in store.py (transactional writes manage their own session scope):
    async with sessionmaker() as session: ...
"""
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from matchlens.config import Settings


# ---------------------------------------------------------------------------
# Declarative base: ALL ORM models inherit from this
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base.
    All ORM models in matchlens/models/ inherit from Base.
    Defined here (not in models/) to prevent circular imports in alembic/env.py.
    """
    pass


# ---------------------------------------------------------------------------
# Engine factory: one per application lifetime
# ---------------------------------------------------------------------------
def create_engine(settings: Settings) -> AsyncEngine:
    """
    Build the pooled async engine.

    Pool limits come from settings so a burst of intake requests queues for a
    connection (pool_timeout) instead of exhausting Postgres.
    """
    if not settings.database_url.startswith("postgresql"):
        # SQLite (tests, local scratch): the queue pool options don't apply
        return create_async_engine(settings.database_url, echo=False)

    return create_async_engine(
        settings.database_url,
        echo=settings.debug,                    # Logs SQL statements in debug mode
        pool_size=settings.db_pool_size,        # Core connection pool size
        max_overflow=settings.db_max_overflow,  # Extra connections under peak load
        pool_timeout=settings.db_pool_timeout,  # Acquire timeout
        pool_recycle=settings.db_pool_recycle,  # Idle connection reclaim
        pool_pre_ping=True,                     # Discard stale connections before use
        connect_args={"command_timeout": settings.db_statement_timeout},
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,   # Keep objects usable after commit without re-querying
    )


async def ping(engine: AsyncEngine) -> None:
    """Run SELECT 1; raises if the database is unreachable."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


# ---------------------------------------------------------------------------
# FastAPI dependency: yields session, commits or rolls back
# ---------------------------------------------------------------------------
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an AsyncSession per request.

    Automatically commits on success or rolls back on exception.
    Always closes the session after the request (via async context manager).
    """
    sessionmaker = request.app.state.sessionmaker
    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
