"""
AniMatch — Async Database Engine & Session Factory

Backs the SQL implementation of the document store.  Two connection flavours
share the same factory:

1. **PostgreSQL (production)** – ``asyncpg`` driver, JSONB document column,
   tuned connection pool.
2. **SQLite (local development / tests)** – ``aiosqlite`` driver, plain JSON
   column, default pool.

The engine is created lazily on first use so that importing the package never
opens a connection.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from animatch.config import get_settings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Declarative base for all ORM models
# ------------------------------------------------------------------ #

class Base(DeclarativeBase):
    """Shared declarative base.

    Every SQLAlchemy model in the project should inherit from this class::

        from animatch.database import Base

        class Document(Base):
            __tablename__ = "documents"
            ...
    """
    pass


# ------------------------------------------------------------------ #
# Pool configuration (PostgreSQL only)
# ------------------------------------------------------------------ #

_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _normalise_url(url: str) -> str:
    """Upgrade a plain ``postgresql://`` scheme to the asyncpg dialect."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to ``DATABASE_URL``)."""
    settings = get_settings()
    url = _normalise_url(url or settings.DATABASE_URL)
    if echo is None:
        echo = settings.LOG_LEVEL == "DEBUG"

    kwargs = dict(_POOL_KWARGS) if url.startswith("postgresql") else {}
    engine = create_async_engine(url, echo=echo, **kwargs)

    logger.info("Database engine created (%s)", engine.url.get_backend_name())
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ------------------------------------------------------------------ #
# Process-wide engine & session factory (lazy-initialised)
# ------------------------------------------------------------------ #

@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return build_engine()


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create every table registered on ``Base.metadata``.

    Alembic owns the schema in deployed environments; this is for local
    development and tests.
    """
    import animatch.models  # noqa: F401  (registers tables)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

