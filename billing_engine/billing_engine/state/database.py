"""Async SQLAlchemy engine and session helpers.

The database URL scheme picks the backend: ``sqlite+aiosqlite://`` URLs are
handed to :mod:`billing_engine.state.sqlite_adapter`, anything else (in
practice ``postgresql+asyncpg://``) gets a pooled engine.

Workers never share a session across items: each sweep item runs in its own
``session_scope`` so one failure rolls back only that item.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Keyed by engine identity; each factory holds a reference to its engine.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the engine for *database_url*.

    ``pool_size`` and ``max_overflow`` only apply to pooled (non-SQLite)
    backends.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from billing_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(url, pool_size=pool_size, max_overflow=max_overflow)
    logger.info("Created async engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory for *engine*."""
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    return factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
