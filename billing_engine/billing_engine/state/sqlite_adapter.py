"""SQLite adapter for local billing runs and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* In-memory databases share one connection (``StaticPool``) so every
  session sees the same data.
* ``SELECT ... FOR UPDATE`` is a no-op; the conditional-update claims in the
  repositories are the only concurrency control that matters here.
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_local_engine(
    db_path: Path | str = ".billing/state.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for an ephemeral
        in-memory database.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if db_path == ":memory:":
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        url = "sqlite+aiosqlite://"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables; idempotent and safe to call on every startup."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
