"""Unit tests for billing_engine.state.database.

Covers:
- Backend selection from the database URL
- Session factory caching per engine
- Commit and rollback in ``session_scope``
"""

from __future__ import annotations

import pytest
from sqlalchemy.pool import StaticPool

from billing_engine.state.database import get_engine, get_session_factory, session_scope
from billing_engine.state.repository import WalletRepository
from billing_engine.state.sqlite_adapter import create_local_tables

# ---------------------------------------------------------------------------
# Engine selection
# ---------------------------------------------------------------------------


class TestGetEngine:
    @pytest.mark.asyncio
    async def test_sqlite_file_url(self, tmp_path):
        db_path = tmp_path / "nested" / "state.db"
        engine = get_engine(f"sqlite+aiosqlite:///{db_path}")
        try:
            assert engine.url.get_backend_name() == "sqlite"
            assert engine.url.database == str(db_path)
            assert db_path.parent.is_dir()
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_sqlite_memory_url(self):
        engine = get_engine("sqlite+aiosqlite://")
        try:
            assert isinstance(engine.sync_engine.pool, StaticPool)
        finally:
            await engine.dispose()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_factory_is_cached_per_engine(self):
        first = get_engine("sqlite+aiosqlite://")
        second = get_engine("sqlite+aiosqlite://")
        try:
            assert get_session_factory(first) is get_session_factory(first)
            assert get_session_factory(first) is not get_session_factory(second)
        finally:
            await first.dispose()
            await second.dispose()

    @pytest.mark.asyncio
    async def test_scope_commits_and_rolls_back(self):
        engine = get_engine("sqlite+aiosqlite://")
        await create_local_tables(engine)
        factory = get_session_factory(engine)
        try:
            async with session_scope(factory) as session:
                kept = await WalletRepository(session).get_or_create(
                    workspace_id="ws_test", customer_id="cus_kept", wallet_address="0xkept", chain_id=8453
                )
                kept_id = kept.wallet_id

            with pytest.raises(RuntimeError):
                async with session_scope(factory) as session:
                    dropped = await WalletRepository(session).get_or_create(
                        workspace_id="ws_test", customer_id="cus_dropped", wallet_address="0xdropped", chain_id=8453
                    )
                    dropped_id = dropped.wallet_id
                    raise RuntimeError("abort")

            async with session_scope(factory) as session:
                wallets = WalletRepository(session)
                assert await wallets.get(kept_id) is not None
                assert await wallets.get(dropped_id) is None
        finally:
            await engine.dispose()
