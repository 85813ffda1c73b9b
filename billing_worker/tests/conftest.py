"""Shared fixtures for billing worker tests.

Every test gets its own in-memory SQLite database (aiosqlite, ``StaticPool``)
with the full ledger schema, plus factories that seed subscriptions and
dunning configurations directly through the repositories.  The execution
service is an ``AsyncMock`` that hands out sequential transaction hashes.
"""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models.settlement import (
    DelegationProof,
    InitialSettlementRequest,
    SettlementContext,
)
from billing_engine.models.subscription import BillingPlan, LineItem
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DelegationRepository,
    DunningConfigurationRepository,
    SubscriptionRepository,
    WalletRepository,
)
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_worker.services.settlement_executor import SettlementExecutor

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
WORKSPACE = "ws_test"
CUSTOMER = "cus_test"

CONTEXT = SettlementContext(
    customer_wallet_address="0xcustomer",
    merchant_wallet_address="0xmerchant",
    token_address="0xusdc",
    token_symbol="USDC",
    token_decimals=6,
    chain_id=8453,
    network_name="base",
)

PROOF = DelegationProof(
    delegate="0xplatform",
    delegator="0xcustomer",
    authority="0xroot",
    caveats=[{"enforcer": "0xlimit", "terms": "0x01"}],
    salt="0x5a17",
    signature="0xsigned",
)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all billing tables created."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def execution_service() -> AsyncMock:
    """Execution service mock returning ``0xtx1``, ``0xtx2``, ... per submission."""
    counter = itertools.count(1)
    service = AsyncMock()
    service.submit.side_effect = lambda *args, **kwargs: f"0xtx{next(counter)}"
    service.find_submission.return_value = None
    return service


@pytest.fixture
def executor(session_factory, execution_service) -> SettlementExecutor:
    return SettlementExecutor(session_factory, execution_service)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def line_items(amount_cents: int = 1000, product_id: str = "prod_basic") -> list[LineItem]:
    return [LineItem(product_id=product_id, description="Basic plan", unit_amount_cents=amount_cents)]


@pytest.fixture
def initial_request() -> Callable[..., InitialSettlementRequest]:
    """Build an initial settlement request; keyword overrides go to the plan."""

    def _build(amount_cents: int = 1000, idempotency_key: str | None = None, **plan: Any) -> InitialSettlementRequest:
        return InitialSettlementRequest(
            workspace_id=WORKSPACE,
            customer_id=CUSTOMER,
            product_id="prod_basic",
            line_items=line_items(amount_cents),
            currency="USD",
            plan=BillingPlan(**plan),
            context=CONTEXT,
            delegation=PROOF,
            idempotency_key=idempotency_key,
        )

    return _build


@pytest.fixture
def make_subscription(session_factory) -> Callable[..., Awaitable[str]]:
    """Insert an active monthly subscription directly and return its id.

    The current period is 30 days long and started 10 days before ``NOW``;
    the next redemption is due at period end.
    """

    async def _make(
        *,
        amount_cents: int = 1000,
        status: str = "active",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        next_redemption_at: datetime | None | str = "period_end",
        price_type: str = "recurring",
        term_length: int | None = None,
    ) -> str:
        start = period_start or NOW - timedelta(days=10)
        end = period_end or start + timedelta(days=30)
        due = end if next_redemption_at == "period_end" else next_redemption_at
        async with session_scope(session_factory) as session:
            wallet = await WalletRepository(session).get_or_create(
                workspace_id=WORKSPACE,
                customer_id=CUSTOMER,
                wallet_address=CONTEXT.customer_wallet_address,
                chain_id=CONTEXT.chain_id,
            )
            delegation = await DelegationRepository(session).get_or_create(
                workspace_id=WORKSPACE,
                delegate=PROOF.delegate,
                delegator=PROOF.delegator,
                authority=PROOF.authority,
                caveats=PROOF.caveats,
                salt=PROOF.salt,
                signature=PROOF.signature,
                expires_at=None,
            )
            sub = await SubscriptionRepository(session).create(
                workspace_id=WORKSPACE,
                customer_id=CUSTOMER,
                product_id="prod_basic",
                status=status,
                line_items_json=[item.model_dump(mode="json") for item in line_items(amount_cents)],
                total_amount_cents=amount_cents,
                currency="USD",
                price_type=price_type,
                interval_unit="month",
                interval_count=1,
                term_length=term_length,
                current_period_start=start,
                current_period_end=end,
                next_redemption_at=due,
                total_redemptions=1,
                total_amount_charged_cents=amount_cents,
                delegation_id=delegation.delegation_id,
                customer_wallet_id=wallet.wallet_id,
                settlement_context_json=CONTEXT.model_dump(mode="json"),
            )
            return sub.subscription_id

    return _make


@pytest.fixture
def make_dunning_config(session_factory) -> Callable[..., Awaitable[str]]:
    """Store a default dunning configuration for the test workspace."""

    async def _make(
        *,
        max_attempts: int = 3,
        retry_interval_days: list[int] | None = None,
        attempt_actions: dict[str, list[str]] | None = None,
        final_action: str = "mark_failed",
        grace_period_hours: int = 0,
    ) -> str:
        async with session_scope(session_factory) as session:
            row = await DunningConfigurationRepository(session).create(
                workspace_id=WORKSPACE,
                name="Default",
                max_attempts=max_attempts,
                retry_interval_days=retry_interval_days if retry_interval_days is not None else [3, 7, 14],
                attempt_actions=attempt_actions or {},
                final_action=final_action,
                grace_period_hours=grace_period_hours,
            )
            return row.configuration_id

    return _make
