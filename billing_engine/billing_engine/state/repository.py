"""Repository classes providing access to the billing ledger.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``session_scope`` context manager).

Methods named ``claim_*`` / ``try_*`` are single conditional updates that
only succeed when the row is still in the expected prior state.  They return
``False`` when another worker won the race; callers skip the row.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    CustomerWalletTable,
    DelegationTable,
    DunningAttemptTable,
    DunningCampaignTable,
    DunningConfigurationTable,
    InvoiceTable,
    PaymentTable,
    ProrationRecordTable,
    ScheduledChangeTable,
    SettlementFailureTable,
    SubscriptionEventTable,
    SubscriptionStateChangeTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Return a fresh 32-character hex identifier."""
    return uuid.uuid4().hex


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Columns of the unique index used for conflict detection.

    Returns
    -------
    bool
        ``True`` if a row was inserted, ``False`` if it already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    await session.flush()
    return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Wallets & delegations
# ---------------------------------------------------------------------------


class WalletRepository:
    """Customer wallets and their last-used timestamps."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_or_create(
        self,
        *,
        workspace_id: str,
        customer_id: str,
        wallet_address: str,
        chain_id: int,
    ) -> CustomerWalletTable:
        stmt = select(CustomerWalletTable).where(
            CustomerWalletTable.workspace_id == workspace_id,
            CustomerWalletTable.wallet_address == wallet_address,
            CustomerWalletTable.chain_id == chain_id,
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is not None:
            return row

        row = CustomerWalletTable(
            wallet_id=new_id(),
            workspace_id=workspace_id,
            customer_id=customer_id,
            wallet_address=wallet_address,
            chain_id=chain_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, wallet_id: str) -> CustomerWalletTable | None:
        return await self._session.get(CustomerWalletTable, wallet_id)

    async def touch(self, wallet_id: str, used_at: datetime) -> None:
        """Record wallet usage.  Setting a timestamp is naturally idempotent."""
        stmt = (
            update(CustomerWalletTable)
            .where(CustomerWalletTable.wallet_id == wallet_id)
            .values(last_used_at=used_at)
        )
        await self._session.execute(stmt)
        await self._session.flush()


class DelegationRepository:
    """Stored delegation proofs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_or_create(
        self,
        *,
        workspace_id: str,
        delegate: str,
        delegator: str,
        authority: str,
        caveats: list[dict[str, Any]],
        salt: str,
        signature: str,
        expires_at: datetime | None,
    ) -> DelegationTable:
        """Return the delegation with this signature, creating it on first use."""
        stmt = select(DelegationTable).where(
            DelegationTable.workspace_id == workspace_id,
            DelegationTable.signature == signature,
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is not None:
            return row

        row = DelegationTable(
            delegation_id=new_id(),
            workspace_id=workspace_id,
            delegate=delegate,
            delegator=delegator,
            authority=authority,
            caveats_json=caveats,
            salt=salt,
            signature=signature,
            expires_at=expires_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, delegation_id: str) -> DelegationTable | None:
        return await self._session.get(DelegationTable, delegation_id)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """CRUD and claim operations for the ``subscriptions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> SubscriptionTable:
        values.setdefault("subscription_id", new_id())
        row = SubscriptionTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, subscription_id: str, *, for_update: bool = False) -> SubscriptionTable | None:
        """Fetch a subscription, optionally locking the row (PostgreSQL only)."""
        stmt = select(SubscriptionTable).where(SubscriptionTable.subscription_id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_workspace(
        self,
        workspace_id: str,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SubscriptionTable]:
        stmt = select(SubscriptionTable).where(SubscriptionTable.workspace_id == workspace_id)
        if status is not None:
            stmt = stmt.where(SubscriptionTable.status == status)
        stmt = stmt.order_by(SubscriptionTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_due(self, now: datetime, limit: int = 100) -> list[SubscriptionTable]:
        """Recurring active/overdue subscriptions whose next redemption has arrived.

        Subscriptions whose scheduled cancellation falls at or before the due
        time are excluded; the cancellation wins.
        """
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.status.in_(("active", "overdue")),
                SubscriptionTable.price_type == "recurring",
                SubscriptionTable.next_redemption_at.is_not(None),
                SubscriptionTable.next_redemption_at <= now,
                or_(
                    SubscriptionTable.cancel_at.is_(None),
                    SubscriptionTable.cancel_at > SubscriptionTable.next_redemption_at,
                ),
            )
            .order_by(SubscriptionTable.next_redemption_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim_redemption(
        self,
        subscription_id: str,
        *,
        expected_next_redemption: datetime,
        now: datetime,
        claim_ttl_seconds: int,
    ) -> bool:
        """Take the redemption claim if it is free (or stale) and the due time is unchanged."""
        stale_before = now - timedelta(seconds=claim_ttl_seconds)
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.subscription_id == subscription_id,
                SubscriptionTable.next_redemption_at == expected_next_redemption,
                or_(
                    SubscriptionTable.redemption_claimed_at.is_(None),
                    SubscriptionTable.redemption_claimed_at < stale_before,
                ),
            )
            .values(redemption_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release_redemption_claim(self, subscription_id: str) -> None:
        stmt = (
            update(SubscriptionTable)
            .where(SubscriptionTable.subscription_id == subscription_id)
            .values(redemption_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self, row: SubscriptionTable) -> None:
        await self._session.delete(row)
        await self._session.flush()


class SubscriptionEventRepository:
    """Append-only subscription ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        *,
        workspace_id: str,
        subscription_id: str,
        event_type: str,
        occurred_at: datetime,
        amount_cents: int = 0,
        transaction_hash: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionEventTable:
        row = SubscriptionEventTable(
            event_id=new_id(),
            workspace_id=workspace_id,
            subscription_id=subscription_id,
            event_type=event_type,
            transaction_hash=transaction_hash,
            amount_cents=amount_cents,
            occurred_at=occurred_at,
            metadata_json=metadata or {},
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def record_settlement(
        self,
        *,
        workspace_id: str,
        subscription_id: str,
        event_type: str,
        redemption_key: str | None,
        transaction_hash: str,
        amount_cents: int,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionEventTable:
        """Insert a settlement event once per ``(subscription, type, tx)``.

        Returns the stored event whether it was inserted now or earlier.
        """
        await _dialect_insert_ignore(
            self._session,
            SubscriptionEventTable,
            values={
                "event_id": new_id(),
                "workspace_id": workspace_id,
                "subscription_id": subscription_id,
                "event_type": event_type,
                "transaction_hash": transaction_hash,
                "redemption_key": redemption_key,
                "amount_cents": amount_cents,
                "occurred_at": occurred_at,
                "metadata_json": metadata or {},
            },
            index_elements=["subscription_id", "event_type", "transaction_hash"],
        )
        stmt = select(SubscriptionEventTable).where(
            SubscriptionEventTable.subscription_id == subscription_id,
            SubscriptionEventTable.event_type == event_type,
            SubscriptionEventTable.transaction_hash == transaction_hash,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def get_by_redemption_key(self, redemption_key: str) -> SubscriptionEventTable | None:
        stmt = select(SubscriptionEventTable).where(SubscriptionEventTable.redemption_key == redemption_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        event_type: str | None = None,
    ) -> list[SubscriptionEventTable]:
        stmt = select(SubscriptionEventTable).where(SubscriptionEventTable.subscription_id == subscription_id)
        if event_type is not None:
            stmt = stmt.where(SubscriptionEventTable.event_type == event_type)
        stmt = stmt.order_by(SubscriptionEventTable.occurred_at.asc(), SubscriptionEventTable.event_id.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class StateChangeRepository:
    """Compliance audit rows for status and amount changes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        subscription_id: str,
        from_status: str | None,
        to_status: str,
        from_amount_cents: int | None = None,
        to_amount_cents: int | None = None,
        line_items_snapshot: list[dict[str, Any]] | None = None,
        reason: str | None = None,
        scheduled_change_id: str | None = None,
        initiated_by: str = "system",
        created_at: datetime | None = None,
    ) -> SubscriptionStateChangeTable:
        row = SubscriptionStateChangeTable(
            subscription_id=subscription_id,
            from_status=from_status,
            to_status=to_status,
            from_amount_cents=from_amount_cents,
            to_amount_cents=to_amount_cents,
            line_items_snapshot=line_items_snapshot,
            reason=reason,
            scheduled_change_id=scheduled_change_id,
            initiated_by=initiated_by,
        )
        if created_at is not None:
            row.created_at = created_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_subscription(self, subscription_id: str) -> list[SubscriptionStateChangeTable]:
        stmt = (
            select(SubscriptionStateChangeTable)
            .where(SubscriptionStateChangeTable.subscription_id == subscription_id)
            .order_by(SubscriptionStateChangeTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Scheduled changes & prorations
# ---------------------------------------------------------------------------


class ScheduledChangeRepository:
    """Pending subscription mutations and their status gate."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        workspace_id: str,
        subscription_id: str,
        change_type: str,
        scheduled_for: datetime,
        status: str = "scheduled",
        from_line_items: list[dict[str, Any]] | None = None,
        to_line_items: list[dict[str, Any]] | None = None,
        proration_amount: float | None = None,
        proration: dict[str, Any] | None = None,
        reason: str | None = None,
        initiated_by: str = "customer",
        metadata: dict[str, Any] | None = None,
        processed_at: datetime | None = None,
    ) -> ScheduledChangeTable:
        row = ScheduledChangeTable(
            change_id=new_id(),
            workspace_id=workspace_id,
            subscription_id=subscription_id,
            change_type=change_type,
            scheduled_for=scheduled_for,
            status=status,
            from_line_items_json=from_line_items,
            to_line_items_json=to_line_items,
            proration_amount=proration_amount,
            proration_json=proration,
            reason=reason,
            initiated_by=initiated_by,
            metadata_json=metadata or {},
            processed_at=processed_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, change_id: str) -> ScheduledChangeTable | None:
        stmt = (
            select(ScheduledChangeTable)
            .where(ScheduledChangeTable.change_id == change_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_due(self, now: datetime, limit: int = 100) -> list[ScheduledChangeTable]:
        stmt = (
            select(ScheduledChangeTable)
            .where(
                ScheduledChangeTable.status == "scheduled",
                ScheduledChangeTable.scheduled_for <= now,
            )
            .order_by(ScheduledChangeTable.scheduled_for.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        change_type: str | None = None,
        status: str | None = None,
    ) -> list[ScheduledChangeTable]:
        stmt = select(ScheduledChangeTable).where(ScheduledChangeTable.subscription_id == subscription_id)
        if change_type is not None:
            stmt = stmt.where(ScheduledChangeTable.change_type == change_type)
        if status is not None:
            stmt = stmt.where(ScheduledChangeTable.status == status)
        stmt = stmt.order_by(ScheduledChangeTable.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _transition(self, change_id: str, from_status: str, values: dict[str, Any]) -> bool:
        stmt = (
            update(ScheduledChangeTable)
            .where(
                ScheduledChangeTable.change_id == change_id,
                ScheduledChangeTable.status == from_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def claim(self, change_id: str) -> bool:
        """``scheduled -> processing``; ``False`` if another sweep got there first."""
        return await self._transition(change_id, "scheduled", {"status": "processing"})

    async def mark_completed(self, change_id: str, processed_at: datetime) -> bool:
        return await self._transition(
            change_id,
            "processing",
            {"status": "completed", "processed_at": processed_at, "error_message": None},
        )

    async def mark_failed(self, change_id: str, error_message: str, processed_at: datetime) -> bool:
        return await self._transition(
            change_id,
            "processing",
            {"status": "failed", "processed_at": processed_at, "error_message": error_message[:2000]},
        )

    async def try_cancel(self, change_id: str) -> bool:
        """``scheduled -> cancelled``; fails once the change is processing."""
        return await self._transition(change_id, "scheduled", {"status": "cancelled"})


class ProrationRecordRepository:
    """Proration audit rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        subscription_id: str,
        proration_type: str,
        period_start: datetime,
        period_end: datetime,
        days_total: int,
        days_used: int,
        days_remaining: int,
        original_amount: float,
        used_amount: float,
        credit_amount: float,
        charge_amount: float,
        net_amount: float,
        scheduled_change_id: str | None = None,
    ) -> ProrationRecordTable:
        row = ProrationRecordTable(
            record_id=new_id(),
            subscription_id=subscription_id,
            scheduled_change_id=scheduled_change_id,
            proration_type=proration_type,
            period_start=period_start,
            period_end=period_end,
            days_total=days_total,
            days_used=days_used,
            days_remaining=days_remaining,
            original_amount=original_amount,
            used_amount=used_amount,
            credit_amount=credit_amount,
            charge_amount=charge_amount,
            net_amount=net_amount,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_subscription(self, subscription_id: str) -> list[ProrationRecordTable]:
        stmt = (
            select(ProrationRecordTable)
            .where(ProrationRecordTable.subscription_id == subscription_id)
            .order_by(ProrationRecordTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_for_change(self, scheduled_change_id: str) -> ProrationRecordTable | None:
        stmt = select(ProrationRecordTable).where(ProrationRecordTable.scheduled_change_id == scheduled_change_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def link_payment(self, record_id: str, payment_id: str) -> None:
        stmt = (
            update(ProrationRecordTable)
            .where(
                ProrationRecordTable.record_id == record_id,
                ProrationRecordTable.applied_to_payment_id.is_(None),
            )
            .values(applied_to_payment_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def link_invoice_for_payment(self, payment_id: str, invoice_id: str) -> None:
        stmt = (
            update(ProrationRecordTable)
            .where(ProrationRecordTable.applied_to_payment_id == payment_id)
            .values(applied_to_invoice_id=invoice_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Payments & invoices
# ---------------------------------------------------------------------------


class PaymentRepository:
    """Settled payments, keyed by transaction hash."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        workspace_id: str,
        subscription_id: str,
        subscription_event_id: str,
        customer_id: str,
        kind: str,
        amount_cents: int,
        token_amount: int,
        currency: str,
        transaction_hash: str,
        chain_id: int,
        period_start: datetime,
        period_end: datetime,
        created_at: datetime,
    ) -> PaymentTable:
        """Insert the payment for *transaction_hash* once; return the stored row."""
        await _dialect_insert_ignore(
            self._session,
            PaymentTable,
            values={
                "payment_id": new_id(),
                "workspace_id": workspace_id,
                "subscription_id": subscription_id,
                "subscription_event_id": subscription_event_id,
                "customer_id": customer_id,
                "kind": kind,
                "amount_cents": amount_cents,
                "token_amount": token_amount,
                "currency": currency,
                "transaction_hash": transaction_hash,
                "chain_id": chain_id,
                "status": "completed",
                "period_start": period_start,
                "period_end": period_end,
                "created_at": created_at,
            },
            index_elements=["transaction_hash"],
        )
        row = await self.get_by_transaction(transaction_hash)
        assert row is not None  # noqa: S101
        return row

    async def get(self, payment_id: str) -> PaymentTable | None:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_transaction(self, transaction_hash: str) -> PaymentTable | None:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.transaction_hash == transaction_hash)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_subscription(self, subscription_id: str) -> list[PaymentTable]:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.subscription_id == subscription_id)
            .order_by(PaymentTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_uninvoiced(self, created_before: datetime, limit: int = 100) -> list[PaymentTable]:
        """Settled payments that phase 2 never linked to an invoice."""
        stmt = (
            select(PaymentTable)
            .where(
                PaymentTable.invoice_id.is_(None),
                PaymentTable.status == "completed",
                PaymentTable.created_at <= created_before,
            )
            .order_by(PaymentTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def link_invoice(self, payment_id: str, invoice_id: str) -> None:
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.payment_id == payment_id)
            .values(invoice_id=invoice_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


class InvoiceRepository:
    """Invoice records created in phase 2 of a settlement."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> InvoiceTable:
        values.setdefault("invoice_id", new_id())
        row = InvoiceTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        return await self._session.get(InvoiceTable, invoice_id)

    async def get_for_payment(self, payment_id: str) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.payment_id == payment_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_period(
        self,
        subscription_id: str,
        kind: str,
        period_start: datetime,
        period_end: datetime,
    ) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(
            InvoiceTable.subscription_id == subscription_id,
            InvoiceTable.kind == kind,
            InvoiceTable.period_start == period_start,
            InvoiceTable.period_end == period_end,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_workspace(self, workspace_id: str) -> int:
        stmt = select(func.count()).select_from(InvoiceTable).where(InvoiceTable.workspace_id == workspace_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_for_subscription(self, subscription_id: str) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.subscription_id == subscription_id)
            .order_by(InvoiceTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Settlement failures
# ---------------------------------------------------------------------------


class SettlementFailureRepository:
    """Failure attempts and the bookkeeping reconciliation queue."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        workspace_id: str,
        subscription_id: str | None,
        redemption_key: str,
        kind: str,
        error_kind: str,
        error_message: str,
        wallet_address: str | None,
        transaction_hash: str | None = None,
        timed_out: bool = False,
        completed_steps: list[str] | None = None,
        failed_step: str | None = None,
        request: dict[str, Any] | None = None,
    ) -> SettlementFailureTable:
        row = SettlementFailureTable(
            failure_id=new_id(),
            workspace_id=workspace_id,
            subscription_id=subscription_id,
            redemption_key=redemption_key,
            kind=kind,
            error_kind=error_kind,
            error_message=error_message[:4000],
            wallet_address=wallet_address,
            transaction_hash=transaction_hash,
            timed_out=timed_out,
            completed_steps_json=completed_steps or [],
            failed_step=failed_step,
            request_json=request or {},
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, failure_id: str) -> SettlementFailureTable | None:
        return await self._session.get(SettlementFailureTable, failure_id)

    async def get_open_bookkeeping(self, redemption_key: str) -> SettlementFailureTable | None:
        """Unresolved bookkeeping failure for *redemption_key*, if any."""
        stmt = (
            select(SettlementFailureTable)
            .where(
                SettlementFailureTable.redemption_key == redemption_key,
                SettlementFailureTable.error_kind == "bookkeeping_failure",
                SettlementFailureTable.resolved == False,  # noqa: E712
            )
            .order_by(SettlementFailureTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_open_timeout(self, redemption_key: str) -> bool:
        stmt = (
            select(func.count())
            .select_from(SettlementFailureTable)
            .where(
                SettlementFailureTable.redemption_key == redemption_key,
                SettlementFailureTable.timed_out == True,  # noqa: E712
                SettlementFailureTable.resolved == False,  # noqa: E712
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def list_unresolved(
        self,
        *,
        error_kind: str | None = None,
        timed_out: bool | None = None,
        limit: int = 100,
    ) -> list[SettlementFailureTable]:
        stmt = select(SettlementFailureTable).where(SettlementFailureTable.resolved == False)  # noqa: E712
        if error_kind is not None:
            stmt = stmt.where(SettlementFailureTable.error_kind == error_kind)
        if timed_out is not None:
            stmt = stmt.where(SettlementFailureTable.timed_out == timed_out)
        stmt = stmt.order_by(SettlementFailureTable.created_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve_for_key(self, redemption_key: str, resolved_at: datetime) -> int:
        """Mark every open failure of *redemption_key* resolved."""
        stmt = (
            update(SettlementFailureTable)
            .where(
                SettlementFailureTable.redemption_key == redemption_key,
                SettlementFailureTable.resolved == False,  # noqa: E712
            )
            .values(resolved=True, resolved_at=resolved_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# Dunning
# ---------------------------------------------------------------------------


class DunningConfigurationRepository:
    """Stored dunning policies."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        workspace_id: str,
        name: str,
        max_attempts: int,
        retry_interval_days: list[int],
        attempt_actions: dict[str, list[str]],
        final_action: str,
        grace_period_hours: int = 0,
        is_default: bool = True,
    ) -> DunningConfigurationTable:
        row = DunningConfigurationTable(
            configuration_id=new_id(),
            workspace_id=workspace_id,
            name=name,
            is_default=is_default,
            max_attempts=max_attempts,
            retry_interval_days_json=retry_interval_days,
            attempt_actions_json=attempt_actions,
            final_action=final_action,
            grace_period_hours=grace_period_hours,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, configuration_id: str) -> DunningConfigurationTable | None:
        return await self._session.get(DunningConfigurationTable, configuration_id)

    async def get_default(self, workspace_id: str) -> DunningConfigurationTable | None:
        stmt = (
            select(DunningConfigurationTable)
            .where(
                DunningConfigurationTable.workspace_id == workspace_id,
                DunningConfigurationTable.is_default == True,  # noqa: E712
            )
            .order_by(DunningConfigurationTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class DunningCampaignRepository:
    """Campaign rows and their attempt-counter gate."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> DunningCampaignTable:
        values.setdefault("campaign_id", new_id())
        row = DunningCampaignTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, campaign_id: str) -> DunningCampaignTable | None:
        stmt = (
            select(DunningCampaignTable)
            .where(DunningCampaignTable.campaign_id == campaign_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_for_subscription(self, subscription_id: str) -> DunningCampaignTable | None:
        stmt = select(DunningCampaignTable).where(
            DunningCampaignTable.subscription_id == subscription_id,
            DunningCampaignTable.status == "active",
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get_active_for_redemption_key(self, redemption_key: str) -> DunningCampaignTable | None:
        """Active campaign for a first payment that has no subscription yet."""
        stmt = select(DunningCampaignTable).where(
            DunningCampaignTable.redemption_key == redemption_key,
            DunningCampaignTable.status == "active",
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_due(self, now: datetime, limit: int = 100) -> list[DunningCampaignTable]:
        stmt = (
            select(DunningCampaignTable)
            .where(
                DunningCampaignTable.status == "active",
                DunningCampaignTable.next_retry_at.is_not(None),
                DunningCampaignTable.next_retry_at <= now,
            )
            .order_by(DunningCampaignTable.next_retry_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _guarded_update(
        self,
        campaign_id: str,
        values: dict[str, Any],
        expected_attempt: int | None = None,
    ) -> bool:
        stmt = update(DunningCampaignTable).where(
            DunningCampaignTable.campaign_id == campaign_id,
            DunningCampaignTable.status == "active",
        )
        if expected_attempt is not None:
            stmt = stmt.where(DunningCampaignTable.current_attempt == expected_attempt)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def claim_attempt(self, campaign_id: str, *, expected_attempt: int, now: datetime) -> bool:
        """Increment the attempt counter from *expected_attempt*; ``False`` on a lost race."""
        return await self._guarded_update(
            campaign_id,
            {"current_attempt": expected_attempt + 1, "last_retry_at": now},
            expected_attempt=expected_attempt,
        )

    async def try_fail(self, campaign_id: str, *, expected_attempt: int, now: datetime) -> bool:
        """``active -> failed`` once attempts are exhausted."""
        return await self._guarded_update(
            campaign_id,
            {"status": "failed", "completed_at": now, "next_retry_at": None},
            expected_attempt=expected_attempt,
        )

    async def try_recover(
        self,
        campaign_id: str,
        *,
        amount_cents: int,
        now: datetime,
        subscription_id: str | None = None,
    ) -> bool:
        """``active -> recovered``, optionally linking the subscription the payment created."""
        values: dict[str, Any] = {
            "status": "recovered",
            "recovered_at": now,
            "recovered_amount_cents": amount_cents,
            "completed_at": now,
            "next_retry_at": None,
        }
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        return await self._guarded_update(campaign_id, values)

    async def schedule_next(self, campaign_id: str, next_retry_at: datetime | None) -> None:
        await self._guarded_update(campaign_id, {"next_retry_at": next_retry_at})

    async def set_final_action(self, campaign_id: str, final_action: str) -> None:
        stmt = (
            update(DunningCampaignTable)
            .where(DunningCampaignTable.campaign_id == campaign_id)
            .values(final_action_taken=final_action)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def stats(self, workspace_id: str) -> dict[str, Any]:
        """Campaign counts by status and recovered amount for *workspace_id*."""
        stmt = (
            select(
                DunningCampaignTable.status,
                func.count(),
                func.coalesce(func.sum(DunningCampaignTable.recovered_amount_cents), 0),
            )
            .where(DunningCampaignTable.workspace_id == workspace_id)
            .group_by(DunningCampaignTable.status)
        )
        result = await self._session.execute(stmt)
        counts = {"active": 0, "recovered": 0, "failed": 0}
        recovered_cents = 0
        for status, count, recovered in result.all():
            counts[status] = int(count)
            recovered_cents += int(recovered or 0)
        total = sum(counts.values())
        finished = counts["recovered"] + counts["failed"]
        return {
            "total": total,
            **counts,
            "recovered_amount_cents": recovered_cents,
            "recovery_rate": (counts["recovered"] / finished) if finished else 0.0,
        }


class DunningAttemptRepository:
    """Append-only attempt log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def start(
        self,
        *,
        campaign_id: str,
        attempt_number: int,
        action: str,
        template: str | None = None,
    ) -> DunningAttemptTable:
        row = DunningAttemptTable(
            attempt_id=new_id(),
            campaign_id=campaign_id,
            attempt_number=attempt_number,
            action=action,
            status="pending",
            template=template,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, attempt_id: str) -> DunningAttemptTable | None:
        return await self._session.get(DunningAttemptTable, attempt_id)

    async def finish(
        self,
        row: DunningAttemptTable,
        *,
        success: bool,
        completed_at: datetime,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> DunningAttemptTable:
        row.status = "success" if success else "failed"
        row.completed_at = completed_at
        row.transaction_hash = transaction_hash
        row.error_message = error_message[:2000] if error_message else None
        await self._session.flush()
        return row

    async def list_for_campaign(self, campaign_id: str) -> list[DunningAttemptTable]:
        stmt = (
            select(DunningAttemptTable)
            .where(DunningAttemptTable.campaign_id == campaign_id)
            .order_by(DunningAttemptTable.attempt_number.asc(), DunningAttemptTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
