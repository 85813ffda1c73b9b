"""SQLAlchemy 2.0 ORM table definitions for the billing ledger.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in local mode and for
the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain JSON
# (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Proration figures are stored unrounded and read back as floats.
_Amount = Numeric(20, 6, asdecimal=False)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC timestamps on every dialect.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to UTC before binding and tagged as UTC
    when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Wallets & delegations
# ---------------------------------------------------------------------------


class CustomerWalletTable(Base):
    """Customer wallet addresses used as the source of delegated payments."""

    __tablename__ = "customer_wallets"

    wallet_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "wallet_address", "chain_id", name="uq_customer_wallets_address"),
        Index("ix_customer_wallets_customer", "workspace_id", "customer_id"),
    )


class DelegationTable(Base):
    """Stored delegation proofs referenced by subscriptions."""

    __tablename__ = "delegations"

    delegation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    delegate: Mapped[str] = mapped_column(String(128), nullable=False)
    delegator: Mapped[str] = mapped_column(String(128), nullable=False)
    authority: Mapped[str] = mapped_column(String(256), nullable=False)
    caveats_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)
    salt: Mapped[str] = mapped_column(String(256), nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_delegations_workspace_delegator", "workspace_id", "delegator"),)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """A customer's commitment to pay for a product on a cadence.

    ``redemption_claimed_at`` is the conditional-update claim taken by the
    due-redemption sweep; ``last_redemption_tx`` makes the redemption counter
    increment idempotent per transaction hash.
    """

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    line_items_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    price_type: Mapped[str] = mapped_column(String(16), nullable=False, default="recurring")
    interval_unit: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    term_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_redemption_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    pause_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_redemptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_charged_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    delegation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_wallet_id: Mapped[str] = mapped_column(String(64), nullable=False)
    settlement_context_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    redemption_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_redemption_tx: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','paused','suspended','overdue','cancelled','expired','completed','failed')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("price_type IN ('recurring','one_time')", name="ck_subscriptions_price_type"),
        CheckConstraint("current_period_start < current_period_end", name="ck_subscriptions_period"),
        Index("ix_subscriptions_workspace_status", "workspace_id", "status"),
        Index("ix_subscriptions_due", "status", "next_redemption_at"),
        Index("ix_subscriptions_customer", "workspace_id", "customer_id"),
    )


class SubscriptionEventTable(Base):
    """Append-only ledger of subscription events.

    ``redemption_key`` is unique so one logical redemption can never be
    recorded twice, whatever transaction hash it arrives with.
    """

    __tablename__ = "subscription_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redemption_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "event_type",
            "transaction_hash",
            name="uq_subscription_events_tx",
        ),
        Index("ix_subscription_events_subscription", "subscription_id", "occurred_at"),
        Index("ix_subscription_events_workspace_type", "workspace_id", "event_type"),
    )


class SubscriptionStateChangeTable(Base):
    """Compliance audit of status and amount changes."""

    __tablename__ = "subscription_state_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    from_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    to_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    line_items_snapshot: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_change_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(32), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_state_changes_subscription", "subscription_id", "created_at"),)


class ScheduledChangeTable(Base):
    """Pending subscription mutations resolved by the scheduled-change sweep."""

    __tablename__ = "scheduled_changes"

    change_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    from_line_items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    to_line_items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    proration_amount: Mapped[float | None] = mapped_column(_Amount, nullable=True)
    proration_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(32), nullable=False, default="customer")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "change_type IN ('upgrade','downgrade','cancel','pause','resume')",
            name="ck_scheduled_changes_type",
        ),
        CheckConstraint(
            "status IN ('scheduled','processing','completed','failed','cancelled')",
            name="ck_scheduled_changes_status",
        ),
        Index("ix_scheduled_changes_due", "status", "scheduled_for"),
        Index("ix_scheduled_changes_subscription", "subscription_id", "status"),
    )


class ProrationRecordTable(Base):
    """Audit of a proration computation and what consumed it."""

    __tablename__ = "proration_records"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_change_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    proration_type: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    days_total: Mapped[int] = mapped_column(Integer, nullable=False)
    days_used: Mapped[int] = mapped_column(Integer, nullable=False)
    days_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    original_amount: Mapped[float] = mapped_column(_Amount, nullable=False)
    used_amount: Mapped[float] = mapped_column(_Amount, nullable=False)
    credit_amount: Mapped[float] = mapped_column(_Amount, nullable=False)
    charge_amount: Mapped[float] = mapped_column(_Amount, nullable=False, default=0.0)
    net_amount: Mapped[float] = mapped_column(_Amount, nullable=False)
    applied_to_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    applied_to_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "proration_type IN ('upgrade_credit','downgrade_credit','pause_credit')",
            name="ck_proration_records_type",
        ),
        Index("ix_proration_records_subscription", "subscription_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Payments & invoices
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """Settled payments derived from ``redeemed`` events."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="recurring")
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("kind IN ('initial','recurring','proration')", name="ck_payments_kind"),
        Index("ix_payments_subscription", "subscription_id", "created_at"),
        Index("ix_payments_uninvoiced", "invoice_id", "created_at"),
    )


class InvoiceTable(Base):
    """One invoice per settled payment.

    Each (subscription, period, kind) pair is invoiced at most once; a second
    attempt for the same period is a conflict.
    """

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="recurring")
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    line_items_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False)
    tax_breakdown_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('draft','open','paid','void')", name="ck_invoices_status"),
        UniqueConstraint(
            "subscription_id",
            "kind",
            "period_start",
            "period_end",
            name="uq_invoices_subscription_period",
        ),
        Index("ix_invoices_workspace_number", "workspace_id", "invoice_number", unique=True),
        Index("ix_invoices_workspace_created", "workspace_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Settlement failures
# ---------------------------------------------------------------------------


class SettlementFailureTable(Base):
    """Structured record of a failed settlement attempt.

    Rows with ``error_kind = 'bookkeeping_failure'`` carry the transaction
    hash of a settlement that succeeded on-chain and form the reconciliation
    queue; they are never resubmitted.
    """

    __tablename__ = "settlement_failures"

    failure_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    redemption_key: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    error_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timed_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_steps_json: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    failed_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    request_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("kind IN ('initial','recurring','proration')", name="ck_settlement_failures_kind"),
        Index("ix_settlement_failures_key", "redemption_key", "resolved"),
        Index("ix_settlement_failures_open", "error_kind", "resolved", "created_at"),
    )


# ---------------------------------------------------------------------------
# Dunning
# ---------------------------------------------------------------------------


class DunningConfigurationTable(Base):
    """Per-workspace dunning policy as stored JSON; validated on load."""

    __tablename__ = "dunning_configurations"

    configuration_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_interval_days_json: Mapped[list[int]] = mapped_column(_JsonType, nullable=False)
    attempt_actions_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    final_action: Mapped[str] = mapped_column(String(32), nullable=False, default="mark_failed")
    grace_period_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_dunning_configurations_workspace", "workspace_id", "is_default"),)


class DunningCampaignTable(Base):
    """One recovery effort for one failed payment."""

    __tablename__ = "dunning_campaigns"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    configuration_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_request_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    redemption_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    current_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    recovered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    recovered_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    final_action_taken: Mapped[str | None] = mapped_column(String(32), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('active','recovered','failed')", name="ck_dunning_campaigns_status"),
        Index("ix_dunning_campaigns_due", "status", "next_retry_at"),
        Index("ix_dunning_campaigns_subscription", "subscription_id", "status"),
        Index("ix_dunning_campaigns_redemption_key", "redemption_key", "status"),
        Index("ix_dunning_campaigns_workspace", "workspace_id", "status"),
    )


class DunningAttemptTable(Base):
    """One executed action within a campaign.  Append-only."""

    __tablename__ = "dunning_attempts"

    attempt_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    template: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending','success','failed')", name="ck_dunning_attempts_status"),
        CheckConstraint(
            "action IN ('retry_payment','email','in_app')",
            name="ck_dunning_attempts_action",
        ),
        Index("ix_dunning_attempts_campaign", "campaign_id", "attempt_number"),
    )
