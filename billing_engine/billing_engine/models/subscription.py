"""Subscription domain models.

A subscription is a customer's commitment to pay for a product on a cadence.
Its billing plan (price type, interval, term length) is snapshotted onto the
subscription at creation so the lifecycle never has to consult product CRUD.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle state of a subscription."""

    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})
REDEEMABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE})


class PriceType(str, Enum):
    RECURRING = "recurring"
    ONE_TIME = "one_time"


class IntervalUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class ChangeType(str, Enum):
    """Kind of mutation a :class:`ScheduledChange` applies."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"


class ChangeStatus(str, Enum):
    """Lifecycle state of a scheduled change.

    ``scheduled -> processing -> completed | failed``.  A change that is
    still ``scheduled`` may instead be moved to ``cancelled``.
    """

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    """Append-only ledger entry types."""

    CREATED = "created"
    REDEEMED = "redeemed"
    COMPLETED = "completed"
    FAILED = "failed"
    UPGRADED = "upgraded"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    DOWNGRADED = "downgraded"
    CANCEL_SCHEDULED = "cancel_scheduled"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"
    PAUSED = "paused"
    RESUMED = "resumed"
    OVERDUE = "overdue"
    RECOVERED = "recovered"
    EXPIRED = "expired"


class ProrationType(str, Enum):
    UPGRADE_CREDIT = "upgrade_credit"
    DOWNGRADE_CREDIT = "downgrade_credit"
    PAUSE_CREDIT = "pause_credit"


class Initiator(str, Enum):
    CUSTOMER = "customer"
    MERCHANT = "merchant"
    SYSTEM = "system"


class LineItem(BaseModel):
    """One priced line of a subscription."""

    product_id: str = Field(..., min_length=1, description="Product this line bills for.")
    description: str = Field(default="", description="Human-readable label for invoices.")
    quantity: int = Field(default=1, ge=1, description="Units billed per period.")
    unit_amount_cents: int = Field(..., ge=0, description="Price per unit in minor currency units.")

    @property
    def amount_cents(self) -> int:
        return self.quantity * self.unit_amount_cents


def total_amount_cents(line_items: list[LineItem]) -> int:
    """Sum the per-period amount of *line_items*."""
    return sum(item.amount_cents for item in line_items)


class BillingPlan(BaseModel):
    """Billing cadence snapshotted from the product at subscription time."""

    price_type: PriceType = Field(default=PriceType.RECURRING)
    interval_unit: IntervalUnit = Field(default=IntervalUnit.MONTH)
    interval_count: int = Field(default=1, ge=1)
    term_length: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of redemptions; ``None`` means open-ended.",
    )

    @property
    def is_recurring(self) -> bool:
        return self.price_type == PriceType.RECURRING
