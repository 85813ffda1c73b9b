"""Results of subscription lifecycle changes and their previews."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from billing_engine.models.proration import ProrationResult
from billing_engine.models.settlement import SettlementResult
from billing_engine.models.subscription import ChangeType, SubscriptionStatus


class ChangeOutcome(BaseModel):
    """What a lifecycle operation did."""

    subscription_id: str
    change_type: ChangeType
    status: SubscriptionStatus = Field(..., description="Subscription status after the change.")
    change_id: str | None = None
    effective_at: datetime
    proration: ProrationResult | None = None
    proration_record_id: str | None = None
    charge: SettlementResult | None = Field(
        default=None,
        description="Immediate proration charge, when one was settled.",
    )
    charge_error: str | None = Field(
        default=None,
        description="Why the immediate charge failed; the change itself still stands.",
    )
    message: str = ""


class ChangePreview(BaseModel):
    """Read-only estimate of a change, shown before the customer confirms."""

    subscription_id: str
    change_type: ChangeType
    effective_at: datetime
    current_amount_cents: int
    new_amount_cents: int
    proration: ProrationResult | None = None
    immediate_charge_cents: int = Field(default=0, ge=0)
    explanation: str
