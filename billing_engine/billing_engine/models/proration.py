"""Proration calculation results."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from billing_engine.models.subscription import ChangeType


class ProrationResult(BaseModel):
    """Outcome of a partial-period credit/charge computation.

    Amounts are unrounded floats in minor currency units; callers round only
    when a value is actually settled.
    """

    period_start: datetime
    period_end: datetime
    days_total: int = Field(..., ge=1)
    days_used: int = Field(..., ge=0)
    days_remaining: int = Field(..., ge=0)
    old_amount: float = Field(default=0.0, ge=0.0)
    new_amount: float = Field(default=0.0, ge=0.0)
    used_amount: float = Field(default=0.0, ge=0.0, description="Value of the consumed part of the period.")
    credit_amount: float = Field(default=0.0, ge=0.0)
    charge_amount: float = Field(default=0.0, ge=0.0)
    net_amount: float = Field(
        default=0.0,
        description="``charge - credit``; positive means an immediate charge is due.",
    )


class ScheduledEffect(BaseModel):
    """When a non-prorated change takes effect."""

    change_type: ChangeType
    effective_at: datetime
    proration_amount: float = 0.0
    message: str
