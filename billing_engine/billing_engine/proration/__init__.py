"""Pure proration and billing-period arithmetic."""

from billing_engine.proration.calculator import (
    add_billing_period,
    days_between,
    format_proration_explanation,
    pause_credit,
    schedule_downgrade,
    upgrade_proration,
)

__all__ = [
    "add_billing_period",
    "days_between",
    "format_proration_explanation",
    "pause_credit",
    "schedule_downgrade",
    "upgrade_proration",
]
