"""Proration arithmetic for mid-cycle subscription changes.

All functions here are pure: they take period bounds, amounts and a
reference time and return a :class:`ProrationResult`.  Nothing is rounded;
settled amounts are rounded by the caller at the moment money moves.

Day counting uses whole calendar days between UTC-midnight-normalised dates.
A zero-length period (start and end on the same calendar day) counts as one
day, so ``days_total`` is always at least 1 and every call site shares the
same policy.
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, timedelta

from billing_engine.errors import BillingValidationError
from billing_engine.models.proration import ProrationResult, ScheduledEffect
from billing_engine.models.subscription import ChangeType, IntervalUnit

_UNIT_ALIASES: dict[str, IntervalUnit] = {
    "day": IntervalUnit.DAY,
    "daily": IntervalUnit.DAY,
    "week": IntervalUnit.WEEK,
    "weekly": IntervalUnit.WEEK,
    "month": IntervalUnit.MONTH,
    "monthly": IntervalUnit.MONTH,
    "year": IntervalUnit.YEAR,
    "yearly": IntervalUnit.YEAR,
}


def _as_utc_date(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(UTC).date()


def days_between(start: datetime, end: datetime) -> int:
    """Whole calendar days from *start* to *end* (negative if *end* is earlier)."""
    return (_as_utc_date(end) - _as_utc_date(start)).days


def _period_days(period_start: datetime, period_end: datetime, now: datetime) -> tuple[int, int, int]:
    """Return ``(total, used, remaining)`` with ``used`` clamped into the period."""
    total = max(1, days_between(period_start, period_end))
    used = min(max(days_between(period_start, now), 0), total)
    return total, used, total - used


def _check_amounts(**amounts: float) -> None:
    for name, value in amounts.items():
        if value < 0:
            raise BillingValidationError(f"{name} must not be negative (got {value})")


# ---------------------------------------------------------------------------
# Prorations
# ---------------------------------------------------------------------------


def upgrade_proration(
    period_start: datetime,
    period_end: datetime,
    old_amount: float,
    new_amount: float,
    now: datetime,
) -> ProrationResult:
    """Credit the unused part of the old price and charge the new price for it.

    Parameters
    ----------
    period_start, period_end:
        Bounds of the current billing period.
    old_amount, new_amount:
        Per-period prices before and after the change, in minor units.
    now:
        Moment the change takes effect.

    Returns
    -------
    ProrationResult
        ``net_amount = charge_amount - credit_amount``; a value at or below
        zero means no immediate charge is due.
    """
    _check_amounts(old_amount=old_amount, new_amount=new_amount)
    total, used, remaining = _period_days(period_start, period_end, now)

    credit = old_amount * remaining / total
    charge = new_amount * remaining / total
    return ProrationResult(
        period_start=period_start,
        period_end=period_end,
        days_total=total,
        days_used=used,
        days_remaining=remaining,
        old_amount=old_amount,
        new_amount=new_amount,
        used_amount=old_amount * used / total,
        credit_amount=credit,
        charge_amount=charge,
        net_amount=charge - credit,
    )


def pause_credit(
    period_start: datetime,
    period_end: datetime,
    amount: float,
    now: datetime,
) -> ProrationResult:
    """Credit for the days of the current period the customer will not use.

    Pausing after the period has ended yields a zero credit.
    """
    _check_amounts(amount=amount)
    total, used, remaining = _period_days(period_start, period_end, now)

    credit = amount * remaining / total
    return ProrationResult(
        period_start=period_start,
        period_end=period_end,
        days_total=total,
        days_used=used,
        days_remaining=remaining,
        old_amount=amount,
        used_amount=amount * used / total,
        credit_amount=credit,
        net_amount=-credit,
    )


def schedule_downgrade(period_end: datetime, change_type: ChangeType | str) -> ScheduledEffect:
    """Downgrades and cancellations take effect at period end and never prorate."""
    change_type = ChangeType(change_type)
    day = _as_utc_date(period_end).isoformat()
    if change_type == ChangeType.DOWNGRADE:
        message = f"Your plan will change at the end of the current billing period ({day})."
    elif change_type == ChangeType.CANCEL:
        message = f"Your subscription will be cancelled at the end of the current billing period ({day})."
    else:
        raise BillingValidationError(f"'{change_type.value}' changes are not deferred to period end")
    return ScheduledEffect(change_type=change_type, effective_at=period_end, message=message)


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------


def normalize_interval_unit(unit: IntervalUnit | str) -> IntervalUnit:
    if isinstance(unit, IntervalUnit):
        return unit
    try:
        return _UNIT_ALIASES[unit.strip().lower()]
    except KeyError:
        raise BillingValidationError(f"Unknown billing interval unit: {unit!r}") from None


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, interval_unit: IntervalUnit | str, count: int = 1) -> datetime:
    """Return the boundary *count* intervals after *start*.

    Month and year steps are calendar-aware and clamp to the last day of the
    target month, e.g. Jan 31 + 1 month is Feb 28 (or 29).
    """
    if count < 1:
        raise BillingValidationError(f"Interval count must be at least 1 (got {count})")
    unit = normalize_interval_unit(interval_unit)
    if unit == IntervalUnit.DAY:
        return start + timedelta(days=count)
    if unit == IntervalUnit.WEEK:
        return start + timedelta(weeks=count)
    if unit == IntervalUnit.MONTH:
        return _add_months(start, count)
    return _add_months(start, 12 * count)


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


def format_proration_explanation(result: ProrationResult | None, currency: str = "USD") -> str:
    """Human-readable summary of *result* for change previews."""
    if result is None:
        return "No proration calculation available."

    if result.net_amount > 0:
        outcome = "You'll be charged for the upgraded service for the remainder of your billing period."
    elif result.net_amount < 0:
        outcome = "You'll receive a credit for the unused portion of your current billing period."
    else:
        outcome = "No additional charge for this change."

    return (
        f"{result.days_remaining} of {result.days_total} days remain in the current period. "
        f"Credit: {result.credit_amount / 100:.2f} {currency}, "
        f"charge: {result.charge_amount / 100:.2f} {currency}. {outcome}"
    )
