"""Unit tests for billing_engine.proration.calculator."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from billing_engine.errors import BillingValidationError
from billing_engine.models.subscription import ChangeType, IntervalUnit
from billing_engine.proration import (
    add_billing_period,
    days_between,
    format_proration_explanation,
    pause_credit,
    schedule_downgrade,
    upgrade_proration,
)
from billing_engine.proration.calculator import normalize_interval_unit


def _dt(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=UTC)


PERIOD_START = _dt(2026, 1, 1)
PERIOD_END = _dt(2026, 1, 31)


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------


class TestUpgradeProration:
    def test_ten_days_into_thirty(self):
        result = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2026, 1, 11))

        assert result.days_total == 30
        assert result.days_used == 10
        assert result.days_remaining == 20
        assert result.credit_amount == pytest.approx(666.6667, abs=1e-3)
        assert result.charge_amount == pytest.approx(1333.3333, abs=1e-3)
        assert result.net_amount == pytest.approx(666.67, abs=0.01)
        assert result.used_amount == pytest.approx(333.33, abs=0.01)

    def test_time_of_day_is_ignored(self):
        early = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2026, 1, 11, 0))
        late = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2026, 1, 11, 23))
        assert early.net_amount == late.net_amount

    def test_change_after_period_end_is_free(self):
        result = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2026, 2, 15))
        assert result.days_used == 30
        assert result.days_remaining == 0
        assert result.net_amount == 0

    def test_change_before_period_start_prorates_whole_period(self):
        result = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2025, 12, 20))
        assert result.days_used == 0
        assert result.net_amount == pytest.approx(1000)

    def test_zero_length_period_counts_one_day(self):
        result = upgrade_proration(PERIOD_START, PERIOD_START, 1000, 2000, PERIOD_START)
        assert result.days_total == 1
        assert result.days_remaining == 1
        assert result.net_amount == pytest.approx(1000)

    def test_cheaper_plan_yields_credit(self):
        result = upgrade_proration(PERIOD_START, PERIOD_END, 2000, 1000, _dt(2026, 1, 16))
        assert result.net_amount < 0

    def test_negative_amount_rejected(self):
        with pytest.raises(BillingValidationError, match="old_amount"):
            upgrade_proration(PERIOD_START, PERIOD_END, -1, 2000, _dt(2026, 1, 11))


# ---------------------------------------------------------------------------
# Pause & deferred changes
# ---------------------------------------------------------------------------


class TestPauseCredit:
    def test_credit_for_unused_days(self):
        result = pause_credit(PERIOD_START, PERIOD_END, 3000, _dt(2026, 1, 11))
        assert result.credit_amount == pytest.approx(2000)
        assert result.net_amount == pytest.approx(-2000)
        assert result.charge_amount == 0

    def test_after_period_end_credits_nothing(self):
        result = pause_credit(PERIOD_START, PERIOD_END, 3000, _dt(2026, 3, 1))
        assert result.credit_amount == 0

    def test_negative_amount_rejected(self):
        with pytest.raises(BillingValidationError):
            pause_credit(PERIOD_START, PERIOD_END, -5, _dt(2026, 1, 11))


class TestScheduleDowngrade:
    def test_downgrade_effective_at_period_end(self):
        effect = schedule_downgrade(PERIOD_END, ChangeType.DOWNGRADE)
        assert effect.effective_at == PERIOD_END
        assert effect.proration_amount == 0.0
        assert "2026-01-31" in effect.message

    def test_cancel_accepts_string(self):
        effect = schedule_downgrade(PERIOD_END, "cancel")
        assert effect.change_type == ChangeType.CANCEL
        assert "cancelled" in effect.message

    @pytest.mark.parametrize("change_type", ["upgrade", "pause", "resume"])
    def test_other_changes_rejected(self, change_type):
        with pytest.raises(BillingValidationError):
            schedule_downgrade(PERIOD_END, change_type)


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------


class TestAddBillingPeriod:
    def test_month_end_clamps(self):
        assert add_billing_period(_dt(2026, 1, 31), "month") == _dt(2026, 2, 28)
        assert add_billing_period(_dt(2028, 1, 31), "month") == _dt(2028, 2, 29)

    def test_year_wraps(self):
        assert add_billing_period(_dt(2026, 11, 15), IntervalUnit.MONTH, 3) == _dt(2027, 2, 15)
        assert add_billing_period(_dt(2028, 2, 29), "yearly") == _dt(2029, 2, 28)

    def test_days_and_weeks(self):
        assert add_billing_period(PERIOD_START, "daily", 10) == _dt(2026, 1, 11)
        assert add_billing_period(PERIOD_START, "week", 2) == _dt(2026, 1, 15)

    def test_count_below_one_rejected(self):
        with pytest.raises(BillingValidationError):
            add_billing_period(PERIOD_START, "month", 0)

    def test_unknown_unit_rejected(self):
        with pytest.raises(BillingValidationError, match="fortnight"):
            normalize_interval_unit("fortnight")

    def test_days_between_is_signed(self):
        assert days_between(PERIOD_START, PERIOD_END) == 30
        assert days_between(PERIOD_END, PERIOD_START) == -30


class TestExplanation:
    def test_upgrade_explanation(self):
        result = upgrade_proration(PERIOD_START, PERIOD_END, 1000, 2000, _dt(2026, 1, 11))
        text = format_proration_explanation(result, "EUR")
        assert "20 of 30 days" in text
        assert "6.67 EUR" in text
        assert "charged" in text

    def test_missing_result(self):
        assert format_proration_explanation(None) == "No proration calculation available."
