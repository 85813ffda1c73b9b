"""Tests for dunning campaigns: scheduling, actions, recovery and final actions.

The payment retrier is an ``AsyncMock`` standing in for the redemption
service, so these tests exercise the campaign state machine without going
through settlement.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from billing_engine.errors import ConfigurationError, ConflictError, ExecutionRejectedError, NotificationError
from billing_engine.models.settlement import SettlementKind, SettlementResult
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DunningAttemptRepository,
    DunningCampaignRepository,
    DunningConfigurationRepository,
    SubscriptionRepository,
)
from billing_worker.services.dunning_engine import DunningEngine, notification_template
from billing_worker.services.dunning_service import DunningService

T0 = datetime(2026, 1, 21, 12, 0, tzinfo=UTC)


def _settled(subscription_id: str) -> SettlementResult:
    return SettlementResult(
        redemption_key=f"{subscription_id}:2",
        transaction_hash="0xrecovered",
        kind=SettlementKind.RECURRING,
        subscription_id=subscription_id,
        amount_cents=1000,
    )


@pytest.fixture
def retrier() -> AsyncMock:
    mock = AsyncMock()
    mock.retry_subscription.side_effect = ExecutionRejectedError("insufficient balance")
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def dunning(session_factory, retrier, notifier) -> DunningEngine:
    return DunningEngine(session_factory, redemptions=retrier, notifier=notifier)


async def _start(session_factory, subscription_id: str, now: datetime = T0) -> str:
    async with session_scope(session_factory) as session:
        campaign = await DunningService(session).start_campaign(
            workspace_id="ws_test",
            customer_id="cus_test",
            amount_cents=1000,
            currency="USD",
            reason="insufficient balance",
            subscription_id=subscription_id,
            now=now,
        )
        return campaign.campaign_id


async def _campaign(session_factory, campaign_id: str):
    async with session_scope(session_factory) as session:
        return await DunningCampaignRepository(session).get(campaign_id)


async def _status(session_factory, subscription_id: str) -> str:
    async with session_scope(session_factory) as session:
        return (await SubscriptionRepository(session).get(subscription_id)).status


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


class TestRetrySchedule:
    """Intervals [3, 7, 14] with three attempts retry on days 3, 10 and 24."""

    @pytest.mark.asyncio
    async def test_full_schedule_then_final_action(
        self, dunning, retrier, make_subscription, make_dunning_config, session_factory
    ):
        await make_dunning_config(max_attempts=3, retry_interval_days=[3, 7, 14], final_action="mark_failed")
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)

        assert (await dunning.process_due_campaigns(T0 + timedelta(days=2)))["due"] == 0

        for day, expected_next in ((3, 10), (10, 24)):
            summary = await dunning.process_due_campaigns(T0 + timedelta(days=day))
            assert summary["attempted"] == 1
            row = await _campaign(session_factory, campaign_id)
            assert row.next_retry_at == T0 + timedelta(days=expected_next)

        summary = await dunning.process_due_campaigns(T0 + timedelta(days=24))
        assert summary["attempted"] == 1
        row = await _campaign(session_factory, campaign_id)
        assert row.current_attempt == 3
        assert row.status == "active"

        summary = await dunning.process_due_campaigns(T0 + timedelta(days=24))
        assert summary["failed"] == 1
        row = await _campaign(session_factory, campaign_id)
        assert row.status == "failed"
        assert row.final_action_taken == "mark_failed"
        assert await _status(session_factory, sub_id) == "failed"

        retry_times = [call.kwargs["now"] for call in retrier.retry_subscription.await_args_list]
        assert retry_times == [T0 + timedelta(days=d) for d in (3, 10, 24)]

        async with session_scope(session_factory) as session:
            attempts = await DunningAttemptRepository(session).list_for_campaign(campaign_id)
        assert [(a.attempt_number, a.action, a.status) for a in attempts] == [
            (1, "retry_payment", "failed"),
            (2, "retry_payment", "failed"),
            (3, "retry_payment", "failed"),
        ]
        assert all("insufficient balance" in a.error_message for a in attempts)

    @pytest.mark.asyncio
    async def test_grace_period_without_intervals(self, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config(retry_interval_days=[], grace_period_hours=12)
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)

        row = await _campaign(session_factory, campaign_id)
        assert row.next_retry_at == T0 + timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_one_campaign_per_subscription(self, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config()
        sub_id = await make_subscription(status="overdue")
        await _start(session_factory, sub_id)
        with pytest.raises(ConflictError):
            await _start(session_factory, sub_id)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class TestActions:
    @pytest.mark.asyncio
    async def test_successful_retry_recovers(
        self, dunning, retrier, make_subscription, make_dunning_config, session_factory
    ):
        await make_dunning_config()
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)
        retrier.retry_subscription.side_effect = None
        retrier.retry_subscription.return_value = _settled(sub_id)

        summary = await dunning.process_due_campaigns(T0 + timedelta(days=3))

        assert summary["recovered"] == 1
        row = await _campaign(session_factory, campaign_id)
        assert row.status == "recovered"
        assert row.recovered_amount_cents == 1000
        assert row.next_retry_at is None

        async with session_scope(session_factory) as session:
            attempts = await DunningAttemptRepository(session).list_for_campaign(campaign_id)
        assert attempts[0].status == "success"
        assert attempts[0].transaction_hash == "0xrecovered"

    @pytest.mark.asyncio
    async def test_notifications_run_before_retry(
        self, dunning, notifier, retrier, make_subscription, make_dunning_config, session_factory
    ):
        await make_dunning_config(attempt_actions={"1": ["email", "in_app", "retry_payment"]})
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)

        await dunning.process_due_campaigns(T0 + timedelta(days=3))

        assert notifier.send.await_count == 2
        template, data, recipient = notifier.send.await_args_list[0].args
        assert template == "dunning_attempt_1"
        assert data["attempts_remaining"] == 2
        assert recipient.customer_id == "cus_test"
        assert notifier.send.await_args_list[1].args[2].channel.value == "in_app"
        retrier.retry_subscription.assert_awaited_once()

        async with session_scope(session_factory) as session:
            attempts = await DunningAttemptRepository(session).list_for_campaign(campaign_id)
        by_action = {a.action: a for a in attempts}
        assert sorted(by_action) == ["email", "in_app", "retry_payment"]
        assert by_action["email"].template == "dunning_attempt_1"
        assert by_action["retry_payment"].template is None

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block_retry(
        self, dunning, notifier, retrier, make_subscription, make_dunning_config, session_factory
    ):
        await make_dunning_config(attempt_actions={"1": ["email", "retry_payment"]})
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)
        notifier.send.side_effect = NotificationError("smtp down")
        retrier.retry_subscription.side_effect = None
        retrier.retry_subscription.return_value = _settled(sub_id)

        summary = await dunning.process_due_campaigns(T0 + timedelta(days=3))

        assert summary["recovered"] == 1
        async with session_scope(session_factory) as session:
            attempts = await DunningAttemptRepository(session).list_for_campaign(campaign_id)
        assert sorted((a.action, a.status) for a in attempts) == [("email", "failed"), ("retry_payment", "success")]

    def test_final_notice_template(self):
        assert notification_template(1) == "dunning_attempt_1"
        assert notification_template(2) == "dunning_attempt_2"
        assert notification_template(3) == "dunning_final_notice"
        assert notification_template(5) == "dunning_final_notice"


# ---------------------------------------------------------------------------
# Final actions & configuration
# ---------------------------------------------------------------------------


class TestFinalActions:
    async def _exhaust(self, dunning, session_factory, sub_id: str) -> str:
        campaign_id = await _start(session_factory, sub_id)
        await dunning.process_due_campaigns(T0 + timedelta(days=1))
        await dunning.process_due_campaigns(T0 + timedelta(days=1))
        return campaign_id

    @pytest.mark.asyncio
    async def test_cancel(self, dunning, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config(max_attempts=1, retry_interval_days=[1], final_action="cancel")
        sub_id = await make_subscription(status="overdue")

        campaign_id = await self._exhaust(dunning, session_factory, sub_id)

        assert (await _campaign(session_factory, campaign_id)).final_action_taken == "cancel"
        assert await _status(session_factory, sub_id) == "cancelled"

    @pytest.mark.asyncio
    async def test_pause(self, dunning, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config(max_attempts=1, retry_interval_days=[1], final_action="pause")
        sub_id = await make_subscription(status="overdue")

        await self._exhaust(dunning, session_factory, sub_id)

        assert await _status(session_factory, sub_id) == "suspended"

    @pytest.mark.asyncio
    async def test_none_leaves_subscription(self, dunning, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config(max_attempts=1, retry_interval_days=[1], final_action="none")
        sub_id = await make_subscription(status="overdue")

        campaign_id = await self._exhaust(dunning, session_factory, sub_id)

        assert (await _campaign(session_factory, campaign_id)).status == "failed"
        assert await _status(session_factory, sub_id) == "overdue"

    @pytest.mark.asyncio
    async def test_invalid_stored_config_is_skipped(
        self, dunning, retrier, make_subscription, make_dunning_config, session_factory
    ):
        config_id = await make_dunning_config()
        sub_id = await make_subscription(status="overdue")
        campaign_id = await _start(session_factory, sub_id)
        async with session_scope(session_factory) as session:
            row = await DunningConfigurationRepository(session).get(config_id)
            row.final_action = "explode"

        summary = await dunning.process_due_campaigns(T0 + timedelta(days=3))

        assert summary["errors"] == 1
        retrier.retry_subscription.assert_not_awaited()
        assert (await _campaign(session_factory, campaign_id)).current_attempt == 0

    @pytest.mark.asyncio
    async def test_start_without_config(self, make_subscription, session_factory):
        sub_id = await make_subscription(status="overdue")
        with pytest.raises(ConfigurationError):
            await _start(session_factory, sub_id)


class TestStats:
    @pytest.mark.asyncio
    async def test_recovery_rate(self, dunning, retrier, make_subscription, make_dunning_config, session_factory):
        await make_dunning_config(max_attempts=1, retry_interval_days=[1])
        lost = await make_subscription(status="overdue")
        saved = await make_subscription(status="overdue")
        await _start(session_factory, lost)
        saved_campaign = await _start(session_factory, saved)

        await dunning.process_due_campaigns(T0 + timedelta(days=1))
        async with session_scope(session_factory) as session:
            await DunningService(session).recover_campaign(saved_campaign, amount_cents=1000, now=T0)
        await dunning.process_due_campaigns(T0 + timedelta(days=1))

        async with session_scope(session_factory) as session:
            stats = await DunningService(session).stats("ws_test")
        assert stats["total"] == 2
        assert stats["recovered"] == 1
        assert stats["failed"] == 1
        assert stats["recovered_amount_cents"] == 1000
        assert stats["recovery_rate"] == pytest.approx(0.5)
