"""Tests for the due-redemption sweep and its hand-off to dunning."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from billing_engine.errors import (
    ConflictError,
    DelegationExpiredError,
    ExecutionRejectedError,
    ExecutionUnavailableError,
)
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DelegationRepository,
    DunningCampaignRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
)
from billing_worker.services.dunning_engine import DunningEngine
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.reconciliation_service import ReconciliationService
from billing_worker.services.redemption_service import RedemptionService

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
DUE = datetime(2026, 1, 21, 12, 0, tzinfo=UTC)


@pytest.fixture
def redemptions(session_factory, executor) -> RedemptionService:
    return RedemptionService(session_factory, executor)


async def _get(session_factory, subscription_id):
    async with session_scope(session_factory) as session:
        return await SubscriptionRepository(session).get(subscription_id)


async def _active_campaign(session_factory, subscription_id):
    async with session_scope(session_factory) as session:
        return await DunningCampaignRepository(session).get_active_for_subscription(subscription_id)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


class TestSweep:
    @pytest.mark.asyncio
    async def test_only_due_subscriptions_are_settled(self, redemptions, make_subscription, execution_service):
        due_id = await make_subscription()
        later_id = await make_subscription(period_start=NOW, period_end=NOW + timedelta(days=31))

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["due"] == 1
        assert summary["settled"] == 1
        assert execution_service.submit.await_count == 1
        assert execution_service.submit.await_args.kwargs["idempotency_key"] == f"{due_id}:2"
        assert later_id not in execution_service.submit.await_args.kwargs["idempotency_key"]

    @pytest.mark.asyncio
    async def test_second_sweep_finds_nothing(self, redemptions, make_subscription):
        await make_subscription()
        await redemptions.process_due_subscriptions(DUE)
        summary = await redemptions.process_due_subscriptions(DUE + timedelta(minutes=1))
        assert summary["due"] == 0

    @pytest.mark.asyncio
    async def test_scheduled_cancellation_wins(self, redemptions, make_subscription, session_factory):
        sub_id = await make_subscription()
        async with session_scope(session_factory) as session:
            sub = await SubscriptionRepository(session).get(sub_id)
            sub.cancel_at = sub.next_redemption_at

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["due"] == 0

    @pytest.mark.asyncio
    async def test_term_completion_is_counted(self, redemptions, make_subscription):
        await make_subscription(term_length=2)
        summary = await redemptions.process_due_subscriptions(DUE)
        assert summary["settled"] == 1
        assert summary["completed"] == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Failed settlements move the subscription to overdue and open dunning."""

    @pytest.mark.asyncio
    async def test_rejection_opens_campaign(
        self, redemptions, make_subscription, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config(retry_interval_days=[3, 7, 14])
        sub_id = await make_subscription()
        execution_service.submit.side_effect = ExecutionRejectedError("insufficient balance")

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["failed"] == 1
        sub = await _get(session_factory, sub_id)
        assert sub.status == "overdue"
        assert sub.redemption_claimed_at is None

        campaign = await _active_campaign(session_factory, sub_id)
        assert campaign is not None
        assert campaign.next_retry_at == DUE + timedelta(days=3)
        assert campaign.original_amount_cents == 1000
        assert "insufficient balance" in campaign.failure_reason

        async with session_scope(session_factory) as session:
            failed = await SubscriptionEventRepository(session).list_for_subscription(sub_id, event_type="failed")
        assert len(failed) == 1
        assert failed[0].metadata_json["error_kind"] == "execution_rejected"

    @pytest.mark.asyncio
    async def test_overdue_with_campaign_left_to_dunning(
        self, redemptions, make_subscription, make_dunning_config, execution_service
    ):
        await make_dunning_config()
        await make_subscription()
        execution_service.submit.side_effect = ExecutionUnavailableError("connection refused")

        await redemptions.process_due_subscriptions(DUE)
        summary = await redemptions.process_due_subscriptions(DUE + timedelta(hours=1))

        assert summary["due"] == 0
        assert execution_service.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_dunning_config_still_marks_overdue(
        self, redemptions, make_subscription, execution_service, session_factory
    ):
        sub_id = await make_subscription()
        execution_service.submit.side_effect = ExecutionRejectedError("delegation expired")

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["failed"] == 1
        assert (await _get(session_factory, sub_id)).status == "overdue"
        assert await _active_campaign(session_factory, sub_id) is None

    @pytest.mark.asyncio
    async def test_held_claim_is_skipped(self, redemptions, make_subscription, session_factory, execution_service):
        sub_id = await make_subscription()
        async with session_scope(session_factory) as session:
            assert await SubscriptionRepository(session).claim_redemption(
                sub_id, expected_next_redemption=DUE, now=DUE, claim_ttl_seconds=900
            )

        with pytest.raises(ConflictError):
            await redemptions.redeem(sub_id, now=DUE + timedelta(minutes=1))

        summary = await redemptions.process_due_subscriptions(DUE + timedelta(minutes=2))
        assert summary["skipped"] == 1
        execution_service.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, redemptions, make_subscription, session_factory):
        sub_id = await make_subscription()
        async with session_scope(session_factory) as session:
            await SubscriptionRepository(session).claim_redemption(
                sub_id, expected_next_redemption=DUE, now=DUE, claim_ttl_seconds=900
            )

        result = await redemptions.redeem(sub_id, now=DUE + timedelta(hours=1))

        assert result.subscription_id == sub_id


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    @pytest.mark.asyncio
    async def test_successful_redeem_recovers_campaign(
        self, redemptions, make_subscription, make_dunning_config, session_factory
    ):
        await make_dunning_config()
        sub_id = await make_subscription(status="overdue")
        async with session_scope(session_factory) as session:
            campaign = await DunningService(session).start_campaign(
                workspace_id="ws_test",
                customer_id="cus_test",
                amount_cents=1000,
                currency="USD",
                reason="insufficient balance",
                subscription_id=sub_id,
                now=DUE,
            )
            campaign_id = campaign.campaign_id

        await redemptions.redeem(sub_id, now=DUE + timedelta(days=1))

        assert (await _get(session_factory, sub_id)).status == "active"
        async with session_scope(session_factory) as session:
            row = await DunningCampaignRepository(session).get(campaign_id)
        assert row.status == "recovered"
        assert row.recovered_amount_cents == 1000


# ---------------------------------------------------------------------------
# Dunning hand-off
# ---------------------------------------------------------------------------


class TestDunningHandOff:
    """A period settled outside dunning must never be charged again by a retry."""

    @pytest.mark.asyncio
    async def test_reconciled_timeout_closes_campaign(
        self, redemptions, executor, make_subscription, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config(retry_interval_days=[3, 7, 14])
        sub_id = await make_subscription()
        issue_hashes = execution_service.submit.side_effect
        execution_service.submit.side_effect = ExecutionUnavailableError("read timeout", timed_out=True)

        summary = await redemptions.process_due_subscriptions(DUE)
        assert summary["failed"] == 1
        assert await _active_campaign(session_factory, sub_id) is not None

        execution_service.submit.side_effect = issue_hashes
        execution_service.find_submission.return_value = "0xlanded"
        reconciliation = ReconciliationService(session_factory, executor, execution_service)
        resolved = await reconciliation.resolve_timed_out_submissions(now=DUE + timedelta(minutes=5))

        assert resolved["settled"] == 1
        sub = await _get(session_factory, sub_id)
        assert sub.status == "active"
        assert sub.last_redemption_tx == "0xlanded"
        assert sub.next_redemption_at > DUE + timedelta(days=14)
        assert await _active_campaign(session_factory, sub_id) is None

        dunning = DunningEngine(session_factory, redemptions=redemptions, executor=executor)
        swept = await dunning.process_due_campaigns(DUE + timedelta(days=3))

        assert swept["due"] == 0
        assert execution_service.submit.await_count == 1
        assert (await _get(session_factory, sub_id)).total_redemptions == 2

    @pytest.mark.asyncio
    async def test_retry_before_due_is_refused(self, redemptions, make_subscription, execution_service):
        sub_id = await make_subscription()

        with pytest.raises(ConflictError):
            await redemptions.retry_subscription(sub_id, now=DUE - timedelta(days=1))

        execution_service.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_campaign_does_not_charge_future_period(
        self, redemptions, executor, make_subscription, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config(retry_interval_days=[3, 7, 14])
        sub_id = await make_subscription(status="overdue")
        async with session_scope(session_factory) as session:
            await DunningService(session).start_campaign(
                workspace_id="ws_test",
                customer_id="cus_test",
                amount_cents=1000,
                currency="USD",
                reason="insufficient balance",
                subscription_id=sub_id,
                now=NOW,
            )

        dunning = DunningEngine(session_factory, redemptions=redemptions, executor=executor)
        swept = await dunning.process_due_campaigns(NOW + timedelta(days=3))

        assert swept["attempted"] == 1
        assert swept["recovered"] == 0
        execution_service.submit.assert_not_awaited()
        assert (await _get(session_factory, sub_id)).total_redemptions == 1


# ---------------------------------------------------------------------------
# Delegation expiry
# ---------------------------------------------------------------------------


async def _lapse_delegation(session_factory, subscription_id, expires_at):
    async with session_scope(session_factory) as session:
        sub = await SubscriptionRepository(session).get(subscription_id)
        delegation = await DelegationRepository(session).get(sub.delegation_id)
        delegation.expires_at = expires_at


class TestDelegationExpiry:
    @pytest.mark.asyncio
    async def test_lapsed_delegation_expires_subscription(
        self, redemptions, make_subscription, execution_service, session_factory
    ):
        sub_id = await make_subscription()
        await _lapse_delegation(session_factory, sub_id, DUE - timedelta(days=1))

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["expired"] == 1
        assert summary["settled"] == 0
        execution_service.submit.assert_not_awaited()
        sub = await _get(session_factory, sub_id)
        assert sub.status == "expired"
        assert sub.next_redemption_at is None
        assert sub.redemption_claimed_at is None
        async with session_scope(session_factory) as session:
            events = await SubscriptionEventRepository(session).list_for_subscription(sub_id, event_type="expired")
        assert len(events) == 1

        again = await redemptions.process_due_subscriptions(DUE + timedelta(days=1))
        assert again["due"] == 0

    @pytest.mark.asyncio
    async def test_delegation_valid_at_due_time_settles(
        self, redemptions, make_subscription, execution_service, session_factory
    ):
        sub_id = await make_subscription()
        await _lapse_delegation(session_factory, sub_id, DUE + timedelta(days=1))

        summary = await redemptions.process_due_subscriptions(DUE)

        assert summary["settled"] == 1
        assert (await _get(session_factory, sub_id)).status == "active"
        assert execution_service.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_dunning_retry_on_lapsed_delegation_fails_campaign(
        self, redemptions, make_subscription, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config()
        sub_id = await make_subscription(status="overdue")
        async with session_scope(session_factory) as session:
            campaign = await DunningService(session).start_campaign(
                workspace_id="ws_test",
                customer_id="cus_test",
                amount_cents=1000,
                currency="USD",
                reason="insufficient balance",
                subscription_id=sub_id,
                now=DUE,
            )
            campaign_id = campaign.campaign_id
        await _lapse_delegation(session_factory, sub_id, DUE)

        with pytest.raises(DelegationExpiredError):
            await redemptions.retry_subscription(sub_id, now=DUE + timedelta(days=3))

        execution_service.submit.assert_not_awaited()
        assert (await _get(session_factory, sub_id)).status == "expired"
        async with session_scope(session_factory) as session:
            row = await DunningCampaignRepository(session).get(campaign_id)
        assert row.status == "failed"
