"""Tests for subscription lifecycle operations.

Uses the in-memory ledger from ``conftest.py``.  The seeded subscription
bills 10.00 USD per 30-day period and is 10 days into its current period at
``NOW``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from billing_engine.errors import (
    BillingValidationError,
    ConflictError,
    ExecutionRejectedError,
    ExecutionUnavailableError,
    InvalidTransitionError,
    NotFoundError,
)
from billing_engine.models.subscription import ChangeStatus, ChangeType, LineItem
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DunningCampaignRepository,
    ProrationRecordRepository,
    ScheduledChangeRepository,
    StateChangeRepository,
    SubscriptionEventRepository,
)
from billing_engine.state.tables import SubscriptionTable
from billing_worker.services.dunning_engine import DunningEngine
from billing_worker.services.redemption_service import RedemptionService
from billing_worker.services.subscription_service import SubscriptionService

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _items(amount_cents: int, product_id: str = "prod_pro") -> list[LineItem]:
    return [LineItem(product_id=product_id, description="Plan", unit_amount_cents=amount_cents)]


@pytest.fixture
def service(session_factory, executor) -> SubscriptionService:
    redemptions = RedemptionService(session_factory, executor)
    return SubscriptionService(session_factory, executor=executor, redemptions=redemptions)


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------


class TestUpgrade:
    """Upgrades apply now and charge the prorated difference."""

    @pytest.mark.asyncio
    async def test_upgrade_charges_prorated_difference(self, service, make_subscription, session_factory):
        sub_id = await make_subscription(amount_cents=1000)

        outcome = await service.upgrade(sub_id, _items(2000), reason="more seats", now=NOW)

        assert outcome.proration is not None
        assert outcome.proration.days_total == 30
        assert outcome.proration.days_used == 10
        assert outcome.proration.net_amount == pytest.approx(666.67, abs=0.01)
        assert outcome.charge is not None
        assert outcome.charge.amount_cents == 667
        assert outcome.charge_error is None

        sub = await service.get(sub_id)
        assert sub.total_amount_cents == 2000
        assert sub.status == "active"

        records = await service.list_prorations(sub_id)
        assert len(records) == 1
        assert records[0].proration_type == "upgrade_credit"
        assert records[0].applied_to_payment_id == outcome.charge.payment_id
        assert records[0].applied_to_invoice_id == outcome.charge.invoice_id

        async with session_scope(session_factory) as session:
            changes = await StateChangeRepository(session).list_for_subscription(sub_id)
        assert changes[-1].from_amount_cents == 1000
        assert changes[-1].to_amount_cents == 2000
        assert changes[-1].reason == "more seats"

    @pytest.mark.asyncio
    async def test_failed_charge_keeps_upgrade(self, service, make_subscription, execution_service):
        sub_id = await make_subscription(amount_cents=1000)
        execution_service.submit.side_effect = ExecutionRejectedError("insufficient balance")

        outcome = await service.upgrade(sub_id, _items(2000), now=NOW)

        assert outcome.charge is None
        assert "insufficient balance" in outcome.charge_error
        assert (await service.get(sub_id)).total_amount_cents == 2000

    @pytest.mark.asyncio
    async def test_upgrade_requires_active_subscription(self, service, make_subscription):
        sub_id = await make_subscription(status="suspended")
        with pytest.raises(InvalidTransitionError):
            await service.upgrade(sub_id, _items(2000), now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, service):
        with pytest.raises(NotFoundError):
            await service.upgrade("missing", _items(2000), now=NOW)


# ---------------------------------------------------------------------------
# Downgrade & cancellation
# ---------------------------------------------------------------------------


class TestDowngrade:
    """Downgrades wait for period end and never prorate."""

    @pytest.mark.asyncio
    async def test_downgrade_scheduled_at_period_end(self, service, make_subscription):
        sub_id = await make_subscription(amount_cents=1000)
        sub = await service.get(sub_id)

        outcome = await service.downgrade(sub_id, _items(500, "prod_lite"), now=NOW)

        assert outcome.effective_at == sub.current_period_end
        changes = await service.list_scheduled_changes(sub_id, status=ChangeStatus.SCHEDULED)
        assert len(changes) == 1
        assert changes[0].change_type == "downgrade"
        assert changes[0].scheduled_for == sub.current_period_end
        assert changes[0].proration_amount == 0.0
        assert (await service.get(sub_id)).total_amount_cents == 1000
        assert await service.list_prorations(sub_id) == []

    @pytest.mark.asyncio
    async def test_second_pending_downgrade_conflicts(self, service, make_subscription):
        sub_id = await make_subscription()
        await service.downgrade(sub_id, _items(500), now=NOW)
        with pytest.raises(ConflictError):
            await service.downgrade(sub_id, _items(300), now=NOW)


class TestCancellation:
    """Cancellation is scheduled and can be withdrawn until it is processing."""

    @pytest.mark.asyncio
    async def test_cancel_sets_cancel_at(self, service, make_subscription):
        sub_id = await make_subscription()
        sub = await service.get(sub_id)

        outcome = await service.cancel(sub_id, reason="too expensive", feedback="price", now=NOW)

        after = await service.get(sub_id)
        assert outcome.effective_at == sub.current_period_end
        assert after.status == "active"
        assert after.cancel_at == sub.current_period_end
        assert after.cancellation_reason == "too expensive"

    @pytest.mark.asyncio
    async def test_double_cancel_conflicts(self, service, make_subscription):
        sub_id = await make_subscription()
        await service.cancel(sub_id, now=NOW)
        with pytest.raises(ConflictError):
            await service.cancel(sub_id, now=NOW)

    @pytest.mark.asyncio
    async def test_reactivate_withdraws_cancellation(self, service, make_subscription):
        sub_id = await make_subscription()
        outcome = await service.cancel(sub_id, now=NOW)

        await service.reactivate(sub_id, now=NOW + timedelta(days=1))

        sub = await service.get(sub_id)
        assert sub.cancel_at is None
        changes = await service.list_scheduled_changes(sub_id)
        assert [(c.change_id, c.status) for c in changes] == [(outcome.change_id, "cancelled")]

    @pytest.mark.asyncio
    async def test_reactivate_conflicts_once_processing(self, service, make_subscription, session_factory):
        sub_id = await make_subscription()
        outcome = await service.cancel(sub_id, now=NOW)
        async with session_scope(session_factory) as session:
            assert await ScheduledChangeRepository(session).claim(outcome.change_id)

        with pytest.raises(ConflictError):
            await service.reactivate(sub_id, now=NOW)
        assert (await service.get(sub_id)).cancel_at is not None

    @pytest.mark.asyncio
    async def test_reactivate_without_cancellation(self, service, make_subscription):
        sub_id = await make_subscription()
        with pytest.raises(BillingValidationError):
            await service.reactivate(sub_id, now=NOW)


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------


class TestPauseResume:
    """Pausing credits unused days; resuming starts a fresh period."""

    @pytest.mark.asyncio
    async def test_pause_with_end_date(self, service, make_subscription):
        sub_id = await make_subscription(amount_cents=3000)
        until = NOW + timedelta(days=14)

        outcome = await service.pause(sub_id, pause_until=until, reason="holiday", now=NOW)

        sub = await service.get(sub_id)
        assert sub.status == "suspended"
        assert sub.pause_until == until
        assert sub.next_redemption_at is None
        assert outcome.proration.credit_amount == pytest.approx(2000.0)

        resumes = await service.list_scheduled_changes(sub_id, status=ChangeStatus.SCHEDULED)
        assert len(resumes) == 1
        assert resumes[0].change_type == "resume"
        assert resumes[0].scheduled_for == until

        records = await service.list_prorations(sub_id)
        assert [r.proration_type for r in records] == ["pause_credit"]

    @pytest.mark.asyncio
    async def test_pause_until_must_be_future(self, service, make_subscription):
        sub_id = await make_subscription()
        with pytest.raises(BillingValidationError):
            await service.pause(sub_id, pause_until=NOW - timedelta(days=1), now=NOW)

    @pytest.mark.asyncio
    async def test_resume_starts_new_period_and_settles(self, service, make_subscription, execution_service):
        sub_id = await make_subscription()
        await service.pause(sub_id, pause_until=NOW + timedelta(days=30), now=NOW)
        resumed_at = NOW + timedelta(days=5)

        outcome = await service.resume(sub_id, now=resumed_at)

        assert outcome.charge is not None
        assert outcome.charge.transaction_hash == "0xtx1"
        sub = await service.get(sub_id)
        assert sub.status == "active"
        assert sub.current_period_start == resumed_at
        assert sub.next_redemption_at == datetime(2026, 2, 6, 12, 0, tzinfo=UTC)
        assert sub.pause_until is None
        assert await service.list_scheduled_changes(sub_id, status=ChangeStatus.SCHEDULED) == []
        execution_service.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resume_requires_suspended(self, service, make_subscription):
        sub_id = await make_subscription()
        with pytest.raises(InvalidTransitionError):
            await service.resume(sub_id, now=NOW)


# ---------------------------------------------------------------------------
# Preview & delete
# ---------------------------------------------------------------------------


class TestPreviewAndDelete:
    @pytest.mark.asyncio
    async def test_upgrade_preview_writes_nothing(self, service, make_subscription, session_factory):
        sub_id = await make_subscription(amount_cents=1000)

        preview = await service.preview_change(sub_id, ChangeType.UPGRADE, _items(2000), now=NOW)

        assert preview.immediate_charge_cents == 667
        assert preview.new_amount_cents == 2000
        assert "20 of 30 days" in preview.explanation
        async with session_scope(session_factory) as session:
            assert await ProrationRecordRepository(session).list_for_subscription(sub_id) == []
            assert await SubscriptionEventRepository(session).list_for_subscription(sub_id) == []

    @pytest.mark.asyncio
    async def test_cancel_preview(self, service, make_subscription):
        sub_id = await make_subscription()
        preview = await service.preview_change(sub_id, ChangeType.CANCEL, now=NOW)
        assert preview.new_amount_cents == 0
        assert preview.immediate_charge_cents == 0
        assert "cancelled at the end" in preview.explanation

    @pytest.mark.asyncio
    async def test_delete_only_terminal(self, service, make_subscription):
        active_id = await make_subscription()
        with pytest.raises(BillingValidationError):
            await service.delete(active_id)

        cancelled_id = await make_subscription(status="cancelled", next_redemption_at=None)
        await service.delete(cancelled_id)
        with pytest.raises(NotFoundError):
            await service.get(cancelled_id)


# ---------------------------------------------------------------------------
# Purchase
# ---------------------------------------------------------------------------


async def _subscription_count(session_factory) -> int:
    async with session_scope(session_factory) as session:
        result = await session.execute(select(func.count()).select_from(SubscriptionTable))
        return result.scalar_one()


class TestPurchase:
    @pytest.mark.asyncio
    async def test_successful_purchase_creates_subscription(self, service, initial_request, session_factory):
        result = await service.subscribe(initial_request(), now=NOW)

        assert result.subscription_id is not None
        assert result.amount_cents == 1000
        assert await _subscription_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_failed_first_payment_opens_payment_campaign(
        self, service, initial_request, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config(retry_interval_days=[3, 7, 14])
        request = initial_request(idempotency_key="order-42")
        execution_service.submit.side_effect = ExecutionRejectedError("insufficient balance")

        with pytest.raises(ExecutionRejectedError):
            await service.subscribe(request, now=NOW)
        with pytest.raises(ExecutionRejectedError):
            await service.subscribe(request, now=NOW + timedelta(hours=1))

        assert await _subscription_count(session_factory) == 0
        async with session_scope(session_factory) as session:
            campaign = await DunningCampaignRepository(session).get_active_for_redemption_key("order-42")
        assert campaign is not None
        assert campaign.subscription_id is None
        assert campaign.payment_request_json["idempotency_key"] == "order-42"
        assert campaign.original_amount_cents == 1000
        assert campaign.next_retry_at == NOW + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_dunning_retry_creates_subscription_once(
        self, service, executor, initial_request, make_dunning_config, execution_service, session_factory
    ):
        await make_dunning_config(retry_interval_days=[3, 7, 14])
        request = initial_request(idempotency_key="order-43")
        issue_hashes = execution_service.submit.side_effect
        execution_service.submit.side_effect = ExecutionUnavailableError("connection refused")
        with pytest.raises(ExecutionUnavailableError):
            await service.subscribe(request, now=NOW)
        async with session_scope(session_factory) as session:
            campaign_id = (
                await DunningCampaignRepository(session).get_active_for_redemption_key("order-43")
            ).campaign_id

        execution_service.submit.side_effect = issue_hashes
        dunning = DunningEngine(
            session_factory, redemptions=RedemptionService(session_factory, executor), executor=executor
        )
        first = await dunning.process_due_campaigns(NOW + timedelta(days=3))
        second = await dunning.process_due_campaigns(NOW + timedelta(days=10))

        assert first["recovered"] == 1
        assert second["due"] == 0
        assert execution_service.submit.await_count == 2
        assert await _subscription_count(session_factory) == 1
        async with session_scope(session_factory) as session:
            row = await DunningCampaignRepository(session).get(campaign_id)
        assert row.status == "recovered"
        assert row.subscription_id is not None
        assert row.recovered_amount_cents == 1000

    @pytest.mark.asyncio
    async def test_failed_purchase_without_dunning_config_still_raises(
        self, service, initial_request, execution_service, session_factory
    ):
        request = initial_request(idempotency_key="order-44")
        execution_service.submit.side_effect = ExecutionRejectedError("delegation expired")

        with pytest.raises(ExecutionRejectedError):
            await service.subscribe(request, now=NOW)

        async with session_scope(session_factory) as session:
            assert await DunningCampaignRepository(session).get_active_for_redemption_key("order-44") is None

    @pytest.mark.asyncio
    async def test_purchase_needs_executor(self, session_factory, initial_request):
        with pytest.raises(BillingValidationError):
            await SubscriptionService(session_factory).subscribe(initial_request())
