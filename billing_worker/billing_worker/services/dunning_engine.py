"""Dunning sweep: run due campaign attempts and final actions.

Each due campaign is claimed by advancing its attempt counter with a
conditional update, so concurrent sweeps never run the same attempt twice.
Attempt actions and final actions are looked up in registries keyed by the
:class:`~billing_engine.models.dunning.DunningAction` and
:class:`~billing_engine.models.dunning.FinalAction` enums; both enums are
validated when the configuration is loaded.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import InvalidTransitionError
from billing_engine.lifecycle import Trigger
from billing_engine.models.dunning import FINAL_NOTICE_ATTEMPT, DunningAction, DunningPolicy, FinalAction
from billing_engine.models.settlement import InitialSettlementRequest, SettlementResult
from billing_engine.models.subscription import ChangeStatus, EventType
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DunningAttemptRepository,
    DunningCampaignRepository,
    ScheduledChangeRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import DunningCampaignTable, SubscriptionTable
from billing_worker.clients.notification_client import Channel, NotificationSender, Recipient
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.ledger import apply_transition, utcnow
from billing_worker.services.settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)


class SubscriptionRetrier(Protocol):
    async def retry_subscription(self, subscription_id: str, *, now: datetime | None = None) -> SettlementResult: ...


@dataclass(frozen=True)
class _CampaignView:
    """Detached snapshot of the campaign fields actions need."""

    campaign_id: str
    workspace_id: str
    customer_id: str
    subscription_id: str | None
    payment_request: dict[str, Any] | None
    amount_cents: int
    currency: str

    @classmethod
    def from_row(cls, row: DunningCampaignTable) -> _CampaignView:
        return cls(
            campaign_id=row.campaign_id,
            workspace_id=row.workspace_id,
            customer_id=row.customer_id,
            subscription_id=row.subscription_id,
            payment_request=row.payment_request_json,
            amount_cents=row.original_amount_cents,
            currency=row.currency,
        )


@dataclass
class _ActionOutcome:
    success: bool
    transaction_hash: str | None = None
    amount_cents: int = 0


def notification_template(attempt_number: int) -> str:
    if attempt_number >= FINAL_NOTICE_ATTEMPT:
        return "dunning_final_notice"
    return f"dunning_attempt_{attempt_number}"


_ActionHandler = Callable[[_CampaignView, int, DunningPolicy, datetime], Awaitable[_ActionOutcome]]
_FinalHandler = Callable[[AsyncSession, SubscriptionTable, datetime], Awaitable[None]]


class DunningEngine:
    """Process due dunning campaigns.

    Parameters
    ----------
    session_factory:
        Factory for per-campaign sessions.
    redemptions:
        Retries recurring payments of subscription-linked campaigns.
    executor:
        Retries first payments of payment-linked campaigns.
    notifier:
        Sends ``email`` and ``in_app`` notifications.
    batch_size:
        Maximum number of campaigns handled per sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        redemptions: SubscriptionRetrier,
        executor: SettlementExecutor | None = None,
        notifier: NotificationSender | None = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._redemptions = redemptions
        self._executor = executor
        self._notifier = notifier
        self._batch_size = batch_size
        self._actions: dict[DunningAction, _ActionHandler] = {
            DunningAction.RETRY_PAYMENT: self._retry_payment,
            DunningAction.EMAIL: self._send_email,
            DunningAction.IN_APP: self._send_in_app,
        }
        self._final_actions: dict[FinalAction, _FinalHandler] = {
            FinalAction.MARK_FAILED: self._final_mark_failed,
            FinalAction.CANCEL: self._final_cancel,
            FinalAction.PAUSE: self._final_pause,
            FinalAction.NONE: self._final_none,
        }

    async def process_due_campaigns(self, now: datetime | None = None) -> dict[str, int]:
        """Run one attempt (or the final action) for every due campaign."""
        now = now or utcnow()
        summary = {"due": 0, "attempted": 0, "recovered": 0, "failed": 0, "skipped": 0, "errors": 0}

        async with session_scope(self._session_factory) as session:
            due = await DunningCampaignRepository(session).list_due(now, limit=self._batch_size)
            campaign_ids = [c.campaign_id for c in due]
        summary["due"] = len(campaign_ids)

        for campaign_id in campaign_ids:
            try:
                outcome = await self._process_campaign(campaign_id, now)
            except (OperationalError, InterfaceError):
                raise
            except Exception:
                logger.error("Dunning campaign %s skipped", campaign_id, exc_info=True)
                summary["errors"] += 1
                continue
            summary[outcome] += 1

        logger.info(
            "Dunning sweep: due=%d attempted=%d recovered=%d failed=%d skipped=%d errors=%d",
            summary["due"],
            summary["attempted"],
            summary["recovered"],
            summary["failed"],
            summary["skipped"],
            summary["errors"],
        )
        return summary

    # ------------------------------------------------------------------
    # Per-campaign flow
    # ------------------------------------------------------------------

    async def _process_campaign(self, campaign_id: str, now: datetime) -> str:
        async with session_scope(self._session_factory) as session:
            campaigns = DunningCampaignRepository(session)
            row = await campaigns.get(campaign_id)
            if row is None or row.status != "active":
                return "skipped"
            policy = await DunningService(session).load_policy(row.configuration_id)
            observed = row.current_attempt

            if observed >= policy.max_attempts:
                if not await campaigns.try_fail(campaign_id, expected_attempt=observed, now=now):
                    return "skipped"
                await self._run_final_action(session, row, policy.final_action, now)
                return "failed"

            if not await campaigns.claim_attempt(campaign_id, expected_attempt=observed, now=now):
                return "skipped"
            campaign = _CampaignView.from_row(row)

        attempt_number = observed + 1
        recovered: _ActionOutcome | None = None
        for action in policy.actions_for(attempt_number):
            outcome = await self._run_action(campaign, action, attempt_number, policy, now)
            if action == DunningAction.RETRY_PAYMENT and outcome.success:
                recovered = outcome
                break

        async with session_scope(self._session_factory) as session:
            if recovered is not None:
                await DunningService(session).recover_campaign(
                    campaign_id,
                    amount_cents=recovered.amount_cents or campaign.amount_cents,
                    now=now,
                )
                return "recovered"

            interval = policy.interval_after(attempt_number)
            next_retry = now + timedelta(days=interval) if interval is not None else now
            await DunningCampaignRepository(session).schedule_next(campaign_id, next_retry)
            logger.info(
                "Dunning attempt %d/%d for campaign %s did not recover; next at %s",
                attempt_number,
                policy.max_attempts,
                campaign_id,
                next_retry.isoformat(),
                extra={"campaign": {"campaign_id": campaign_id, "attempt": attempt_number}},
            )
        return "attempted"

    async def _run_action(
        self,
        campaign: _CampaignView,
        action: DunningAction,
        attempt_number: int,
        policy: DunningPolicy,
        now: datetime,
    ) -> _ActionOutcome:
        template = None if action == DunningAction.RETRY_PAYMENT else notification_template(attempt_number)
        async with session_scope(self._session_factory) as session:
            attempt = await DunningAttemptRepository(session).start(
                campaign_id=campaign.campaign_id,
                attempt_number=attempt_number,
                action=action.value,
                template=template,
            )
            attempt_id = attempt.attempt_id

        error: str | None = None
        try:
            outcome = await self._actions[action](campaign, attempt_number, policy, now)
        except Exception as exc:
            logger.warning(
                "Dunning action %s failed for campaign %s attempt %d: %s",
                action.value,
                campaign.campaign_id,
                attempt_number,
                exc,
            )
            outcome = _ActionOutcome(success=False)
            error = str(exc) or type(exc).__name__

        async with session_scope(self._session_factory) as session:
            attempts = DunningAttemptRepository(session)
            row = await attempts.get(attempt_id)
            if row is not None:
                await attempts.finish(
                    row,
                    success=outcome.success,
                    completed_at=now,
                    transaction_hash=outcome.transaction_hash,
                    error_message=error,
                )
        return outcome

    # ------------------------------------------------------------------
    # Attempt actions
    # ------------------------------------------------------------------

    async def _retry_payment(
        self,
        campaign: _CampaignView,
        attempt_number: int,
        policy: DunningPolicy,
        now: datetime,
    ) -> _ActionOutcome:
        if campaign.subscription_id is not None:
            result = await self._redemptions.retry_subscription(campaign.subscription_id, now=now)
        else:
            if self._executor is None or not campaign.payment_request:
                raise RuntimeError("Payment-linked campaign cannot be retried without an executor and request")
            request = InitialSettlementRequest.model_validate(campaign.payment_request)
            result = await self._executor.execute_initial(request, now=now)
        return _ActionOutcome(success=True, transaction_hash=result.transaction_hash, amount_cents=result.amount_cents)

    async def _notify(
        self,
        campaign: _CampaignView,
        attempt_number: int,
        policy: DunningPolicy,
        channel: Channel,
    ) -> _ActionOutcome:
        if self._notifier is None:
            raise RuntimeError("No notification sender configured")
        data = {
            "campaign_id": campaign.campaign_id,
            "subscription_id": campaign.subscription_id,
            "amount_cents": campaign.amount_cents,
            "currency": campaign.currency,
            "attempt_number": attempt_number,
            "max_attempts": policy.max_attempts,
            "attempts_remaining": max(policy.max_attempts - attempt_number, 0),
        }
        recipient = Recipient(workspace_id=campaign.workspace_id, customer_id=campaign.customer_id, channel=channel)
        await self._notifier.send(notification_template(attempt_number), data, recipient)
        return _ActionOutcome(success=True)

    async def _send_email(
        self,
        campaign: _CampaignView,
        attempt_number: int,
        policy: DunningPolicy,
        now: datetime,
    ) -> _ActionOutcome:
        return await self._notify(campaign, attempt_number, policy, Channel.EMAIL)

    async def _send_in_app(
        self,
        campaign: _CampaignView,
        attempt_number: int,
        policy: DunningPolicy,
        now: datetime,
    ) -> _ActionOutcome:
        return await self._notify(campaign, attempt_number, policy, Channel.IN_APP)

    # ------------------------------------------------------------------
    # Final actions
    # ------------------------------------------------------------------

    async def _run_final_action(
        self,
        session: AsyncSession,
        campaign: DunningCampaignTable,
        final_action: FinalAction,
        now: datetime,
    ) -> None:
        await DunningCampaignRepository(session).set_final_action(campaign.campaign_id, final_action.value)
        logger.warning(
            "Dunning campaign %s exhausted; final action %s",
            campaign.campaign_id,
            final_action.value,
            extra={"campaign": {"campaign_id": campaign.campaign_id, "final_action": final_action.value}},
        )
        if campaign.subscription_id is None:
            return
        sub = await SubscriptionRepository(session).get(campaign.subscription_id, for_update=True)
        if sub is None:
            return
        try:
            await self._final_actions[final_action](session, sub, now)
        except InvalidTransitionError as exc:
            logger.warning("Final action %s skipped for %s: %s", final_action.value, sub.subscription_id, exc)

    async def _final_mark_failed(self, session: AsyncSession, sub: SubscriptionTable, now: datetime) -> None:
        await apply_transition(session, sub, Trigger.FAIL, EventType.FAILED, occurred_at=now, reason="dunning_exhausted")
        sub.next_redemption_at = None

    async def _final_cancel(self, session: AsyncSession, sub: SubscriptionTable, now: datetime) -> None:
        await apply_transition(
            session, sub, Trigger.FINALIZE_CANCEL, EventType.CANCELLED, occurred_at=now, reason="dunning_exhausted"
        )
        sub.cancelled_at = now
        sub.cancellation_reason = "dunning_exhausted"
        sub.next_redemption_at = None
        changes = ScheduledChangeRepository(session)
        pending = await changes.list_for_subscription(sub.subscription_id, status=ChangeStatus.SCHEDULED.value)
        for change in pending:
            await changes.try_cancel(change.change_id)

    async def _final_pause(self, session: AsyncSession, sub: SubscriptionTable, now: datetime) -> None:
        await apply_transition(
            session, sub, Trigger.SUSPEND, EventType.PAUSED, occurred_at=now, reason="dunning_exhausted"
        )
        sub.next_redemption_at = None

    async def _final_none(self, session: AsyncSession, sub: SubscriptionTable, now: datetime) -> None:
        logger.info("Subscription %s left in status %s after dunning", sub.subscription_id, sub.status)
