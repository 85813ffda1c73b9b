"""Subscription lifecycle operations.

Upgrades apply immediately with a prorated charge.  Downgrades and
cancellations are deferred to the end of the current period as scheduled
changes, which the scheduled-change processor applies through the
``apply_*`` / ``finalize_*`` methods below.  Every status or amount change
writes a ledger event and a state-change audit row through
:func:`~billing_worker.services.ledger.apply_transition`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import (
    BillingError,
    BillingValidationError,
    ConfigurationError,
    ConflictError,
    ErrorKind,
    NotFoundError,
)
from billing_engine.lifecycle import Trigger, transition
from billing_engine.models.change import ChangeOutcome, ChangePreview
from billing_engine.models.proration import ProrationResult
from billing_engine.models.settlement import InitialSettlementRequest, SettlementResult
from billing_engine.models.subscription import (
    TERMINAL_STATUSES,
    ChangeStatus,
    ChangeType,
    EventType,
    Initiator,
    LineItem,
    PriceType,
    ProrationType,
    SubscriptionStatus,
    total_amount_cents,
)
from billing_engine.proration import (
    add_billing_period,
    format_proration_explanation,
    pause_credit,
    schedule_downgrade,
    upgrade_proration,
)
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    ProrationRecordRepository,
    ScheduledChangeRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import (
    ProrationRecordTable,
    ScheduledChangeTable,
    SubscriptionEventTable,
    SubscriptionTable,
)
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.ledger import apply_transition, utcnow
from billing_worker.services.redemption_service import RedemptionService
from billing_worker.services.settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)


def _items_json(items: list[LineItem]) -> list[dict[str, Any]]:
    if not items:
        raise BillingValidationError("A subscription needs at least one line item")
    return [item.model_dump(mode="json") for item in items]


def _status(sub: SubscriptionTable) -> SubscriptionStatus:
    return SubscriptionStatus(sub.status)


class SubscriptionService:
    """Lifecycle API for subscriptions.

    Parameters
    ----------
    session_factory:
        Factory for the transaction each operation runs in.
    executor:
        Settles first purchases and immediate proration charges after an upgrade.
    redemptions:
        Settles the first payment after a manual resume.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        executor: SettlementExecutor | None = None,
        redemptions: RedemptionService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._redemptions = redemptions

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, subscription_id: str) -> SubscriptionTable:
        async with session_scope(self._session_factory) as session:
            return await self._require(session, subscription_id)

    async def list_events(self, subscription_id: str) -> list[SubscriptionEventTable]:
        async with session_scope(self._session_factory) as session:
            return await SubscriptionEventRepository(session).list_for_subscription(subscription_id)

    async def list_scheduled_changes(
        self,
        subscription_id: str,
        *,
        status: ChangeStatus | None = None,
    ) -> list[ScheduledChangeTable]:
        async with session_scope(self._session_factory) as session:
            return await ScheduledChangeRepository(session).list_for_subscription(
                subscription_id, status=status.value if status else None
            )

    async def list_prorations(self, subscription_id: str) -> list[ProrationRecordTable]:
        async with session_scope(self._session_factory) as session:
            return await ProrationRecordRepository(session).list_for_subscription(subscription_id)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        request: InitialSettlementRequest,
        *,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Settle a first purchase; the subscription exists only once it has paid.

        A rejected or unavailable first payment opens a payment-linked
        dunning campaign whose retries settle the stored request again.  The
        original error is re-raised either way.
        """
        if self._executor is None:
            raise BillingValidationError("Purchases need a settlement executor")
        now = now or utcnow()
        try:
            return await self._executor.execute_initial(request, now=now)
        except BillingError as exc:
            if exc.kind in (ErrorKind.EXECUTION_REJECTED, ErrorKind.EXECUTION_UNAVAILABLE):
                await self._start_payment_dunning(request, exc, now)
            raise

    async def _start_payment_dunning(self, request: InitialSettlementRequest, exc: BillingError, now: datetime) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                await DunningService(session).start_campaign_for_payment(request, str(exc)[:500], now=now)
        except ConflictError:
            logger.info("First payment %s already has an active dunning campaign", request.redemption_key())
        except ConfigurationError as cfg_exc:
            logger.warning("No dunning campaign for first payment %s: %s", request.redemption_key(), cfg_exc)

    # ------------------------------------------------------------------
    # Upgrade / downgrade
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        subscription_id: str,
        new_line_items: list[LineItem],
        *,
        reason: str | None = None,
        initiated_by: Initiator = Initiator.CUSTOMER,
        settle_immediately: bool = True,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Switch to *new_line_items* now and charge the prorated difference.

        The upgrade is committed before the charge is attempted.  A failed
        charge is reported in ``charge_error`` and does not undo the upgrade.
        """
        now = now or utcnow()
        new_items = _items_json(new_line_items)
        new_amount = total_amount_cents(new_line_items)

        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            transition(sub.status, Trigger.UPGRADE)
            old_amount = sub.total_amount_cents
            proration = upgrade_proration(sub.current_period_start, sub.current_period_end, old_amount, new_amount, now)

            change = await ScheduledChangeRepository(session).create(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                change_type=ChangeType.UPGRADE.value,
                scheduled_for=now,
                status=ChangeStatus.COMPLETED.value,
                from_line_items=list(sub.line_items_json),
                to_line_items=new_items,
                proration_amount=proration.net_amount,
                proration=proration.model_dump(mode="json"),
                reason=reason,
                initiated_by=initiated_by.value,
                processed_at=now,
            )
            record = await self._record_proration(session, sub, proration, ProrationType.UPGRADE_CREDIT, change)

            sub.line_items_json = new_items
            sub.total_amount_cents = new_amount
            await apply_transition(
                session,
                sub,
                Trigger.UPGRADE,
                EventType.UPGRADED,
                occurred_at=now,
                reason=reason,
                initiated_by=initiated_by,
                scheduled_change_id=change.change_id,
                from_amount_cents=old_amount,
                to_amount_cents=new_amount,
                metadata={"net_amount": proration.net_amount},
            )
            change_id = change.change_id
            record_id = record.record_id

        outcome = ChangeOutcome(
            subscription_id=subscription_id,
            change_type=ChangeType.UPGRADE,
            status=SubscriptionStatus.ACTIVE,
            change_id=change_id,
            effective_at=now,
            proration=proration,
            proration_record_id=record_id,
            message=format_proration_explanation(proration, sub.currency),
        )

        charge_cents = round(proration.net_amount)
        if settle_immediately and charge_cents > 0 and self._executor is not None:
            try:
                outcome.charge = await self._executor.execute_charge(
                    subscription_id,
                    charge_cents,
                    f"proration:{change_id}",
                    proration_record_id=record_id,
                    now=now,
                )
            except BillingError as exc:
                logger.warning("Upgrade %s applied but proration charge failed: %s", change_id, exc)
                outcome.charge_error = str(exc)
        return outcome

    async def downgrade(
        self,
        subscription_id: str,
        new_line_items: list[LineItem],
        *,
        reason: str | None = None,
        initiated_by: Initiator = Initiator.CUSTOMER,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Schedule *new_line_items* for the end of the current period, without proration."""
        now = now or utcnow()
        new_items = _items_json(new_line_items)

        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            transition(sub.status, Trigger.DOWNGRADE)
            changes = ScheduledChangeRepository(session)
            pending = await changes.list_for_subscription(
                subscription_id,
                change_type=ChangeType.DOWNGRADE.value,
                status=ChangeStatus.SCHEDULED.value,
            )
            if pending:
                raise ConflictError(f"Subscription {subscription_id} already has a pending downgrade")

            effect = schedule_downgrade(sub.current_period_end, ChangeType.DOWNGRADE)
            change = await changes.create(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                change_type=ChangeType.DOWNGRADE.value,
                scheduled_for=effect.effective_at,
                from_line_items=list(sub.line_items_json),
                to_line_items=new_items,
                proration_amount=effect.proration_amount,
                reason=reason,
                initiated_by=initiated_by.value,
            )
            await SubscriptionEventRepository(session).append(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                event_type=EventType.DOWNGRADE_SCHEDULED.value,
                occurred_at=now,
                amount_cents=total_amount_cents(new_line_items),
                metadata={"scheduled_change_id": change.change_id, "effective_at": effect.effective_at.isoformat()},
            )
            return ChangeOutcome(
                subscription_id=subscription_id,
                change_type=ChangeType.DOWNGRADE,
                status=_status(sub),
                change_id=change.change_id,
                effective_at=effect.effective_at,
                message=effect.message,
            )

    async def apply_downgrade(self, session: AsyncSession, change: ScheduledChangeTable, now: datetime) -> None:
        """Apply a due downgrade inside the processor's transaction."""
        if not change.to_line_items_json:
            raise BillingValidationError(f"Downgrade {change.change_id} has no target line items")
        sub = await self._require(session, change.subscription_id, for_update=True)
        items = [LineItem.model_validate(item) for item in change.to_line_items_json]
        old_amount = sub.total_amount_cents
        new_amount = total_amount_cents(items)

        transition(sub.status, Trigger.DOWNGRADE)
        sub.line_items_json = _items_json(items)
        sub.total_amount_cents = new_amount
        await apply_transition(
            session,
            sub,
            Trigger.DOWNGRADE,
            EventType.DOWNGRADED,
            occurred_at=now,
            reason=change.reason,
            initiated_by=change.initiated_by,
            scheduled_change_id=change.change_id,
            from_amount_cents=old_amount,
            to_amount_cents=new_amount,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        subscription_id: str,
        *,
        reason: str | None = None,
        feedback: str | None = None,
        initiated_by: Initiator = Initiator.CUSTOMER,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Schedule cancellation at the end of the current period."""
        now = now or utcnow()
        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            if sub.cancel_at is not None:
                raise ConflictError(f"Subscription {subscription_id} is already scheduled for cancellation")
            transition(sub.status, Trigger.SCHEDULE_CANCEL)

            effect = schedule_downgrade(sub.current_period_end, ChangeType.CANCEL)
            change = await ScheduledChangeRepository(session).create(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                change_type=ChangeType.CANCEL.value,
                scheduled_for=effect.effective_at,
                reason=reason,
                initiated_by=initiated_by.value,
                metadata={"feedback": feedback} if feedback else None,
            )
            sub.cancel_at = effect.effective_at
            sub.cancellation_reason = reason
            await apply_transition(
                session,
                sub,
                Trigger.SCHEDULE_CANCEL,
                EventType.CANCEL_SCHEDULED,
                occurred_at=now,
                reason=reason,
                initiated_by=initiated_by,
                scheduled_change_id=change.change_id,
                metadata={"cancel_at": effect.effective_at.isoformat(), "feedback": feedback},
            )
            return ChangeOutcome(
                subscription_id=subscription_id,
                change_type=ChangeType.CANCEL,
                status=_status(sub),
                change_id=change.change_id,
                effective_at=effect.effective_at,
                message=effect.message,
            )

    async def finalize_cancellation(self, session: AsyncSession, change: ScheduledChangeTable, now: datetime) -> None:
        """Cancel the subscription for a due ``cancel`` change."""
        sub = await self._require(session, change.subscription_id, for_update=True)
        await apply_transition(
            session,
            sub,
            Trigger.FINALIZE_CANCEL,
            EventType.CANCELLED,
            occurred_at=now,
            reason=change.reason or sub.cancellation_reason,
            initiated_by=change.initiated_by,
            scheduled_change_id=change.change_id,
        )
        sub.cancelled_at = now
        sub.next_redemption_at = None
        sub.redemption_claimed_at = None
        await self._cancel_pending(session, sub.subscription_id)

    async def reactivate(
        self,
        subscription_id: str,
        *,
        initiated_by: Initiator = Initiator.CUSTOMER,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Withdraw a scheduled cancellation that has not started processing.

        Raises
        ------
        ConflictError
            If the cancellation is already being processed.
        """
        now = now or utcnow()
        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            if sub.cancel_at is None:
                raise BillingValidationError(f"Subscription {subscription_id} is not scheduled for cancellation")
            transition(sub.status, Trigger.REACTIVATE)

            changes = ScheduledChangeRepository(session)
            cancels = await changes.list_for_subscription(subscription_id, change_type=ChangeType.CANCEL.value)
            open_cancels = [c for c in cancels if c.status in (ChangeStatus.SCHEDULED.value, ChangeStatus.PROCESSING.value)]
            if not open_cancels:
                raise BillingValidationError(f"Subscription {subscription_id} has no pending cancellation")
            for change in open_cancels:
                if not await changes.try_cancel(change.change_id):
                    raise ConflictError(f"Cancellation {change.change_id} is already being processed")

            sub.cancel_at = None
            sub.cancellation_reason = None
            await apply_transition(
                session,
                sub,
                Trigger.REACTIVATE,
                EventType.REACTIVATED,
                occurred_at=now,
                initiated_by=initiated_by,
                scheduled_change_id=open_cancels[0].change_id,
            )
            return ChangeOutcome(
                subscription_id=subscription_id,
                change_type=ChangeType.CANCEL,
                status=_status(sub),
                change_id=open_cancels[0].change_id,
                effective_at=now,
                message="Your subscription will continue to renew.",
            )

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def pause(
        self,
        subscription_id: str,
        *,
        pause_until: datetime | None = None,
        reason: str | None = None,
        initiated_by: Initiator = Initiator.CUSTOMER,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Suspend billing, credit the unused days and optionally schedule the resume."""
        now = now or utcnow()
        if pause_until is not None and pause_until <= now:
            raise BillingValidationError("pause_until must be in the future")

        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            transition(sub.status, Trigger.PAUSE)
            credit = pause_credit(sub.current_period_start, sub.current_period_end, sub.total_amount_cents, now)

            changes = ScheduledChangeRepository(session)
            change = await changes.create(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                change_type=ChangeType.PAUSE.value,
                scheduled_for=now,
                status=ChangeStatus.COMPLETED.value,
                proration_amount=credit.net_amount,
                proration=credit.model_dump(mode="json"),
                reason=reason,
                initiated_by=initiated_by.value,
                processed_at=now,
            )
            record = await self._record_proration(session, sub, credit, ProrationType.PAUSE_CREDIT, change)

            sub.pause_until = pause_until
            sub.next_redemption_at = None
            await apply_transition(
                session,
                sub,
                Trigger.PAUSE,
                EventType.PAUSED,
                occurred_at=now,
                reason=reason,
                initiated_by=initiated_by,
                scheduled_change_id=change.change_id,
                metadata={
                    "pause_until": pause_until.isoformat() if pause_until else None,
                    "credit_amount": credit.credit_amount,
                },
            )

            message = "Your subscription is paused."
            if pause_until is not None:
                await changes.create(
                    workspace_id=sub.workspace_id,
                    subscription_id=sub.subscription_id,
                    change_type=ChangeType.RESUME.value,
                    scheduled_for=pause_until,
                    reason="scheduled_resume",
                    initiated_by=Initiator.SYSTEM.value,
                    metadata={"pause_change_id": change.change_id},
                )
                message = f"Your subscription is paused until {pause_until.date().isoformat()}."

            return ChangeOutcome(
                subscription_id=subscription_id,
                change_type=ChangeType.PAUSE,
                status=_status(sub),
                change_id=change.change_id,
                effective_at=now,
                proration=credit,
                proration_record_id=record.record_id,
                message=message,
            )

    async def resume(
        self,
        subscription_id: str,
        *,
        settle_immediately: bool = True,
        initiated_by: Initiator = Initiator.CUSTOMER,
        now: datetime | None = None,
    ) -> ChangeOutcome:
        """Resume a paused subscription now and start a fresh billing period."""
        now = now or utcnow()
        async with session_scope(self._session_factory) as session:
            sub = await self.apply_resume(session, subscription_id, now, initiated_by=initiated_by)
            outcome = ChangeOutcome(
                subscription_id=subscription_id,
                change_type=ChangeType.RESUME,
                status=_status(sub),
                effective_at=now,
                message="Your subscription is active again.",
            )
            redeem = sub.next_redemption_at is not None

        if settle_immediately and redeem and self._redemptions is not None:
            try:
                outcome.charge = await self._redemptions.redeem(subscription_id, now=now)
            except BillingError as exc:
                logger.warning("Subscription %s resumed but its payment failed: %s", subscription_id, exc)
                outcome.charge_error = str(exc)
        return outcome

    async def apply_resume(
        self,
        session: AsyncSession,
        subscription_id: str,
        now: datetime,
        *,
        initiated_by: Initiator | str = Initiator.SYSTEM,
        scheduled_change_id: str | None = None,
    ) -> SubscriptionTable:
        """``suspended -> active`` with a new period starting at *now*."""
        sub = await self._require(session, subscription_id, for_update=True)
        await apply_transition(
            session,
            sub,
            Trigger.RESUME,
            EventType.RESUMED,
            occurred_at=now,
            initiated_by=initiated_by,
            scheduled_change_id=scheduled_change_id,
        )
        sub.pause_until = None
        sub.current_period_start = now
        sub.current_period_end = add_billing_period(now, sub.interval_unit, sub.interval_count)
        sub.next_redemption_at = now if sub.price_type == PriceType.RECURRING.value else None

        changes = ScheduledChangeRepository(session)
        leftover = await changes.list_for_subscription(
            subscription_id,
            change_type=ChangeType.RESUME.value,
            status=ChangeStatus.SCHEDULED.value,
        )
        for change in leftover:
            await changes.try_cancel(change.change_id)
        return sub

    # ------------------------------------------------------------------
    # Preview / delete
    # ------------------------------------------------------------------

    async def preview_change(
        self,
        subscription_id: str,
        change_type: ChangeType,
        new_line_items: list[LineItem] | None = None,
        *,
        now: datetime | None = None,
    ) -> ChangePreview:
        """Estimate an upgrade, downgrade or cancellation without writing anything."""
        now = now or utcnow()
        change_type = ChangeType(change_type)
        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id)

        current = sub.total_amount_cents
        if change_type == ChangeType.UPGRADE:
            if not new_line_items:
                raise BillingValidationError("An upgrade preview needs the new line items")
            new_amount = total_amount_cents(new_line_items)
            proration = upgrade_proration(sub.current_period_start, sub.current_period_end, current, new_amount, now)
            return ChangePreview(
                subscription_id=subscription_id,
                change_type=change_type,
                effective_at=now,
                current_amount_cents=current,
                new_amount_cents=new_amount,
                proration=proration,
                immediate_charge_cents=max(round(proration.net_amount), 0),
                explanation=format_proration_explanation(proration, sub.currency),
            )

        if change_type == ChangeType.DOWNGRADE:
            if not new_line_items:
                raise BillingValidationError("A downgrade preview needs the new line items")
            new_amount = total_amount_cents(new_line_items)
        elif change_type == ChangeType.CANCEL:
            new_amount = 0
        else:
            raise BillingValidationError(f"Cannot preview '{change_type.value}' changes")

        effect = schedule_downgrade(sub.current_period_end, change_type)
        return ChangePreview(
            subscription_id=subscription_id,
            change_type=change_type,
            effective_at=effect.effective_at,
            current_amount_cents=current,
            new_amount_cents=new_amount,
            explanation=effect.message,
        )

    async def delete(self, subscription_id: str) -> None:
        """Remove a cancelled or expired subscription."""
        async with session_scope(self._session_factory) as session:
            sub = await self._require(session, subscription_id, for_update=True)
            if _status(sub) not in TERMINAL_STATUSES:
                raise BillingValidationError(
                    f"Only cancelled or expired subscriptions can be deleted (status '{sub.status}')"
                )
            await SubscriptionRepository(session).delete(sub)
        logger.info("Deleted subscription %s", subscription_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _require(session: AsyncSession, subscription_id: str, *, for_update: bool = False) -> SubscriptionTable:
        sub = await SubscriptionRepository(session).get(subscription_id, for_update=for_update)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return sub

    @staticmethod
    async def _record_proration(
        session: AsyncSession,
        sub: SubscriptionTable,
        result: ProrationResult,
        proration_type: ProrationType,
        change: ScheduledChangeTable,
    ) -> ProrationRecordTable:
        return await ProrationRecordRepository(session).create(
            subscription_id=sub.subscription_id,
            proration_type=proration_type.value,
            period_start=result.period_start,
            period_end=result.period_end,
            days_total=result.days_total,
            days_used=result.days_used,
            days_remaining=result.days_remaining,
            original_amount=result.old_amount,
            used_amount=result.used_amount,
            credit_amount=result.credit_amount,
            charge_amount=result.charge_amount,
            net_amount=result.net_amount,
            scheduled_change_id=change.change_id,
        )

    @staticmethod
    async def _cancel_pending(session: AsyncSession, subscription_id: str) -> None:
        changes = ScheduledChangeRepository(session)
        pending = await changes.list_for_subscription(subscription_id, status=ChangeStatus.SCHEDULED.value)
        for change in pending:
            await changes.try_cancel(change.change_id)
