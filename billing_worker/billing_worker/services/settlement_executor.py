"""Settle delegated payments and record them in the ledger.

A settlement runs in three stages:

1. **Submit.**  The execution service receives the delegation proof and the
   transfer payload, keyed by the redemption key.  Nothing is written to the
   database before it returns a transaction hash.
2. **Phase 1.**  One transaction writes the ``redeemed`` event, the payment,
   the redemption-schedule update and the wallet usage timestamp.  A payment
   that brings a subscription (or a first purchase) out of dunning closes the
   active campaign in the same transaction.  Every step is keyed by the
   transaction hash so replaying it is harmless.
3. **Phase 2.**  A separate transaction creates the invoice.  A failure here
   only leaves an uninvoiced payment for the reconciliation scan.

If phase 1 fails after a successful submission, the transaction hash is
persisted in a ``settlement_failures`` row from a fresh session and
:class:`~billing_engine.errors.BookkeepingError` is raised.  Any later
attempt for the same redemption key finishes bookkeeping with that hash and
never submits the transfer a second time.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import (
    BillingError,
    BillingValidationError,
    BookkeepingError,
    ErrorKind,
    ExecutionUnavailableError,
    InvalidTransitionError,
    NotFoundError,
)
from billing_engine.lifecycle import Trigger
from billing_engine.models.settlement import (
    BookkeepingStep,
    DelegationProof,
    ExecutionPayload,
    InitialSettlementRequest,
    SettlementContext,
    SettlementKind,
    SettlementResult,
)
from billing_engine.models.subscription import (
    REDEEMABLE_STATUSES,
    EventType,
    Initiator,
    PriceType,
    SubscriptionStatus,
    total_amount_cents,
)
from billing_engine.proration import add_billing_period
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DelegationRepository,
    PaymentRepository,
    ProrationRecordRepository,
    SettlementFailureRepository,
    StateChangeRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
    WalletRepository,
    new_id,
)
from billing_engine.state.tables import (
    DelegationTable,
    PaymentTable,
    SubscriptionEventTable,
    SubscriptionTable,
)
from billing_worker.clients.calculators import ExchangeRateProvider, StablecoinExchangeRate
from billing_worker.clients.execution_client import ExecutionService
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.invoice_service import InvoiceService
from billing_worker.services.ledger import apply_transition, utcnow

logger = logging.getLogger(__name__)


class SettlementPlan(BaseModel):
    """Everything phase 1 needs to record one settlement.

    Stored on bookkeeping failures so reconciliation can replay phase 1 with
    exactly the values the original attempt used.
    """

    kind: SettlementKind
    redemption_key: str
    workspace_id: str
    customer_id: str
    subscription_id: str
    amount_cents: int = Field(..., gt=0)
    token_amount: int = Field(..., gt=0)
    currency: str
    chain_id: int
    wallet_address: str
    period_start: datetime
    period_end: datetime
    proration_record_id: str | None = None
    initial: InitialSettlementRequest | None = Field(
        default=None,
        description="Original request for initial settlements; creates the subscription in phase 1.",
    )


_STEPS: dict[SettlementKind, tuple[BookkeepingStep, ...]] = {
    SettlementKind.INITIAL: (
        BookkeepingStep.SUBSCRIPTION,
        BookkeepingStep.REDEEMED_EVENT,
        BookkeepingStep.PAYMENT,
        BookkeepingStep.REDEMPTION_SCHEDULE,
        BookkeepingStep.WALLET_USAGE,
    ),
    SettlementKind.RECURRING: (
        BookkeepingStep.REDEEMED_EVENT,
        BookkeepingStep.PAYMENT,
        BookkeepingStep.REDEMPTION_SCHEDULE,
        BookkeepingStep.WALLET_USAGE,
    ),
    SettlementKind.PRORATION: (
        BookkeepingStep.REDEEMED_EVENT,
        BookkeepingStep.PAYMENT,
        BookkeepingStep.WALLET_USAGE,
    ),
}


@dataclass
class _Ledger:
    """Rows produced by phase 1, shared between its steps."""

    subscription: SubscriptionTable | None = None
    event: SubscriptionEventTable | None = None
    payment: PaymentTable | None = None
    completed_subscription: bool = False


_StepHandler = Callable[[AsyncSession, SettlementPlan, str, _Ledger, datetime], Awaitable[None]]


def _proof_from_row(row: DelegationTable) -> DelegationProof:
    return DelegationProof(
        delegate=row.delegate,
        delegator=row.delegator,
        authority=row.authority,
        caveats=list(row.caveats_json or []),
        salt=row.salt,
        signature=row.signature,
        expires_at=row.expires_at,
    )


class SettlementExecutor:
    """Submit settlements and drive their two-phase bookkeeping.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions each stage runs in.
    execution_service:
        Client for the delegated-transfer execution service.
    invoice_service:
        Phase-2 invoicer.  Defaults to one with zero tax and discount.
    exchange_rate:
        Converts fiat minor units into token base units.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        execution_service: ExecutionService,
        *,
        invoice_service: InvoiceService | None = None,
        exchange_rate: ExchangeRateProvider | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._execution = execution_service
        self._invoices = invoice_service or InvoiceService()
        self._exchange = exchange_rate or StablecoinExchangeRate()
        self._step_handlers: dict[BookkeepingStep, _StepHandler] = {
            BookkeepingStep.SUBSCRIPTION: self._step_subscription,
            BookkeepingStep.REDEEMED_EVENT: self._step_redeemed_event,
            BookkeepingStep.PAYMENT: self._step_payment,
            BookkeepingStep.REDEMPTION_SCHEDULE: self._step_redemption_schedule,
            BookkeepingStep.WALLET_USAGE: self._step_wallet_usage,
        }

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def execute_initial(
        self,
        request: InitialSettlementRequest,
        *,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Settle the first payment and create the subscription it pays for."""
        now = now or utcnow()
        amount = total_amount_cents(request.line_items)
        if amount <= 0:
            raise BillingValidationError("Initial settlement amount must be positive")

        context = request.context
        plan = SettlementPlan(
            kind=SettlementKind.INITIAL,
            redemption_key=request.redemption_key(),
            workspace_id=request.workspace_id,
            customer_id=request.customer_id,
            subscription_id=new_id(),
            amount_cents=amount,
            token_amount=self._token_amount(amount, request.currency, context),
            currency=request.currency,
            chain_id=context.chain_id,
            wallet_address=context.customer_wallet_address,
            period_start=now,
            period_end=add_billing_period(now, request.plan.interval_unit, request.plan.interval_count),
            initial=request,
        )
        return await self._settle(plan, request.delegation, context, now)

    async def execute_redemption(
        self,
        subscription_id: str,
        *,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Settle the next recurring payment of *subscription_id*."""
        now = now or utcnow()
        async with session_scope(self._session_factory) as session:
            sub, proof, context = await self._load_for_settlement(session, subscription_id)
            if sub.price_type != PriceType.RECURRING.value:
                raise BillingValidationError(f"Subscription {subscription_id} is not recurring")
            if sub.term_length is not None and sub.total_redemptions >= sub.term_length:
                raise BillingValidationError(
                    f"Subscription {subscription_id} has reached its term of {sub.term_length} redemptions"
                )
            due = sub.next_redemption_at or now
            plan = SettlementPlan(
                kind=SettlementKind.RECURRING,
                redemption_key=f"{sub.subscription_id}:{sub.total_redemptions + 1}",
                workspace_id=sub.workspace_id,
                customer_id=sub.customer_id,
                subscription_id=sub.subscription_id,
                amount_cents=self._positive(sub.total_amount_cents),
                token_amount=self._token_amount(sub.total_amount_cents, sub.currency, context),
                currency=sub.currency,
                chain_id=context.chain_id,
                wallet_address=context.customer_wallet_address,
                period_start=due,
                period_end=add_billing_period(due, sub.interval_unit, sub.interval_count),
            )
        return await self._settle(plan, proof, context, now)

    async def execute_charge(
        self,
        subscription_id: str,
        amount_cents: int,
        reference: str,
        *,
        proration_record_id: str | None = None,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Settle a one-off proration charge keyed by *reference*."""
        now = now or utcnow()
        async with session_scope(self._session_factory) as session:
            sub, proof, context = await self._load_for_settlement(session, subscription_id)
            plan = SettlementPlan(
                kind=SettlementKind.PRORATION,
                redemption_key=reference,
                workspace_id=sub.workspace_id,
                customer_id=sub.customer_id,
                subscription_id=sub.subscription_id,
                amount_cents=self._positive(amount_cents),
                token_amount=self._token_amount(amount_cents, sub.currency, context),
                currency=sub.currency,
                chain_id=context.chain_id,
                wallet_address=context.customer_wallet_address,
                period_start=now,
                period_end=max(sub.current_period_end, now),
                proration_record_id=proration_record_id,
            )
        return await self._settle(plan, proof, context, now)

    async def complete_bookkeeping(
        self,
        plan: SettlementPlan,
        transaction_hash: str,
        *,
        submitted: bool = False,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Run phase 1 and phase 2 for a transaction that already settled.

        Raises
        ------
        BookkeepingError
            If phase 1 fails.  A failure row carrying *transaction_hash* is
            written before raising.
        """
        now = now or utcnow()
        ledger = _Ledger()
        completed: list[str] = []
        current: BookkeepingStep | None = None
        try:
            async with session_scope(self._session_factory) as session:
                for step in _STEPS[plan.kind]:
                    current = step
                    await self._step_handlers[step](session, plan, transaction_hash, ledger, now)
                    completed.append(step.value)
                current = None
                await SettlementFailureRepository(session).resolve_for_key(plan.redemption_key, now)
        except Exception as exc:
            failed_step = current.value if current is not None else None
            logger.error(
                "Bookkeeping failed after settlement key=%s tx=%s step=%s completed=%s",
                plan.redemption_key,
                transaction_hash,
                failed_step,
                completed,
                exc_info=True,
                extra={
                    "settlement": {
                        "redemption_key": plan.redemption_key,
                        "transaction_hash": transaction_hash,
                        "failed_step": failed_step,
                    }
                },
            )
            await self._record_bookkeeping_failure(plan, transaction_hash, completed, failed_step, exc)
            raise BookkeepingError(
                f"Settlement {transaction_hash} succeeded but bookkeeping failed at {failed_step}: {exc}",
                transaction_hash=transaction_hash,
                completed_steps=completed,
                failed_step=failed_step,
            ) from exc

        assert ledger.payment is not None  # noqa: S101
        invoice_id = await self._invoice(ledger.payment.payment_id, now)
        logger.info(
            "Settlement recorded key=%s tx=%s kind=%s amount=%d",
            plan.redemption_key,
            transaction_hash,
            plan.kind.value,
            plan.amount_cents,
            extra={"settlement": {"redemption_key": plan.redemption_key, "transaction_hash": transaction_hash}},
        )
        return SettlementResult(
            redemption_key=plan.redemption_key,
            transaction_hash=transaction_hash,
            kind=plan.kind,
            subscription_id=plan.subscription_id,
            payment_id=ledger.payment.payment_id,
            invoice_id=invoice_id,
            amount_cents=plan.amount_cents,
            token_amount=plan.token_amount,
            submitted=submitted,
            completed_subscription=ledger.completed_subscription,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def _settle(
        self,
        plan: SettlementPlan,
        proof: DelegationProof,
        context: SettlementContext,
        now: datetime,
    ) -> SettlementResult:
        async with session_scope(self._session_factory) as session:
            settled = await SubscriptionEventRepository(session).get_by_redemption_key(plan.redemption_key)
            if settled is not None and settled.transaction_hash:
                payment = await PaymentRepository(session).get_by_transaction(settled.transaction_hash)
                logger.info("Redemption %s already settled as %s", plan.redemption_key, settled.transaction_hash)
                return SettlementResult(
                    redemption_key=plan.redemption_key,
                    transaction_hash=settled.transaction_hash,
                    kind=plan.kind,
                    subscription_id=settled.subscription_id,
                    payment_id=payment.payment_id if payment else None,
                    invoice_id=payment.invoice_id if payment else None,
                    amount_cents=settled.amount_cents,
                    token_amount=payment.token_amount if payment else 0,
                    submitted=False,
                )

            failures = SettlementFailureRepository(session)
            pending = await failures.get_open_bookkeeping(plan.redemption_key)
            timed_out = await failures.has_open_timeout(plan.redemption_key)
            pending_tx = pending.transaction_hash if pending is not None else None
            pending_plan = pending.request_json if pending is not None else None

        if pending_tx:
            logger.warning(
                "Completing bookkeeping for %s with stored transaction %s; not resubmitting",
                plan.redemption_key,
                pending_tx,
            )
            stored = SettlementPlan.model_validate(pending_plan) if pending_plan else plan
            return await self.complete_bookkeeping(stored, pending_tx, submitted=False, now=now)

        payload = ExecutionPayload(
            recipient=context.merchant_wallet_address,
            token_address=context.token_address,
            token_amount=plan.token_amount,
            chain_id=context.chain_id,
            reference=plan.redemption_key,
        )
        try:
            if timed_out:
                found = await self._execution.find_submission(plan.redemption_key)
                if found:
                    logger.info("Found earlier submission %s for %s", found, plan.redemption_key)
                    return await self.complete_bookkeeping(plan, found, submitted=False, now=now)
            tx_hash = await self._execution.submit(proof, payload, idempotency_key=plan.redemption_key)
        except BillingError as exc:
            if exc.kind not in (ErrorKind.EXECUTION_REJECTED, ErrorKind.EXECUTION_UNAVAILABLE):
                raise
            await self._record_submission_failure(plan, exc)
            raise

        return await self.complete_bookkeeping(plan, tx_hash, submitted=True, now=now)

    async def _load_for_settlement(
        self,
        session: AsyncSession,
        subscription_id: str,
    ) -> tuple[SubscriptionTable, DelegationProof, SettlementContext]:
        sub = await SubscriptionRepository(session).get(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if SubscriptionStatus(sub.status) not in REDEEMABLE_STATUSES:
            raise InvalidTransitionError("charge", sub.status)
        delegation = await DelegationRepository(session).get(sub.delegation_id)
        if delegation is None:
            raise BillingValidationError(f"Subscription {subscription_id} has no stored delegation")
        context = SettlementContext.model_validate(sub.settlement_context_json)
        return sub, _proof_from_row(delegation), context

    def _token_amount(self, amount_cents: int, currency: str, context: SettlementContext) -> int:
        tokens = self._exchange.to_token_amount(amount_cents, currency, context.token_decimals)
        if tokens <= 0:
            raise BillingValidationError(f"Amount {amount_cents} {currency} converts to no tokens")
        return tokens

    @staticmethod
    def _positive(amount_cents: int) -> int:
        if amount_cents <= 0:
            raise BillingValidationError(f"Settlement amount must be positive (got {amount_cents})")
        return amount_cents

    # ------------------------------------------------------------------
    # Phase 1 steps
    # ------------------------------------------------------------------

    async def _subscription(self, session: AsyncSession, plan: SettlementPlan, ledger: _Ledger) -> SubscriptionTable:
        if ledger.subscription is None:
            sub = await SubscriptionRepository(session).get(plan.subscription_id, for_update=True)
            if sub is None:
                raise NotFoundError(f"Subscription {plan.subscription_id} not found")
            ledger.subscription = sub
        return ledger.subscription

    async def _step_subscription(
        self,
        session: AsyncSession,
        plan: SettlementPlan,
        tx_hash: str,
        ledger: _Ledger,
        now: datetime,
    ) -> None:
        request = plan.initial
        if request is None:
            raise BillingValidationError("Initial settlement plan is missing its request")

        subs = SubscriptionRepository(session)
        existing = await subs.get(plan.subscription_id, for_update=True)
        if existing is not None:
            ledger.subscription = existing
            return

        wallet = await WalletRepository(session).get_or_create(
            workspace_id=request.workspace_id,
            customer_id=request.customer_id,
            wallet_address=request.context.customer_wallet_address,
            chain_id=request.context.chain_id,
        )
        proof = request.delegation
        delegation = await DelegationRepository(session).get_or_create(
            workspace_id=request.workspace_id,
            delegate=proof.delegate,
            delegator=proof.delegator,
            authority=proof.authority,
            caveats=proof.caveats,
            salt=proof.salt,
            signature=proof.signature,
            expires_at=proof.expires_at,
        )
        line_items = [item.model_dump(mode="json") for item in request.line_items]
        sub = await subs.create(
            subscription_id=plan.subscription_id,
            workspace_id=request.workspace_id,
            customer_id=request.customer_id,
            product_id=request.product_id,
            status=SubscriptionStatus.ACTIVE.value,
            line_items_json=line_items,
            total_amount_cents=plan.amount_cents,
            currency=request.currency,
            price_type=request.plan.price_type.value,
            interval_unit=request.plan.interval_unit.value,
            interval_count=request.plan.interval_count,
            term_length=request.plan.term_length,
            current_period_start=plan.period_start,
            current_period_end=plan.period_end,
            next_redemption_at=None,
            delegation_id=delegation.delegation_id,
            customer_wallet_id=wallet.wallet_id,
            settlement_context_json=request.context.model_dump(mode="json"),
            metadata_json=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )
        await SubscriptionEventRepository(session).append(
            workspace_id=sub.workspace_id,
            subscription_id=sub.subscription_id,
            event_type=EventType.CREATED.value,
            occurred_at=now,
            amount_cents=plan.amount_cents,
            metadata={"product_id": sub.product_id, "redemption_key": plan.redemption_key},
        )
        await StateChangeRepository(session).record(
            subscription_id=sub.subscription_id,
            from_status=None,
            to_status=sub.status,
            to_amount_cents=sub.total_amount_cents,
            line_items_snapshot=line_items,
            reason="subscription_created",
            initiated_by=Initiator.CUSTOMER.value,
            created_at=now,
        )
        ledger.subscription = sub
        await DunningService(session).recover_for_payment(
            plan.redemption_key, amount_cents=plan.amount_cents, subscription_id=sub.subscription_id, now=now
        )

    async def _step_redeemed_event(
        self,
        session: AsyncSession,
        plan: SettlementPlan,
        tx_hash: str,
        ledger: _Ledger,
        now: datetime,
    ) -> None:
        ledger.event = await SubscriptionEventRepository(session).record_settlement(
            workspace_id=plan.workspace_id,
            subscription_id=plan.subscription_id,
            event_type=EventType.REDEEMED.value,
            redemption_key=plan.redemption_key,
            transaction_hash=tx_hash,
            amount_cents=plan.amount_cents,
            occurred_at=now,
            metadata={
                "kind": plan.kind.value,
                "token_amount": plan.token_amount,
                "period_start": plan.period_start.isoformat(),
                "period_end": plan.period_end.isoformat(),
            },
        )

    async def _step_payment(
        self,
        session: AsyncSession,
        plan: SettlementPlan,
        tx_hash: str,
        ledger: _Ledger,
        now: datetime,
    ) -> None:
        assert ledger.event is not None  # noqa: S101
        ledger.payment = await PaymentRepository(session).record(
            workspace_id=plan.workspace_id,
            subscription_id=plan.subscription_id,
            subscription_event_id=ledger.event.event_id,
            customer_id=plan.customer_id,
            kind=plan.kind.value,
            amount_cents=plan.amount_cents,
            token_amount=plan.token_amount,
            currency=plan.currency,
            transaction_hash=tx_hash,
            chain_id=plan.chain_id,
            period_start=plan.period_start,
            period_end=plan.period_end,
            created_at=now,
        )
        if plan.proration_record_id:
            await ProrationRecordRepository(session).link_payment(plan.proration_record_id, ledger.payment.payment_id)

    async def _step_redemption_schedule(
        self,
        session: AsyncSession,
        plan: SettlementPlan,
        tx_hash: str,
        ledger: _Ledger,
        now: datetime,
    ) -> None:
        sub = await self._subscription(session, plan, ledger)
        if sub.last_redemption_tx == tx_hash:
            ledger.completed_subscription = sub.status == SubscriptionStatus.COMPLETED.value
            return

        sub.total_redemptions += 1
        sub.total_amount_charged_cents += plan.amount_cents
        sub.last_redemption_tx = tx_hash
        sub.current_period_start = plan.period_start
        sub.current_period_end = plan.period_end
        sub.redemption_claimed_at = None
        sub.updated_at = now

        if sub.price_type != PriceType.RECURRING.value:
            reason = "one_time_purchase"
        elif sub.term_length is not None and sub.total_redemptions >= sub.term_length:
            reason = "term_limit_reached"
        else:
            reason = None

        if reason is not None:
            sub.next_redemption_at = None
            await apply_transition(
                session,
                sub,
                Trigger.COMPLETE,
                EventType.COMPLETED,
                occurred_at=now,
                reason=reason,
                transaction_hash=tx_hash,
                metadata={"total_redemptions": sub.total_redemptions},
            )
            ledger.completed_subscription = True
            return

        sub.next_redemption_at = plan.period_end
        if sub.status == SubscriptionStatus.OVERDUE.value:
            await apply_transition(
                session,
                sub,
                Trigger.RECOVER,
                EventType.RECOVERED,
                occurred_at=now,
                reason="payment_recovered",
                transaction_hash=tx_hash,
            )
            await DunningService(session).recover_for_subscription(
                sub.subscription_id, amount_cents=plan.amount_cents, now=now
            )

    async def _step_wallet_usage(
        self,
        session: AsyncSession,
        plan: SettlementPlan,
        tx_hash: str,
        ledger: _Ledger,
        now: datetime,
    ) -> None:
        sub = await self._subscription(session, plan, ledger)
        await WalletRepository(session).touch(sub.customer_wallet_id, now)

    # ------------------------------------------------------------------
    # Phase 2 and failure records
    # ------------------------------------------------------------------

    async def _invoice(self, payment_id: str, now: datetime) -> str | None:
        try:
            async with session_scope(self._session_factory) as session:
                invoice = await self._invoices.invoice_payment(session, payment_id, now=now)
                invoice_id = invoice.invoice_id
        except Exception:
            logger.warning("Invoice for payment %s left to reconciliation", payment_id, exc_info=True)
            return None
        return invoice_id

    async def _record_submission_failure(self, plan: SettlementPlan, exc: BillingError) -> None:
        timed_out = isinstance(exc, ExecutionUnavailableError) and exc.timed_out
        logger.warning(
            "Settlement %s not executed (%s%s): %s",
            plan.redemption_key,
            exc.kind.value,
            ", timed out" if timed_out else "",
            exc,
        )
        async with session_scope(self._session_factory) as session:
            await SettlementFailureRepository(session).record(
                workspace_id=plan.workspace_id,
                subscription_id=None if plan.kind == SettlementKind.INITIAL else plan.subscription_id,
                redemption_key=plan.redemption_key,
                kind=plan.kind.value,
                error_kind=exc.kind.value,
                error_message=str(exc),
                wallet_address=plan.wallet_address,
                timed_out=timed_out,
                request=plan.model_dump(mode="json"),
            )

    async def _record_bookkeeping_failure(
        self,
        plan: SettlementPlan,
        tx_hash: str,
        completed: list[str],
        failed_step: str | None,
        exc: Exception,
    ) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                await SettlementFailureRepository(session).record(
                    workspace_id=plan.workspace_id,
                    subscription_id=None if plan.kind == SettlementKind.INITIAL else plan.subscription_id,
                    redemption_key=plan.redemption_key,
                    kind=plan.kind.value,
                    error_kind=ErrorKind.BOOKKEEPING_FAILURE.value,
                    error_message=str(exc) or type(exc).__name__,
                    wallet_address=plan.wallet_address,
                    transaction_hash=tx_hash,
                    completed_steps=list(completed),
                    failed_step=failed_step,
                    request=plan.model_dump(mode="json"),
                )
        except Exception:
            logger.critical(
                "Could not persist bookkeeping failure key=%s tx=%s; manual reconciliation required",
                plan.redemption_key,
                tx_hash,
                exc_info=True,
            )
