"""Due-redemption sweep.

Finds recurring subscriptions whose next redemption has arrived, claims each
one with a conditional update and settles it through the executor.  A
rejected or unavailable settlement moves an active subscription to
``overdue`` and opens a dunning campaign; from then on the campaign owns the
retries and the sweep leaves the subscription alone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import (
    BillingError,
    BillingValidationError,
    BookkeepingError,
    ConfigurationError,
    ConflictError,
    DelegationExpiredError,
    ErrorKind,
    NotFoundError,
)
from billing_engine.lifecycle import Trigger
from billing_engine.models.settlement import SettlementResult
from billing_engine.models.subscription import EventType, SubscriptionStatus
from billing_engine.state.database import session_scope
from billing_engine.state.repository import (
    DelegationRepository,
    DunningCampaignRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import SubscriptionTable
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.ledger import apply_transition, utcnow
from billing_worker.services.settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)

_SETTLEMENT_FAILURES = (ErrorKind.EXECUTION_REJECTED, ErrorKind.EXECUTION_UNAVAILABLE)


class RedemptionService:
    """Claim, settle and release due subscriptions.

    Parameters
    ----------
    session_factory:
        Factory for per-subscription sessions.
    executor:
        Settlement executor used for each redemption.
    batch_size:
        Maximum number of subscriptions handled per sweep.
    claim_ttl_seconds:
        Age after which an unreleased claim is considered abandoned.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: SettlementExecutor,
        *,
        batch_size: int = 100,
        claim_ttl_seconds: int = 900,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._batch_size = batch_size
        self._claim_ttl = claim_ttl_seconds

    async def process_due_subscriptions(self, now: datetime | None = None) -> dict[str, Any]:
        """Redeem every due subscription once and return a summary."""
        now = now or utcnow()
        summary = {
            "due": 0,
            "settled": 0,
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "expired": 0,
            "bookkeeping": 0,
            "errors": 0,
        }

        async with session_scope(self._session_factory) as session:
            due = await SubscriptionRepository(session).list_due(now, limit=self._batch_size)
            campaigns = DunningCampaignRepository(session)
            candidates: list[str] = []
            for sub in due:
                if sub.status == SubscriptionStatus.OVERDUE.value:
                    if await campaigns.get_active_for_subscription(sub.subscription_id) is not None:
                        continue
                candidates.append(sub.subscription_id)

        summary["due"] = len(candidates)
        for subscription_id in candidates:
            try:
                result = await self.redeem(subscription_id, now=now)
            except ConflictError:
                summary["skipped"] += 1
                continue
            except DelegationExpiredError:
                summary["expired"] += 1
                continue
            except BookkeepingError:
                summary["bookkeeping"] += 1
                continue
            except (OperationalError, InterfaceError):
                raise
            except BillingError as exc:
                if exc.kind in _SETTLEMENT_FAILURES:
                    summary["failed"] += 1
                else:
                    logger.error("Redemption of %s rejected: %s", subscription_id, exc)
                    summary["errors"] += 1
                continue
            except Exception:
                logger.error("Redemption of %s failed unexpectedly", subscription_id, exc_info=True)
                summary["errors"] += 1
                continue

            summary["settled"] += 1
            if result.completed_subscription:
                summary["completed"] += 1

        logger.info(
            "Redemption sweep: due=%d settled=%d failed=%d skipped=%d expired=%d bookkeeping=%d errors=%d",
            summary["due"],
            summary["settled"],
            summary["failed"],
            summary["skipped"],
            summary["expired"],
            summary["bookkeeping"],
            summary["errors"],
        )
        return summary

    async def redeem(self, subscription_id: str, *, now: datetime | None = None) -> SettlementResult:
        """Settle one due subscription, opening a campaign if the payment fails.

        Raises
        ------
        ConflictError
            If the next redemption is not due at *now* or another worker
            holds the claim.
        """
        return await self._redeem(subscription_id, now or utcnow(), from_dunning=False)

    async def retry_subscription(self, subscription_id: str, *, now: datetime | None = None) -> SettlementResult:
        """Dunning retry: same as :meth:`redeem` but never opens a campaign."""
        return await self._redeem(subscription_id, now or utcnow(), from_dunning=True)

    async def _redeem(self, subscription_id: str, now: datetime, *, from_dunning: bool) -> SettlementResult:
        async with session_scope(self._session_factory) as session:
            subs = SubscriptionRepository(session)
            sub = await subs.get(subscription_id)
            if sub is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            if sub.next_redemption_at is None:
                raise BillingValidationError(f"Subscription {subscription_id} has no redemption scheduled")
            if sub.next_redemption_at > now:
                raise ConflictError(
                    f"Subscription {subscription_id} is not due until {sub.next_redemption_at.isoformat()}"
                )
            lapsed_at = await self._expire_if_delegation_lapsed(session, sub, now)
            if lapsed_at is None:
                claimed = await subs.claim_redemption(
                    subscription_id,
                    expected_next_redemption=sub.next_redemption_at,
                    now=now,
                    claim_ttl_seconds=self._claim_ttl,
                )
        if lapsed_at is not None:
            raise DelegationExpiredError(
                f"Delegation for subscription {subscription_id} expired at {lapsed_at.isoformat()}"
            )
        if not claimed:
            raise ConflictError(f"Subscription {subscription_id} is already being redeemed")

        try:
            result = await self._executor.execute_redemption(subscription_id, now=now)
        except BillingError as exc:
            if exc.kind in _SETTLEMENT_FAILURES:
                await self._record_failure(subscription_id, exc, now, start_dunning=not from_dunning)
            raise
        finally:
            async with session_scope(self._session_factory) as session:
                await SubscriptionRepository(session).release_redemption_claim(subscription_id)

        if not from_dunning:
            async with session_scope(self._session_factory) as session:
                await DunningService(session).recover_for_subscription(
                    subscription_id, amount_cents=result.amount_cents, now=now
                )
        return result

    async def _expire_if_delegation_lapsed(
        self, session: AsyncSession, sub: SubscriptionTable, now: datetime
    ) -> datetime | None:
        """Expire *sub* when its delegation has lapsed and return the lapse time."""
        delegation = await DelegationRepository(session).get(sub.delegation_id)
        if delegation is None or delegation.expires_at is None or delegation.expires_at > now:
            return None
        await apply_transition(
            session,
            sub,
            Trigger.EXPIRE,
            EventType.EXPIRED,
            occurred_at=now,
            reason="delegation_expired",
            metadata={"delegation_id": delegation.delegation_id},
        )
        sub.next_redemption_at = None
        campaigns = DunningCampaignRepository(session)
        campaign = await campaigns.get_active_for_subscription(sub.subscription_id)
        if campaign is not None:
            await campaigns.try_fail(campaign.campaign_id, expected_attempt=campaign.current_attempt, now=now)
        logger.info("Subscription %s expired: delegation lapsed at %s", sub.subscription_id, delegation.expires_at)
        return delegation.expires_at

    async def _record_failure(
        self,
        subscription_id: str,
        exc: BillingError,
        now: datetime,
        *,
        start_dunning: bool,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            sub = await SubscriptionRepository(session).get(subscription_id, for_update=True)
            if sub is None:
                return
            await SubscriptionEventRepository(session).append(
                workspace_id=sub.workspace_id,
                subscription_id=sub.subscription_id,
                event_type=EventType.FAILED.value,
                occurred_at=now,
                amount_cents=sub.total_amount_cents,
                metadata={"error_kind": exc.kind.value, "error": str(exc)[:500]},
            )
            if sub.status == SubscriptionStatus.ACTIVE.value:
                await apply_transition(
                    session,
                    sub,
                    Trigger.MARK_OVERDUE,
                    EventType.OVERDUE,
                    occurred_at=now,
                    reason=exc.kind.value,
                )
            if not start_dunning:
                return
            try:
                await DunningService(session).start_campaign(
                    workspace_id=sub.workspace_id,
                    customer_id=sub.customer_id,
                    amount_cents=sub.total_amount_cents,
                    currency=sub.currency,
                    reason=str(exc)[:500],
                    subscription_id=sub.subscription_id,
                    now=now,
                )
            except ConflictError:
                logger.info("Subscription %s already has an active dunning campaign", subscription_id)
            except ConfigurationError as cfg_exc:
                logger.warning("No dunning campaign for %s: %s", subscription_id, cfg_exc)
