"""Scheduled-change sweep.

Due changes are claimed one at a time with a ``scheduled -> processing``
conditional update, applied in their own transaction and then marked
``completed`` or ``failed``.  Running the sweep twice, or from two processes
at once, applies every change exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import BillingError, BillingValidationError
from billing_engine.models.subscription import ChangeType
from billing_engine.state.database import session_scope
from billing_engine.state.repository import ScheduledChangeRepository
from billing_engine.state.tables import ScheduledChangeTable
from billing_worker.services.ledger import utcnow
from billing_worker.services.redemption_service import RedemptionService
from billing_worker.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

_ChangeHandler = Callable[[AsyncSession, ScheduledChangeTable, datetime], Awaitable[None]]


class ScheduledChangeProcessor:
    """Apply due scheduled changes.

    Parameters
    ----------
    session_factory:
        Factory for per-change sessions.
    subscriptions:
        Lifecycle service that performs the actual mutations.
    redemptions:
        Settles the first payment after a scheduled resume.
    batch_size:
        Maximum number of changes handled per sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionService,
        *,
        redemptions: RedemptionService | None = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._subscriptions = subscriptions
        self._redemptions = redemptions
        self._batch_size = batch_size
        self._handlers: dict[ChangeType, _ChangeHandler] = {
            ChangeType.DOWNGRADE: self._subscriptions.apply_downgrade,
            ChangeType.CANCEL: self._subscriptions.finalize_cancellation,
            ChangeType.RESUME: self._apply_resume,
        }

    async def process_due_changes(self, now: datetime | None = None) -> dict[str, int]:
        """Claim and apply every due change; return per-outcome counts."""
        now = now or utcnow()
        summary = {"due": 0, "claimed": 0, "completed": 0, "failed": 0, "skipped": 0}

        async with session_scope(self._session_factory) as session:
            due = await ScheduledChangeRepository(session).list_due(now, limit=self._batch_size)
            change_ids = [change.change_id for change in due]
        summary["due"] = len(change_ids)

        resumed: list[str] = []
        for change_id in change_ids:
            async with session_scope(self._session_factory) as session:
                claimed = await ScheduledChangeRepository(session).claim(change_id)
            if not claimed:
                summary["skipped"] += 1
                continue
            summary["claimed"] += 1

            try:
                change_type, subscription_id = await self._apply(change_id, now)
            except (OperationalError, InterfaceError):
                raise
            except Exception as exc:
                if isinstance(exc, BillingError):
                    logger.warning("Scheduled change %s failed: %s", change_id, exc)
                else:
                    logger.error("Scheduled change %s failed", change_id, exc_info=True)
                async with session_scope(self._session_factory) as session:
                    await ScheduledChangeRepository(session).mark_failed(
                        change_id, str(exc) or type(exc).__name__, now
                    )
                summary["failed"] += 1
                continue

            summary["completed"] += 1
            if change_type == ChangeType.RESUME:
                resumed.append(subscription_id)

        for subscription_id in resumed:
            await self._redeem_after_resume(subscription_id, now)

        logger.info(
            "Scheduled-change sweep: due=%d claimed=%d completed=%d failed=%d skipped=%d",
            summary["due"],
            summary["claimed"],
            summary["completed"],
            summary["failed"],
            summary["skipped"],
        )
        return summary

    async def _apply(self, change_id: str, now: datetime) -> tuple[ChangeType, str]:
        async with session_scope(self._session_factory) as session:
            changes = ScheduledChangeRepository(session)
            change = await changes.get(change_id)
            if change is None:
                raise BillingValidationError(f"Scheduled change {change_id} disappeared")
            change_type = ChangeType(change.change_type)
            handler = self._handlers.get(change_type)
            if handler is None:
                raise BillingValidationError(f"'{change_type.value}' changes are applied immediately, not scheduled")
            await handler(session, change, now)
            await changes.mark_completed(change_id, now)
            logger.info(
                "Applied %s change %s to subscription %s",
                change_type.value,
                change_id,
                change.subscription_id,
                extra={"change": {"change_id": change_id, "change_type": change_type.value}},
            )
            return change_type, change.subscription_id

    async def _apply_resume(self, session: AsyncSession, change: ScheduledChangeTable, now: datetime) -> None:
        await self._subscriptions.apply_resume(
            session,
            change.subscription_id,
            now,
            initiated_by=change.initiated_by,
            scheduled_change_id=change.change_id,
        )

    async def _redeem_after_resume(self, subscription_id: str, now: datetime) -> None:
        if self._redemptions is None:
            return
        try:
            await self._redemptions.redeem(subscription_id, now=now)
        except BillingError as exc:
            logger.warning("Payment after scheduled resume of %s failed: %s", subscription_id, exc)
