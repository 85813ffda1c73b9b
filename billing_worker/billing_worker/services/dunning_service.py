"""Dunning campaign lifecycle: start, recover, report."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import ConfigurationError, ConflictError
from billing_engine.models.dunning import CampaignStatus, DunningPolicy
from billing_engine.models.settlement import InitialSettlementRequest
from billing_engine.models.subscription import total_amount_cents
from billing_engine.state.repository import DunningCampaignRepository, DunningConfigurationRepository
from billing_engine.state.tables import DunningCampaignTable, DunningConfigurationTable
from billing_worker.services.ledger import utcnow

logger = logging.getLogger(__name__)


def policy_from_row(row: DunningConfigurationTable) -> DunningPolicy:
    """Validate a stored configuration row."""
    return DunningPolicy.from_stored(
        max_attempts=row.max_attempts,
        retry_interval_days=row.retry_interval_days_json,
        attempt_actions=row.attempt_actions_json,
        final_action=row.final_action,
        grace_period_hours=row.grace_period_hours,
    )


def first_retry_at(policy: DunningPolicy, now: datetime) -> datetime:
    """When the first attempt of a new campaign is due.

    The first retry interval applies when configured; the grace period is
    only used for policies without intervals.
    """
    first = policy.interval_after(0)
    if first is not None:
        return now + timedelta(days=first)
    return now + timedelta(hours=policy.grace_period_hours)


class DunningService:
    """Campaign operations within the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._configs = DunningConfigurationRepository(session)
        self._campaigns = DunningCampaignRepository(session)

    async def load_policy(self, configuration_id: str) -> DunningPolicy:
        row = await self._configs.get(configuration_id)
        if row is None:
            raise ConfigurationError(f"Dunning configuration {configuration_id} not found")
        return policy_from_row(row)

    async def start_campaign(
        self,
        *,
        workspace_id: str,
        customer_id: str,
        amount_cents: int,
        currency: str,
        reason: str,
        subscription_id: str | None = None,
        payment_request: dict[str, Any] | None = None,
        redemption_key: str | None = None,
        now: datetime | None = None,
    ) -> DunningCampaignTable:
        """Open a campaign against the workspace's default configuration.

        Raises
        ------
        ConfigurationError
            If the workspace has no default configuration or it is invalid.
        ConflictError
            If the subscription, or the first payment identified by
            *redemption_key*, already has an active campaign.
        """
        now = now or utcnow()
        config = await self._configs.get_default(workspace_id)
        if config is None:
            raise ConfigurationError(f"Workspace {workspace_id} has no default dunning configuration")
        policy = policy_from_row(config)

        if subscription_id is not None:
            active = await self._campaigns.get_active_for_subscription(subscription_id)
            if active is not None:
                raise ConflictError(
                    f"Subscription {subscription_id} already has active campaign {active.campaign_id}"
                )
        elif redemption_key is not None:
            active = await self._campaigns.get_active_for_redemption_key(redemption_key)
            if active is not None:
                raise ConflictError(f"Payment {redemption_key} already has active campaign {active.campaign_id}")

        campaign = await self._campaigns.create(
            workspace_id=workspace_id,
            configuration_id=config.configuration_id,
            subscription_id=subscription_id,
            payment_request_json=payment_request,
            redemption_key=redemption_key,
            customer_id=customer_id,
            status=CampaignStatus.ACTIVE.value,
            failure_reason=reason,
            original_amount_cents=amount_cents,
            currency=currency,
            current_attempt=0,
            next_retry_at=first_retry_at(policy, now),
            created_at=now,
            updated_at=now,
        )
        logger.info(
            "Dunning campaign %s started for %s (first retry %s)",
            campaign.campaign_id,
            subscription_id or redemption_key or "payment",
            campaign.next_retry_at.isoformat() if campaign.next_retry_at else "-",
            extra={"campaign": {"campaign_id": campaign.campaign_id, "subscription_id": subscription_id}},
        )
        return campaign

    async def start_campaign_for_payment(
        self,
        request: InitialSettlementRequest,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> DunningCampaignTable:
        """Open a campaign for a failed first payment that has no subscription yet."""
        return await self.start_campaign(
            workspace_id=request.workspace_id,
            customer_id=request.customer_id,
            amount_cents=total_amount_cents(request.line_items),
            currency=request.currency,
            reason=reason,
            payment_request=request.model_dump(mode="json"),
            redemption_key=request.redemption_key(),
            now=now,
        )

    async def recover_campaign(
        self,
        campaign_id: str,
        *,
        amount_cents: int,
        now: datetime | None = None,
    ) -> bool:
        """Mark an active campaign recovered; ``False`` if it was no longer active."""
        recovered = await self._campaigns.try_recover(campaign_id, amount_cents=amount_cents, now=now or utcnow())
        if recovered:
            logger.info("Dunning campaign %s recovered (%d)", campaign_id, amount_cents)
        return recovered

    async def recover_for_subscription(
        self,
        subscription_id: str,
        *,
        amount_cents: int,
        now: datetime | None = None,
    ) -> bool:
        active = await self._campaigns.get_active_for_subscription(subscription_id)
        if active is None:
            return False
        return await self.recover_campaign(active.campaign_id, amount_cents=amount_cents, now=now)

    async def recover_for_payment(
        self,
        redemption_key: str,
        *,
        amount_cents: int,
        subscription_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Close the campaign of a first payment that has now settled as *subscription_id*."""
        active = await self._campaigns.get_active_for_redemption_key(redemption_key)
        if active is None:
            return False
        recovered = await self._campaigns.try_recover(
            active.campaign_id, amount_cents=amount_cents, now=now or utcnow(), subscription_id=subscription_id
        )
        if recovered:
            logger.info("Dunning campaign %s recovered by subscription %s", active.campaign_id, subscription_id)
        return recovered

    async def stats(self, workspace_id: str) -> dict[str, Any]:
        return await self._campaigns.stats(workspace_id)
