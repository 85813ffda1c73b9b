"""Status transitions with their ledger and audit rows.

Every lifecycle transition goes through :func:`apply_transition` so that the
state machine check, the ``SubscriptionEvent`` and the state-change audit
row are always written together, inside the caller's transaction.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.lifecycle import Trigger, transition
from billing_engine.models.subscription import EventType, Initiator
from billing_engine.state.repository import StateChangeRepository, SubscriptionEventRepository
from billing_engine.state.tables import SubscriptionTable


def utcnow() -> datetime:
    return datetime.now(UTC)


async def apply_transition(
    session: AsyncSession,
    sub: SubscriptionTable,
    trigger: Trigger,
    event_type: EventType,
    *,
    occurred_at: datetime,
    reason: str | None = None,
    initiated_by: Initiator | str = Initiator.SYSTEM,
    scheduled_change_id: str | None = None,
    from_amount_cents: int | None = None,
    to_amount_cents: int | None = None,
    transaction_hash: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Move *sub* along *trigger* and record the event and audit row.

    Raises
    ------
    InvalidTransitionError
        If *trigger* is not allowed from the subscription's current status.
    """
    from_status = sub.status
    to_status = transition(from_status, trigger)
    sub.status = to_status.value
    sub.updated_at = occurred_at

    initiator = initiated_by.value if isinstance(initiated_by, Initiator) else initiated_by
    event_metadata = dict(metadata or {})
    if reason:
        event_metadata.setdefault("reason", reason)
    if scheduled_change_id:
        event_metadata.setdefault("scheduled_change_id", scheduled_change_id)

    await SubscriptionEventRepository(session).append(
        workspace_id=sub.workspace_id,
        subscription_id=sub.subscription_id,
        event_type=event_type.value,
        occurred_at=occurred_at,
        amount_cents=to_amount_cents if to_amount_cents is not None else 0,
        transaction_hash=transaction_hash,
        metadata=event_metadata,
    )
    await StateChangeRepository(session).record(
        subscription_id=sub.subscription_id,
        from_status=from_status,
        to_status=to_status.value,
        from_amount_cents=from_amount_cents if from_amount_cents is not None else sub.total_amount_cents,
        to_amount_cents=to_amount_cents if to_amount_cents is not None else sub.total_amount_cents,
        line_items_snapshot=list(sub.line_items_json or []),
        reason=reason,
        scheduled_change_id=scheduled_change_id,
        initiated_by=initiator,
        created_at=occurred_at,
    )
