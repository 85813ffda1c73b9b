"""Domain models for the billing engine."""

from billing_engine.models.change import ChangeOutcome, ChangePreview
from billing_engine.models.dunning import (
    AttemptStatus,
    CampaignStatus,
    DunningAction,
    DunningPolicy,
    FinalAction,
)
from billing_engine.models.proration import ProrationResult, ScheduledEffect
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
    BillingPlan,
    ChangeStatus,
    ChangeType,
    EventType,
    Initiator,
    IntervalUnit,
    LineItem,
    PriceType,
    ProrationType,
    SubscriptionStatus,
)

__all__ = [
    "AttemptStatus",
    "BillingPlan",
    "BookkeepingStep",
    "CampaignStatus",
    "ChangeOutcome",
    "ChangePreview",
    "ChangeStatus",
    "ChangeType",
    "DelegationProof",
    "DunningAction",
    "DunningPolicy",
    "EventType",
    "ExecutionPayload",
    "FinalAction",
    "InitialSettlementRequest",
    "Initiator",
    "IntervalUnit",
    "LineItem",
    "PriceType",
    "ProrationResult",
    "ProrationType",
    "ScheduledEffect",
    "SettlementContext",
    "SettlementKind",
    "SettlementResult",
    "SubscriptionStatus",
]
