"""State persistence layer for the billing ledger."""

from billing_engine.state.database import get_engine, get_session_factory, session_scope
from billing_engine.state.repository import (
    DelegationRepository,
    DunningAttemptRepository,
    DunningCampaignRepository,
    DunningConfigurationRepository,
    InvoiceRepository,
    PaymentRepository,
    ProrationRecordRepository,
    ScheduledChangeRepository,
    SettlementFailureRepository,
    StateChangeRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
    WalletRepository,
)

__all__ = [
    "DelegationRepository",
    "DunningAttemptRepository",
    "DunningCampaignRepository",
    "DunningConfigurationRepository",
    "InvoiceRepository",
    "PaymentRepository",
    "ProrationRecordRepository",
    "ScheduledChangeRepository",
    "SettlementFailureRepository",
    "StateChangeRepository",
    "SubscriptionEventRepository",
    "SubscriptionRepository",
    "WalletRepository",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
