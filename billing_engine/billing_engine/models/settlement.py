"""Settlement request and result models.

A settlement submits one delegated on-chain payment.  The transaction hash
that comes back is threaded through :class:`SettlementResult`; it is never
stashed on a long-lived service instance.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from billing_engine.models.subscription import BillingPlan, LineItem


class SettlementKind(str, Enum):
    INITIAL = "initial"
    RECURRING = "recurring"
    PRORATION = "proration"


class BookkeepingStep(str, Enum):
    """Phase-1 ledger steps, in the order they run."""

    SUBSCRIPTION = "subscription"
    REDEEMED_EVENT = "redeemed_event"
    PAYMENT = "payment"
    REDEMPTION_SCHEDULE = "redemption_schedule"
    WALLET_USAGE = "wallet_usage"


class DelegationProof(BaseModel):
    """Signed authorization allowing the platform to move the customer's tokens."""

    delegate: str = Field(..., min_length=1)
    delegator: str = Field(..., min_length=1)
    authority: str = Field(..., min_length=1)
    caveats: list[dict[str, Any]] = Field(default_factory=list)
    salt: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    expires_at: datetime | None = None


class SettlementContext(BaseModel):
    """Token, network and wallet coordinates of a settlement."""

    customer_wallet_address: str = Field(..., min_length=1)
    merchant_wallet_address: str = Field(..., min_length=1)
    token_address: str = Field(..., min_length=1)
    token_symbol: str = Field(default="USDC")
    token_decimals: int = Field(default=6, ge=0, le=36)
    chain_id: int = Field(..., ge=1)
    network_name: str = Field(default="")


class ExecutionPayload(BaseModel):
    """What the execution service is asked to transfer."""

    recipient: str
    token_address: str
    token_amount: int = Field(..., gt=0, description="Amount in token base units.")
    chain_id: int
    reference: str = Field(..., description="Redemption key echoed back for correlation.")


class InitialSettlementRequest(BaseModel):
    """Everything needed to settle the first payment and create a subscription."""

    workspace_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    line_items: list[LineItem] = Field(..., min_length=1)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    plan: BillingPlan = Field(default_factory=BillingPlan)
    context: SettlementContext
    delegation: DelegationProof
    idempotency_key: str | None = Field(
        default=None,
        description="Caller-supplied key for the logical redemption; derived from the delegation when absent.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    def redemption_key(self) -> str:
        if self.idempotency_key:
            return self.idempotency_key
        digest = hashlib.sha256(
            f"{self.workspace_id}:{self.product_id}:{self.delegation.signature}".encode()
        ).hexdigest()
        return f"initial:{digest[:32]}"


class SettlementResult(BaseModel):
    """Outcome of one logical redemption."""

    redemption_key: str
    transaction_hash: str
    kind: SettlementKind
    subscription_id: str
    payment_id: str | None = None
    invoice_id: str | None = None
    amount_cents: int = 0
    token_amount: int = 0
    submitted: bool = Field(
        default=True,
        description="False when bookkeeping was completed for a previously submitted transaction.",
    )
    completed_subscription: bool = False
