"""Phase-2 invoicing for settled payments.

An invoice is created once per payment and at most once per
``(subscription, kind, period)``.  Tax and discount come from pluggable
calculators; if either raises, the invoice is still issued with a zero
amount for that component and the failure is logged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import ConflictError, NotFoundError
from billing_engine.models.settlement import SettlementKind
from billing_engine.state.repository import (
    InvoiceRepository,
    PaymentRepository,
    ProrationRecordRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import InvoiceTable, PaymentTable, SubscriptionTable
from billing_worker.clients.calculators import (
    DiscountCalculator,
    NoDiscountCalculator,
    NoTaxCalculator,
    TaxCalculator,
    TaxResult,
)
from billing_worker.services.ledger import utcnow

logger = logging.getLogger(__name__)


class InvoiceService:
    """Create and link invoices for payments.

    Parameters
    ----------
    tax_calculator:
        Computes tax on the discounted subtotal.
    discount_calculator:
        Computes the discount on the subtotal.
    number_prefix:
        Prefix of generated invoice numbers, e.g. ``INV-202601-000042``.
    """

    def __init__(
        self,
        *,
        tax_calculator: TaxCalculator | None = None,
        discount_calculator: DiscountCalculator | None = None,
        number_prefix: str = "INV",
    ) -> None:
        self._tax = tax_calculator or NoTaxCalculator()
        self._discount = discount_calculator or NoDiscountCalculator()
        self._prefix = number_prefix

    async def invoice_payment(
        self,
        session: AsyncSession,
        payment_id: str,
        *,
        now: datetime | None = None,
    ) -> InvoiceTable:
        """Return the invoice for *payment_id*, creating it on first call.

        Raises
        ------
        NotFoundError
            If the payment or its subscription does not exist.
        ConflictError
            If another payment already has an invoice for the same period.
        """
        now = now or utcnow()
        payments = PaymentRepository(session)
        invoices = InvoiceRepository(session)

        payment = await payments.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        existing = await invoices.get_for_payment(payment_id)
        if existing is not None:
            if payment.invoice_id != existing.invoice_id:
                await self._link(session, payment, existing.invoice_id)
            return existing

        sub = await SubscriptionRepository(session).get(payment.subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {payment.subscription_id} not found")

        clash = await invoices.get_for_period(
            payment.subscription_id, payment.kind, payment.period_start, payment.period_end
        )
        if clash is not None:
            raise ConflictError(
                f"Period {payment.period_start.isoformat()}..{payment.period_end.isoformat()} of "
                f"subscription {payment.subscription_id} is already invoiced as {clash.invoice_number}"
            )

        context: dict[str, Any] = {
            "workspace_id": payment.workspace_id,
            "customer_id": payment.customer_id,
            "subscription_id": payment.subscription_id,
            "currency": payment.currency,
            "kind": payment.kind,
        }
        subtotal = payment.amount_cents
        discount = min(self._safe_discount(subtotal, context), subtotal)
        tax = self._safe_tax(subtotal - discount, context)

        count = await invoices.count_for_workspace(payment.workspace_id)
        invoice = await invoices.create(
            workspace_id=payment.workspace_id,
            subscription_id=payment.subscription_id,
            payment_id=payment.payment_id,
            invoice_number=f"{self._prefix}-{now:%Y%m}-{count + 1:06d}",
            kind=payment.kind,
            period_start=payment.period_start,
            period_end=payment.period_end,
            currency=payment.currency,
            subtotal_cents=subtotal,
            discount_cents=discount,
            tax_cents=tax.tax_amount_cents,
            total_cents=subtotal - discount + tax.tax_amount_cents,
            line_items_json=self._line_items(payment, sub),
            tax_breakdown_json=tax.breakdown,
            status="paid",
            paid_at=payment.created_at,
            created_at=now,
        )
        await self._link(session, payment, invoice.invoice_id)
        logger.info(
            "Invoice %s created for payment %s (%d %s)",
            invoice.invoice_number,
            payment.payment_id,
            invoice.total_cents,
            invoice.currency,
        )
        return invoice

    async def _link(self, session: AsyncSession, payment: PaymentTable, invoice_id: str) -> None:
        await PaymentRepository(session).link_invoice(payment.payment_id, invoice_id)
        if payment.kind == SettlementKind.PRORATION.value:
            await ProrationRecordRepository(session).link_invoice_for_payment(payment.payment_id, invoice_id)

    @staticmethod
    def _line_items(payment: PaymentTable, sub: SubscriptionTable) -> list[dict[str, Any]]:
        if payment.kind == SettlementKind.PRORATION.value:
            return [
                {
                    "product_id": sub.product_id,
                    "description": "Prorated charge for plan change",
                    "quantity": 1,
                    "unit_amount_cents": payment.amount_cents,
                }
            ]
        return list(sub.line_items_json or [])

    def _safe_discount(self, amount_cents: int, context: dict[str, Any]) -> int:
        try:
            return self._discount.compute(amount_cents, context).discount_amount_cents
        except Exception:
            logger.warning("Discount calculation failed; invoicing without discount", exc_info=True)
            return 0

    def _safe_tax(self, amount_cents: int, context: dict[str, Any]) -> TaxResult:
        try:
            return self._tax.compute(amount_cents, context)
        except Exception:
            logger.warning("Tax calculation failed; invoicing without tax", exc_info=True)
            return TaxResult()
