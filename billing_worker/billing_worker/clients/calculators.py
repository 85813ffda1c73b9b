"""Black-box calculators consumed by invoicing and settlement.

Tax and discount engines, and the fiat-to-token conversion, live outside
this system.  The protocols below are the whole contract; the defaults are
what a workspace without those integrations gets.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from pydantic import BaseModel, Field


class TaxResult(BaseModel):
    tax_amount_cents: int = Field(default=0, ge=0)
    breakdown: dict[str, Any] = Field(default_factory=dict)


class DiscountResult(BaseModel):
    discount_amount_cents: int = Field(default=0, ge=0)


class TaxCalculator(Protocol):
    def compute(self, amount_cents: int, context: dict[str, Any]) -> TaxResult: ...


class DiscountCalculator(Protocol):
    def compute(self, amount_cents: int, context: dict[str, Any]) -> DiscountResult: ...


class ExchangeRateProvider(Protocol):
    def to_token_amount(self, amount_cents: int, currency: str, token_decimals: int) -> int: ...


class NoTaxCalculator:
    def compute(self, amount_cents: int, context: dict[str, Any]) -> TaxResult:
        return TaxResult()


class NoDiscountCalculator:
    def compute(self, amount_cents: int, context: dict[str, Any]) -> DiscountResult:
        return DiscountResult()


class StablecoinExchangeRate:
    """Treat the token as pegged 1:1 to the invoice currency.

    ``amount_cents`` hundredths of a unit become ``amount * 10**decimals / 100``
    token base units, rounded half-up for tokens with fewer than two decimals.
    """

    def to_token_amount(self, amount_cents: int, currency: str, token_decimals: int) -> int:
        units = Decimal(amount_cents) * (Decimal(10) ** token_decimals) / Decimal(100)
        return int(units.quantize(Decimal(1), rounding=ROUND_HALF_UP))
