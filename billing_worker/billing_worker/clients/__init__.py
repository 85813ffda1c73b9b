"""Clients for the collaborators the billing worker depends on."""

from billing_worker.clients.calculators import (
    DiscountCalculator,
    DiscountResult,
    ExchangeRateProvider,
    NoDiscountCalculator,
    NoTaxCalculator,
    StablecoinExchangeRate,
    TaxCalculator,
    TaxResult,
)
from billing_worker.clients.execution_client import ExecutionService, HttpExecutionClient
from billing_worker.clients.notification_client import (
    Channel,
    HttpNotificationSender,
    NotificationSender,
    Recipient,
)

__all__ = [
    "Channel",
    "DiscountCalculator",
    "DiscountResult",
    "ExchangeRateProvider",
    "ExecutionService",
    "HttpExecutionClient",
    "HttpNotificationSender",
    "NoDiscountCalculator",
    "NoTaxCalculator",
    "NotificationSender",
    "Recipient",
    "StablecoinExchangeRate",
    "TaxCalculator",
    "TaxResult",
]
