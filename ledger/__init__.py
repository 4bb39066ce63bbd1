"""
Ledger and Payment Settlement for a multi-tenant storefront platform

This module provides:
- Append-only Store, Credit and Fiat ledger streams with materialized balances
- Mark-order-paid settlement with processor and platform fees
- Credit and fiat top-ups anchored to orders
- Prepaid reservation holds on customer credit
- Refunds back onto the funding stream
"""

from .errors import LedgerServiceError
from .models import (
    LedgerStream,
    StoreLedgerType,
    CreditLedgerType,
    FiatLedgerType,
    LedgerEntry,
    StoreLedgerEntry,
    Order,
)
from .service import LedgerService
from .settlement import SettlementService
from .topup import TopUpService
from .prepaid import PrepaidHoldService
from .refund import RefundService

__all__ = [
    "LedgerServiceError",
    "LedgerStream",
    "StoreLedgerType",
    "CreditLedgerType",
    "FiatLedgerType",
    "LedgerEntry",
    "StoreLedgerEntry",
    "Order",
    "LedgerService",
    "SettlementService",
    "TopUpService",
    "PrepaidHoldService",
    "RefundService",
]
