"""
Rips Balance Ledger

This module provides:
- Append-only ledger entries with a running balance_after chain
- Atomic credit and debit flows that never leave a negative balance
- Exactly-once crediting of purchases keyed by the payment provider reference
- Conservation audit (balance == credits - debits)
"""

from .models import (
    EntryType,
    LedgerEntry,
    LedgerReason,
    PaymentEventStatus,
    SettlementResult,
    UserBalance,
)
from .service import InsufficientFundsError, InvalidAmountError, LedgerService, LedgerServiceError
from .settlement import InvalidPaymentEventError, PaymentSettlementGuard
from .storage import Database

__all__ = [
    "Database",
    "EntryType",
    "InsufficientFundsError",
    "InvalidAmountError",
    "InvalidPaymentEventError",
    "LedgerEntry",
    "LedgerReason",
    "LedgerService",
    "LedgerServiceError",
    "PaymentEventStatus",
    "PaymentSettlementGuard",
    "SettlementResult",
    "UserBalance",
]
