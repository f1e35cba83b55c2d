"""
Wallet Ledger for the Rewards Platform

This module provides:
- One wallet per user, mutated only through WalletLedger
- Append-only transaction history that always sums to the wallet balance
- Idempotent credits and debits keyed per user
- Per-user serialization through the store's unit of work
- Audited admin adjustments
"""

from .errors import LedgerServiceError
from .models import (
    LedgerResult,
    SpinRecord,
    Transaction,
    TransactionType,
    Wallet,
)
from .service import WalletLedger
from .store import InMemoryStorage, LedgerStore

__all__ = [
    "LedgerServiceError",
    "LedgerResult",
    "SpinRecord",
    "Transaction",
    "TransactionType",
    "Wallet",
    "WalletLedger",
    "InMemoryStorage",
    "LedgerStore",
]
