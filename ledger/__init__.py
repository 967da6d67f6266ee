"""
Commission ledger store

This module provides:
- Append-only ledger entries with a running balance snapshot
- Reference-id uniqueness for idempotent retries
- Cached wallet balance and total earnings on the user row
- Balance reconciliation and earnings breakdowns
"""

from .models import (
    TransactionKind,
    EntryStatus,
    AccountStatus,
    LedgerEntry,
    UserBalance,
    Account,
)
from .service import LedgerService
from .accounts import AccountService

__all__ = [
    "TransactionKind",
    "EntryStatus",
    "AccountStatus",
    "LedgerEntry",
    "UserBalance",
    "Account",
    "LedgerService",
    "AccountService",
]
