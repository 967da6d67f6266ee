"""
Shared infrastructure for the commission ledger

This module provides:
- Settings loaded from the environment
- Database engine and transaction scopes
- Loguru configuration
- The error taxonomy shared by every service
- Civil-day helpers for the settlement timezone
"""

from .config import Settings, get_settings
from .database import Base, Database
from .errors import (
    CommissionError,
    ValidationError,
    DuplicateEntryError,
    InsufficientFundsError,
    LedgerInvariantError,
)

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "Database",
    "CommissionError",
    "ValidationError",
    "DuplicateEntryError",
    "InsufficientFundsError",
    "LedgerInvariantError",
]
