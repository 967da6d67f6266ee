"""
Withdrawal requests

This module provides:
- Request creation with intern, minimum, daily-count and weekly-cap checks
- Handling fee quotes per payment method
- The PENDING -> APPROVED -> PROCESSED review flow, with refunds on rejection
"""

from .models import (
    PaymentMethod,
    RejectionReason,
    WithdrawalAction,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .service import WithdrawalPolicy, WithdrawalService

__all__ = [
    "PaymentMethod",
    "RejectionReason",
    "WithdrawalAction",
    "WithdrawalRequest",
    "WithdrawalResponse",
    "WithdrawalStatus",
    "WithdrawalPolicy",
    "WithdrawalService",
]
