from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import LedgerEntry


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSED = "PROCESSED"


class WithdrawalAction(str, Enum):
    APPROVE = "APPROVE"
    PROCESS = "PROCESS"
    REJECT = "REJECT"


class PaymentMethod(str, Enum):
    BANK = "BANK"
    USDT_TRC20 = "USDT_TRC20"


class RejectionReason(str, Enum):
    INTERN_NOT_ALLOWED = "INTERN_NOT_ALLOWED"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    WEEKLY_CAP_EXCEEDED = "WEEKLY_CAP_EXCEEDED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"


# Requests holding funds: counted against the cap and against available balance.
LIVE_STATUSES = frozenset({
    WithdrawalStatus.PENDING,
    WithdrawalStatus.APPROVED,
    WithdrawalStatus.PROCESSED,
})

TRANSITIONS: dict[WithdrawalAction, tuple[WithdrawalStatus, WithdrawalStatus]] = {
    WithdrawalAction.APPROVE: (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED),
    WithdrawalAction.PROCESS: (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSED),
    WithdrawalAction.REJECT: (WithdrawalStatus.PENDING, WithdrawalStatus.REJECTED),
}


class CreateWithdrawalRequest(BaseModel):
    user_id: UUID
    amount: int = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.BANK
    payment_details: dict = Field(default_factory=dict)


class TransitionWithdrawalRequest(BaseModel):
    action: WithdrawalAction
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class WithdrawalRequest(BaseModel):
    id: UUID
    user_id: UUID
    amount: int
    handling_fee: int
    total_deduction: int
    status: WithdrawalStatus
    payment_method: PaymentMethod
    payment_details: dict = Field(default_factory=dict)
    created_at: datetime
    processed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_delete(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRequest
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class WithdrawalQuote(BaseModel):
    amount: int
    handling_fee: int
    total_deduction: int
    payment_method: PaymentMethod


class WithdrawalSummary(BaseModel):
    user_id: UUID
    available_balance: int
    weekly_withdrawn: int
    weekly_remaining: int
    requests_today: int
    max_daily_requests: int
    minimum_withdrawal: int
