from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict


class TransactionKind(str, Enum):
    TASK_INCOME = "TASK_INCOME"
    REFERRAL_REWARD_A = "REFERRAL_REWARD_A"
    REFERRAL_REWARD_B = "REFERRAL_REWARD_B"
    REFERRAL_REWARD_C = "REFERRAL_REWARD_C"
    MANAGEMENT_BONUS_A = "MANAGEMENT_BONUS_A"
    MANAGEMENT_BONUS_B = "MANAGEMENT_BONUS_B"
    MANAGEMENT_BONUS_C = "MANAGEMENT_BONUS_C"
    TOPUP_BONUS = "TOPUP_BONUS"
    SPECIAL_COMMISSION = "SPECIAL_COMMISSION"
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    POSITION_DEPOSIT = "POSITION_DEPOSIT"


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


# Earnings categories; together they make up User.total_earnings.
EARNING_CATEGORIES: dict[str, frozenset[TransactionKind]] = {
    "task_income": frozenset({TransactionKind.TASK_INCOME}),
    "referral_rewards": frozenset({
        TransactionKind.REFERRAL_REWARD_A,
        TransactionKind.REFERRAL_REWARD_B,
        TransactionKind.REFERRAL_REWARD_C,
    }),
    "management_bonuses": frozenset({
        TransactionKind.MANAGEMENT_BONUS_A,
        TransactionKind.MANAGEMENT_BONUS_B,
        TransactionKind.MANAGEMENT_BONUS_C,
    }),
    "topup_bonus": frozenset({TransactionKind.TOPUP_BONUS}),
    "special_commission": frozenset({TransactionKind.SPECIAL_COMMISSION}),
}

COMMISSION_KINDS: frozenset[TransactionKind] = frozenset().union(*EARNING_CATEGORIES.values())

NEGATIVE_KINDS: frozenset[TransactionKind] = frozenset({
    TransactionKind.DEBIT,
    TransactionKind.POSITION_DEPOSIT,
})


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    kind: TransactionKind
    amount: int
    balance_after: int
    sequence: int
    reference_id: str
    status: EntryStatus
    description: str = ""
    created_at: datetime
    metadata: dict = Field(default_factory=dict, validation_alias="extra")

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_commission(self) -> bool:
        return self.kind in COMMISSION_KINDS


class Account(BaseModel):
    id: UUID
    name: str = ""
    status: AccountStatus
    is_intern: bool = False
    daily_task_quota: Optional[int] = None
    wallet_balance: int = 0
    total_earnings: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RegisterUserRequest(BaseModel):
    user_id: Optional[UUID] = None
    name: str = Field(default="", max_length=255)
    daily_task_quota: Optional[int] = Field(default=None, ge=0)
    is_intern: bool = False
    referrer_id: Optional[UUID] = None


class UserBalance(BaseModel):
    user_id: UUID
    current_balance: int
    total_earnings: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class EarningsBreakdown(BaseModel):
    user_id: UUID
    task_income: int = 0
    referral_rewards: int = 0
    management_bonuses: int = 0
    topup_bonus: int = 0
    special_commission: int = 0

    @property
    def total(self) -> int:
        return (
            self.task_income
            + self.referral_rewards
            + self.management_bonuses
            + self.topup_bonus
            + self.special_commission
        )


class BalanceReconciliation(BaseModel):
    user_id: UUID
    wallet_balance: int
    ledger_sum: int
    last_balance_after: int
    total_earnings: int
    commission_sum: int
    chain_breaks: list[int] = Field(default_factory=list, description="Sequences whose balance_after does not follow the previous entry")

    @property
    def is_consistent(self) -> bool:
        return (
            self.wallet_balance == self.ledger_sum == self.last_balance_after
            and self.total_earnings == self.commission_sum
            and not self.chain_breaks
        )
