from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import TransactionKind


class ReferralLevel(str, Enum):
    A = "A"
    B = "B"
    C = "C"

    @property
    def depth(self) -> int:
        return _DEPTH[self]

    @classmethod
    def from_depth(cls, depth: int) -> "ReferralLevel":
        for level, d in _DEPTH.items():
            if d == depth:
                return level
        raise ValueError(f"No referral level at depth {depth}")

    @property
    def referral_reward_kind(self) -> TransactionKind:
        return TransactionKind(f"REFERRAL_REWARD_{self.value}")

    @property
    def management_bonus_kind(self) -> TransactionKind:
        return TransactionKind(f"MANAGEMENT_BONUS_{self.value}")


_DEPTH = {ReferralLevel.A: 1, ReferralLevel.B: 2, ReferralLevel.C: 3}

MAX_DEPTH = 3


class ReferralEdge(BaseModel):
    referrer_id: UUID
    referee_id: UUID
    level: ReferralLevel = ReferralLevel.A
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Ancestors(BaseModel):
    user_id: UUID
    A: Optional[UUID] = None
    B: Optional[UUID] = None
    C: Optional[UUID] = None

    def items(self) -> list[tuple[ReferralLevel, UUID]]:
        """Existing levels, nearest first."""
        pairs = [(ReferralLevel.A, self.A), (ReferralLevel.B, self.B), (ReferralLevel.C, self.C)]
        return [(level, uid) for level, uid in pairs if uid is not None]

    def get(self, level: ReferralLevel) -> Optional[UUID]:
        return getattr(self, ReferralLevel(level).value)

    def __len__(self) -> int:
        return len(self.items())


class TeamCounts(BaseModel):
    user_id: UUID
    A: int = 0
    B: int = 0
    C: int = 0

    @property
    def total(self) -> int:
        return self.A + self.B + self.C


class CommissionAward(BaseModel):
    """One credit owed to one ancestor, before it is committed."""

    beneficiary_id: UUID
    source_user_id: UUID
    level: ReferralLevel
    kind: TransactionKind
    base_amount: int
    rate: str
    amount: int
    reference_id: str


class ReferralRewardResult(BaseModel):
    referee_id: UUID
    qualifying_amount: int
    awards: list[CommissionAward]
    skipped_levels: list[ReferralLevel] = []

    @property
    def total_awarded(self) -> int:
        return sum(a.amount for a in self.awards)


class CreateReferralRequest(BaseModel):
    referrer_id: UUID
    referee_id: UUID


class AwardReferralRewardsRequest(BaseModel):
    qualifying_amount: int = Field(..., gt=0, description="Qualifying top-up or deposit amount")
    source_reference: Optional[str] = None
