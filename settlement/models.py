from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from referrals.models import ReferralLevel


class RunStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    FAILED = "FAILED"


class TriggerSource(str, Enum):
    TIMER = "TIMER"
    MANUAL = "MANUAL"


class ManagementBonusEntry(BaseModel):
    id: UUID
    referrer_id: UUID
    subordinate_id: UUID
    subordinate_level: ReferralLevel
    task_date: date
    task_income: int
    bonus_amount: int
    rate: str
    ledger_reference_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettlementFailure(BaseModel):
    subordinate_id: UUID
    referrer_id: Optional[UUID] = None
    level: Optional[ReferralLevel] = None
    reference_id: Optional[str] = None
    error_type: str
    error: str


class SettlementReport(BaseModel):
    settlement_date: date
    trigger: TriggerSource
    status: RunStatus = RunStatus.RUNNING
    attempt: int = 1
    overlapping_run_detected: bool = False
    users_processed: int = 0
    eligible_subordinates: int = 0
    bonuses_paid: int = 0
    already_settled: int = 0
    total_amount: int = 0
    failures: list[SettlementFailure] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def attempted(self) -> int:
        return self.bonuses_paid + self.already_settled + len(self.failures)

    @property
    def failure_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return len(self.failures) / self.attempted

    def summary(self) -> dict:
        return {
            "date": self.settlement_date.isoformat(),
            "trigger": self.trigger.value,
            "status": self.status.value,
            "attempt": self.attempt,
            "users_processed": self.users_processed,
            "eligible_subordinates": self.eligible_subordinates,
            "bonuses_paid": self.bonuses_paid,
            "already_settled": self.already_settled,
            "total_amount": self.total_amount,
            "failures": len(self.failures),
        }


class SettlementRun(BaseModel):
    settlement_date: date
    status: RunStatus
    trigger: TriggerSource
    attempts: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    users_processed: int = 0
    bonuses_paid: int = 0
    already_settled: int = 0
    total_amount: int = 0
    failure_count: int = 0
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LevelTotals(BaseModel):
    A: int = 0
    B: int = 0
    C: int = 0

    @property
    def total(self) -> int:
        return self.A + self.B + self.C


class ManagementBonusStats(BaseModel):
    user_id: UUID
    day: date
    daily_bonuses: LevelTotals
    monthly_bonuses: LevelTotals
    subordinate_count: LevelTotals


class SubordinateActivity(BaseModel):
    subordinate_id: UUID
    subordinate_name: str = ""
    level: ReferralLevel
    day_bonus: int = 0
    monthly_bonus: int = 0
    last_bonus_date: Optional[date] = None
