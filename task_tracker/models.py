from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import LedgerEntry


class RecordCompletionRequest(BaseModel):
    user_id: UUID
    task_id: str = Field(..., min_length=1, max_length=128)
    reward_amount: int = Field(..., ge=0, description="Reward in whole base-currency units")
    watched_at: Optional[datetime] = Field(default=None, description="Defaults to now (UTC)")
    verified: bool = True


class DailyTaskRecord(BaseModel):
    id: UUID
    user_id: UUID
    task_id: str
    watched_at: datetime
    task_date: date
    reward_amount: int
    is_verified: bool

    model_config = ConfigDict(from_attributes=True)


class TaskCompletionResponse(BaseModel):
    record: DailyTaskRecord
    ledger_entry: Optional[LedgerEntry] = None


class DailyCompletionStatus(BaseModel):
    user_id: UUID
    task_date: date
    completed: int
    required: int
    task_income: int

    @property
    def percentage(self) -> float:
        if self.required <= 0:
            return 0.0
        return self.completed / self.required * 100

    @property
    def is_complete(self) -> bool:
        return self.required > 0 and self.completed >= self.required
