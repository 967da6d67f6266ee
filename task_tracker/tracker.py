from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import civil_date, settlement_zone, utc_now
from core.database import Database
from core.errors import DuplicateEntryError, UserNotFoundError, ValidationError
from ledger.models import TransactionKind
from ledger.service import LedgerService
from ledger.tables import UserRecord

from .models import DailyCompletionStatus, DailyTaskRecord, TaskCompletionResponse
from .tables import DailyTaskRecordRow


def task_income_reference(user_id: UUID, task_id: str, task_date: date) -> str:
    return f"TASK_{user_id}_{task_id}_{task_date.isoformat()}"


class TaskCompletionTracker:
    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        default_daily_quota: int = 10,
        zone: Optional[ZoneInfo] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.default_daily_quota = default_daily_quota
        self.zone = zone or settlement_zone()
        self.logger = logger.bind(service="TaskCompletionTracker")

    def record_completion(
        self,
        user_id: UUID,
        task_id: str,
        reward_amount: int,
        watched_at: Optional[datetime] = None,
        verified: bool = True,
    ) -> TaskCompletionResponse:
        """Store the completion and credit TASK_INCOME in the same transaction."""
        if not task_id:
            raise ValidationError("task_id is required")
        if isinstance(reward_amount, bool) or not isinstance(reward_amount, int) or reward_amount < 0:
            raise ValidationError(f"Invalid reward amount: {reward_amount!r}")
        watched_at = watched_at or utc_now()
        if watched_at.tzinfo is None:
            raise ValidationError("watched_at must be timezone-aware")

        task_date = civil_date(watched_at, self.zone)
        with self.database.transaction() as s:
            if s.get(UserRecord, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")

            row = DailyTaskRecordRow(
                id=uuid4(),
                user_id=user_id,
                task_id=task_id,
                watched_at=watched_at,
                task_date=task_date,
                reward_amount=reward_amount,
                is_verified=verified,
            )
            try:
                with s.begin_nested():
                    s.add(row)
                    s.flush()
            except IntegrityError as e:
                raise DuplicateEntryError(
                    f"Task {task_id} already completed by {user_id} on {task_date}",
                    reference_id=task_income_reference(user_id, task_id, task_date),
                ) from e

            entry = None
            if verified and reward_amount > 0:
                entry = self.ledger.append(
                    user_id,
                    TransactionKind.TASK_INCOME,
                    reward_amount,
                    task_income_reference(user_id, task_id, task_date),
                    metadata={"task_id": task_id, "task_date": task_date.isoformat()},
                    description=f"Task reward for {task_id}",
                    session=s,
                )

            return TaskCompletionResponse(
                record=DailyTaskRecord.model_validate(row), ledger_entry=entry
            )

    def get_daily_total(self, user_id: UUID, day: date, session: Optional[Session] = None) -> int:
        with self.database.use(session) as s:
            total = s.execute(
                select(func.coalesce(func.sum(DailyTaskRecordRow.reward_amount), 0)).where(
                    DailyTaskRecordRow.user_id == user_id,
                    DailyTaskRecordRow.task_date == day,
                    DailyTaskRecordRow.is_verified.is_(True),
                )
            ).scalar_one()
            return int(total)

    def get_daily_completion_status(
        self, user_id: UUID, day: date, session: Optional[Session] = None
    ) -> DailyCompletionStatus:
        with self.database.use(session) as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")

            completed, income = s.execute(
                select(
                    func.count(DailyTaskRecordRow.id),
                    func.coalesce(func.sum(DailyTaskRecordRow.reward_amount), 0),
                ).where(
                    DailyTaskRecordRow.user_id == user_id,
                    DailyTaskRecordRow.task_date == day,
                    DailyTaskRecordRow.is_verified.is_(True),
                )
            ).one()

            required = (
                user.daily_task_quota
                if user.daily_task_quota is not None
                else self.default_daily_quota
            )
            return DailyCompletionStatus(
                user_id=user_id,
                task_date=day,
                completed=completed,
                required=required,
                task_income=int(income),
            )

    def get_active_users(self, day: date, session: Optional[Session] = None) -> list[UUID]:
        """Users with at least one task record on the civil day."""
        with self.database.use(session) as s:
            return list(
                s.execute(
                    select(DailyTaskRecordRow.user_id)
                    .where(DailyTaskRecordRow.task_date == day)
                    .distinct()
                    .order_by(DailyTaskRecordRow.user_id)
                ).scalars()
            )

    def list_records(self, user_id: UUID, day: date) -> list[DailyTaskRecord]:
        with self.database.transaction() as s:
            rows = s.execute(
                select(DailyTaskRecordRow)
                .where(DailyTaskRecordRow.user_id == user_id, DailyTaskRecordRow.task_date == day)
                .order_by(DailyTaskRecordRow.watched_at)
            ).scalars().all()
            return [DailyTaskRecord.model_validate(r) for r in rows]
