from typing import Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.orm import Session

from core.clock import utc_now
from core.database import Database
from core.errors import DuplicateEntryError, UserNotFoundError, ValidationError

from .models import Account, AccountStatus
from .tables import UserRecord


class AccountService:
    """Creates and reads user accounts fed by registration events."""

    def __init__(self, database: Database, hierarchy=None):
        self.database = database
        self.hierarchy = hierarchy
        self.logger = logger.bind(service="AccountService")

    def register(
        self,
        user_id: Optional[UUID] = None,
        name: str = "",
        daily_task_quota: Optional[int] = None,
        is_intern: bool = False,
        referrer_id: Optional[UUID] = None,
    ) -> Account:
        if daily_task_quota is not None and daily_task_quota < 0:
            raise ValidationError("daily_task_quota cannot be negative")
        if referrer_id is not None and self.hierarchy is None:
            raise ValidationError("Registering with a referrer needs a referral hierarchy")

        user_id = user_id or uuid4()
        with self.database.transaction() as s:
            if s.get(UserRecord, user_id) is not None:
                raise DuplicateEntryError(f"User {user_id} already exists")

            record = UserRecord(
                id=user_id,
                name=name,
                status=AccountStatus.ACTIVE,
                is_intern=is_intern,
                daily_task_quota=daily_task_quota,
                wallet_balance=0,
                total_earnings=0,
                ledger_sequence=0,
                created_at=utc_now(),
            )
            s.add(record)
            s.flush()

            if referrer_id is not None:
                self.hierarchy.record_referral(referrer_id, user_id, session=s)

            self.logger.info(f"Registered user {user_id}" + (f" referred by {referrer_id}" if referrer_id else ""))
            return Account.model_validate(record)

    def get_account(self, user_id: UUID, session: Optional[Session] = None) -> Account:
        with self.database.use(session) as s:
            record = s.get(UserRecord, user_id)
            if record is None:
                raise UserNotFoundError(f"User {user_id} not found")
            return Account.model_validate(record)

    def set_status(self, user_id: UUID, status: AccountStatus) -> Account:
        with self.database.transaction() as s:
            record = s.get(UserRecord, user_id)
            if record is None:
                raise UserNotFoundError(f"User {user_id} not found")
            record.status = AccountStatus(status)
            return Account.model_validate(record)

    def set_daily_task_quota(self, user_id: UUID, quota: Optional[int]) -> Account:
        if quota is not None and quota < 0:
            raise ValidationError("daily_task_quota cannot be negative")
        with self.database.transaction() as s:
            record = s.get(UserRecord, user_id)
            if record is None:
                raise UserNotFoundError(f"User {user_id} not found")
            record.daily_task_quota = quota
            return Account.model_validate(record)
