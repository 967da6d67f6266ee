from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.clock import civil_date, day_bounds, settlement_zone, utc_now, week_bounds
from core.database import Database
from core.errors import (
    InsufficientFundsError,
    InvalidStateTransitionError,
    UserNotFoundError,
    ValidationError,
    WithdrawalNotFoundError,
    WithdrawalRejectedError,
)
from ledger.models import EntryStatus, TransactionKind
from ledger.service import LedgerService, lock_user
from ledger.tables import UserRecord

from .models import (
    LIVE_STATUSES,
    TRANSITIONS,
    PaymentMethod,
    RejectionReason,
    WithdrawalAction,
    WithdrawalQuote,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
    WithdrawalSummary,
)
from .tables import WithdrawalRequestRecord


@dataclass(frozen=True)
class WithdrawalPolicy:
    minimum_withdrawal: int = 500
    weekly_cap: int = 100_000
    max_daily_requests: int = 5
    fee_percentage: Decimal = Decimal("10")


def debit_reference(request_id: UUID) -> str:
    return f"WITHDRAWAL_{request_id}"


def refund_reference(request_id: UUID) -> str:
    return f"WITHDRAWAL_REFUND_{request_id}"


class WithdrawalService:
    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        policy: Optional[WithdrawalPolicy] = None,
        zone: Optional[ZoneInfo] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.policy = policy or WithdrawalPolicy()
        self.zone = zone or settlement_zone()
        self.logger = logger.bind(service="WithdrawalService")

    def quote(self, amount: int, payment_method: PaymentMethod = PaymentMethod.BANK) -> WithdrawalQuote:
        payment_method = PaymentMethod(payment_method)
        if payment_method == PaymentMethod.USDT_TRC20:
            fee = 0
        else:
            fee = int(
                (Decimal(amount) * self.policy.fee_percentage / 100).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )
        return WithdrawalQuote(
            amount=amount,
            handling_fee=fee,
            total_deduction=amount + fee,
            payment_method=payment_method,
        )

    def create_withdrawal(
        self,
        user_id: UUID,
        amount: int,
        payment_method: PaymentMethod = PaymentMethod.BANK,
        payment_details: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalResponse:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Invalid withdrawal amount: {amount!r}")
        now = now or utc_now()
        quote = self.quote(amount, payment_method)

        with self.database.transaction() as s:
            user = lock_user(s, user_id)

            if user.is_intern:
                raise WithdrawalRejectedError(
                    "Intern position earnings cannot be withdrawn", RejectionReason.INTERN_NOT_ALLOWED
                )
            if amount < self.policy.minimum_withdrawal:
                raise WithdrawalRejectedError(
                    f"Minimum withdrawal amount is {self.policy.minimum_withdrawal}",
                    RejectionReason.BELOW_MINIMUM,
                )

            requests_today = self._count_requests_today(s, user_id, now)
            if requests_today >= self.policy.max_daily_requests:
                raise WithdrawalRejectedError(
                    f"Daily withdrawal limit exceeded. Maximum {self.policy.max_daily_requests} withdrawals per day.",
                    RejectionReason.DAILY_LIMIT_EXCEEDED,
                )

            weekly = self._weekly_withdrawn(s, user_id, now)
            if weekly + amount > self.policy.weekly_cap:
                raise WithdrawalRejectedError(
                    f"Weekly withdrawal cap of {self.policy.weekly_cap} exceeded "
                    f"(already withdrawn {weekly} this week)",
                    RejectionReason.WEEKLY_CAP_EXCEEDED,
                )

            available = self._available_balance(s, user)
            if quote.total_deduction > available:
                raise InsufficientFundsError(
                    f"Insufficient balance. Available: {available}, Required: {quote.total_deduction}",
                    available=available,
                    required=quote.total_deduction,
                )

            record = WithdrawalRequestRecord(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                handling_fee=quote.handling_fee,
                total_deduction=quote.total_deduction,
                status=WithdrawalStatus.PENDING,
                payment_method=quote.payment_method,
                payment_details=payment_details or {},
                created_at=now,
            )
            s.add(record)
            s.flush()

            entry = self.ledger.append(
                user_id,
                TransactionKind.DEBIT,
                -quote.total_deduction,
                debit_reference(record.id),
                metadata={
                    "withdrawal_request_id": str(record.id),
                    "withdrawal_amount": amount,
                    "handling_fee": quote.handling_fee,
                    "payment_method": quote.payment_method.value,
                },
                status=EntryStatus.PENDING,
                description=f"Withdrawal request via {quote.payment_method.value}",
                session=s,
            )

            self.logger.info(
                f"Withdrawal {record.id} created for {user_id}: {amount} + fee {quote.handling_fee}"
            )
            return WithdrawalResponse(
                withdrawal=WithdrawalRequest.model_validate(record),
                ledger_entry=entry,
                message="Withdrawal request submitted",
            )

    def transition_withdrawal(
        self,
        request_id: UUID,
        action: WithdrawalAction,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WithdrawalResponse:
        action = WithdrawalAction(action)
        source, target = TRANSITIONS[action]

        with self.database.transaction() as s:
            record = self._lock_request(s, request_id)
            if record.status != source:
                raise InvalidStateTransitionError(
                    f"Cannot {action.value.lower()} withdrawal {request_id} in {record.status.value} state"
                )

            record.status = target
            record.reviewed_by = performed_by
            entry = None

            if action == WithdrawalAction.PROCESS:
                record.processed_at = utc_now()
                entry = self.ledger.settle_entry_status(
                    debit_reference(record.id), EntryStatus.COMPLETED, session=s
                )
                message = "Withdrawal processed"
            elif action == WithdrawalAction.REJECT:
                record.rejection_reason = reason
                entry = self._refund(s, record, reason or "Withdrawal request rejected")
                message = "Withdrawal rejected and refunded"
            else:
                message = "Withdrawal approved"

            s.flush()
            self.logger.info(f"Withdrawal {request_id}: {source.value} -> {target.value} by {performed_by}")
            return WithdrawalResponse(
                withdrawal=WithdrawalRequest.model_validate(record),
                ledger_entry=entry,
                message=message,
            )

    def delete_withdrawal(self, request_id: UUID, performed_by: Optional[str] = None) -> WithdrawalResponse:
        """Admin removal of a PENDING request; the debit is refunded, ledger rows stay."""
        with self.database.transaction() as s:
            record = self._lock_request(s, request_id)
            if record.status != WithdrawalStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Only pending withdrawal requests can be deleted (status {record.status.value})"
                )

            snapshot = WithdrawalRequest.model_validate(record)
            entry = self._refund(s, record, "Withdrawal request deleted by admin", performed_by=performed_by)
            s.delete(record)
            s.flush()

            self.logger.info(f"Withdrawal {request_id} deleted by {performed_by}, refunded {record.total_deduction}")
            return WithdrawalResponse(
                withdrawal=snapshot,
                ledger_entry=entry,
                message="Withdrawal request deleted and refund processed",
            )

    def get_withdrawal(self, request_id: UUID) -> WithdrawalRequest:
        with self.database.transaction() as s:
            record = s.get(WithdrawalRequestRecord, request_id)
            if record is None:
                raise WithdrawalNotFoundError(f"Withdrawal {request_id} not found")
            return WithdrawalRequest.model_validate(record)

    def list_withdrawals(
        self, user_id: Optional[UUID] = None, status: Optional[WithdrawalStatus] = None, limit: int = 50
    ) -> list[WithdrawalRequest]:
        query = select(WithdrawalRequestRecord)
        if user_id is not None:
            query = query.where(WithdrawalRequestRecord.user_id == user_id)
        if status is not None:
            query = query.where(WithdrawalRequestRecord.status == WithdrawalStatus(status))
        with self.database.transaction() as s:
            records = s.execute(
                query.order_by(WithdrawalRequestRecord.created_at.desc()).limit(limit)
            ).scalars().all()
            return [WithdrawalRequest.model_validate(r) for r in records]

    def get_withdrawal_summary(self, user_id: UUID, now: Optional[datetime] = None) -> WithdrawalSummary:
        now = now or utc_now()
        with self.database.transaction() as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            weekly = self._weekly_withdrawn(s, user_id, now)
            return WithdrawalSummary(
                user_id=user_id,
                available_balance=self._available_balance(s, user),
                weekly_withdrawn=weekly,
                weekly_remaining=max(0, self.policy.weekly_cap - weekly),
                requests_today=self._count_requests_today(s, user_id, now),
                max_daily_requests=self.policy.max_daily_requests,
                minimum_withdrawal=self.policy.minimum_withdrawal,
            )

    def get_available_balance(self, user_id: UUID) -> int:
        with self.database.transaction() as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            return self._available_balance(s, user)

    def _refund(
        self,
        session: Session,
        record: WithdrawalRequestRecord,
        description: str,
        performed_by: Optional[str] = None,
    ):
        self.ledger.settle_entry_status(debit_reference(record.id), EntryStatus.FAILED, session=session)
        return self.ledger.append(
            record.user_id,
            TransactionKind.CREDIT,
            record.total_deduction,
            refund_reference(record.id),
            metadata={
                "withdrawal_request_id": str(record.id),
                "original_reference_id": debit_reference(record.id),
                "refund_reason": description,
                "performed_by": performed_by or record.reviewed_by,
            },
            description=description,
            session=session,
        )

    def _available_balance(self, session: Session, user: UserRecord) -> int:
        """Commission earnings not yet held by live requests, never above the wallet."""
        held = session.execute(
            select(func.coalesce(func.sum(WithdrawalRequestRecord.total_deduction), 0)).where(
                WithdrawalRequestRecord.user_id == user.id,
                WithdrawalRequestRecord.status.in_(LIVE_STATUSES),
            )
        ).scalar_one()
        return max(0, min(user.wallet_balance, user.total_earnings - int(held)))

    def _weekly_withdrawn(self, session: Session, user_id: UUID, now: datetime) -> int:
        start, end = week_bounds(civil_date(now, self.zone), self.zone)
        total = session.execute(
            select(func.coalesce(func.sum(WithdrawalRequestRecord.amount), 0)).where(
                WithdrawalRequestRecord.user_id == user_id,
                WithdrawalRequestRecord.status.in_(LIVE_STATUSES),
                WithdrawalRequestRecord.created_at >= start,
                WithdrawalRequestRecord.created_at < end,
            )
        ).scalar_one()
        return int(total)

    def _count_requests_today(self, session: Session, user_id: UUID, now: datetime) -> int:
        start, end = day_bounds(civil_date(now, self.zone), self.zone)
        return session.execute(
            select(func.count(WithdrawalRequestRecord.id)).where(
                WithdrawalRequestRecord.user_id == user_id,
                WithdrawalRequestRecord.status.in_(LIVE_STATUSES),
                WithdrawalRequestRecord.created_at >= start,
                WithdrawalRequestRecord.created_at < end,
            )
        ).scalar_one()

    @staticmethod
    def _lock_request(session: Session, request_id: UUID) -> WithdrawalRequestRecord:
        record = session.execute(
            select(WithdrawalRequestRecord)
            .where(WithdrawalRequestRecord.id == request_id)
            .with_for_update()
        ).scalar_one_or_none()
        if record is None:
            raise WithdrawalNotFoundError(f"Withdrawal {request_id} not found")
        return record
