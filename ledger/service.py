from typing import Iterable, Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import utc_now
from core.database import Database
from core.errors import (
    DuplicateEntryError,
    InvalidStateTransitionError,
    LedgerInvariantError,
    NotFoundError,
    UserNotFoundError,
    ValidationError,
)

from .models import (
    COMMISSION_KINDS,
    EARNING_CATEGORIES,
    NEGATIVE_KINDS,
    BalanceReconciliation,
    EarningsBreakdown,
    EntryStatus,
    LedgerEntry,
    LedgerHistoryResponse,
    TransactionKind,
    UserBalance,
)
from .tables import LedgerEntryRecord, UserRecord


def lock_user(session: Session, user_id: UUID) -> UserRecord:
    """Load the user row with a write lock; appends for one user queue here."""
    user = session.execute(
        select(UserRecord).where(UserRecord.id == user_id).with_for_update()
    ).scalar_one_or_none()
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


class LedgerService:
    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="LedgerService")

    def append(
        self,
        user_id: UUID,
        kind: TransactionKind,
        amount: int,
        reference_id: str,
        metadata: Optional[dict] = None,
        status: EntryStatus = EntryStatus.COMPLETED,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        kind = TransactionKind(kind)
        self._validate_amount(kind, amount)
        if not reference_id:
            raise ValidationError("reference_id is required")

        with self.database.use(session) as s:
            if self._find_entry(s, reference_id) is not None:
                raise DuplicateEntryError(
                    f"Ledger entry {reference_id} already exists", reference_id=reference_id
                )

            user = lock_user(s, user_id)
            self._check_chain_head(s, user)

            new_balance = user.wallet_balance + amount
            if new_balance < 0:
                raise LedgerInvariantError(
                    f"Entry {reference_id} would leave user {user_id} with balance {new_balance}"
                )

            sequence = user.ledger_sequence + 1
            record = LedgerEntryRecord(
                id=uuid4(),
                user_id=user_id,
                kind=kind,
                amount=amount,
                balance_after=new_balance,
                sequence=sequence,
                reference_id=reference_id,
                status=status,
                description=description or self._describe(kind),
                extra=metadata or {},
                created_at=utc_now(),
            )

            # A nested savepoint keeps a lost uniqueness race from poisoning
            # the caller's transaction.
            try:
                with s.begin_nested():
                    s.add(record)
                    s.flush()
            except IntegrityError as e:
                raise DuplicateEntryError(
                    f"Ledger entry {reference_id} already exists", reference_id=reference_id
                ) from e

            user.wallet_balance = new_balance
            user.ledger_sequence = sequence
            if kind in COMMISSION_KINDS:
                user.total_earnings += amount
            s.flush()

            self.logger.debug(
                f"Appended {kind.value} {amount:+d} for {user_id} "
                f"(balance {new_balance}, ref {reference_id})"
            )
            return LedgerEntry.model_validate(record)

    def settle_entry_status(
        self, reference_id: str, status: EntryStatus, session: Optional[Session] = None
    ) -> LedgerEntry:
        """Move a PENDING entry to COMPLETED or FAILED. Amounts never change."""
        status = EntryStatus(status)
        if status == EntryStatus.PENDING:
            raise InvalidStateTransitionError("Entries cannot be moved back to PENDING")

        with self.database.use(session) as s:
            record = self._find_entry(s, reference_id)
            if record is None:
                raise NotFoundError(f"Ledger entry {reference_id} not found")
            if record.status != EntryStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Ledger entry {reference_id} is already {record.status.value}"
                )
            record.status = status
            s.flush()
            return LedgerEntry.model_validate(record)

    def get_entry(self, reference_id: str, session: Optional[Session] = None) -> Optional[LedgerEntry]:
        with self.database.use(session) as s:
            record = self._find_entry(s, reference_id)
            return LedgerEntry.model_validate(record) if record else None

    def get_balance(self, user_id: UUID) -> UserBalance:
        with self.database.transaction() as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            total_entries, last_at = s.execute(
                select(func.count(LedgerEntryRecord.id), func.max(LedgerEntryRecord.created_at))
                .where(LedgerEntryRecord.user_id == user_id)
            ).one()

            return UserBalance(
                user_id=user_id,
                current_balance=user.wallet_balance,
                total_earnings=user.total_earnings,
                total_entries=total_entries,
                last_transaction_at=last_at,
            )

    def get_ledger_history(
        self,
        user_id: UUID,
        limit: int = 50,
        offset: int = 0,
        kinds: Optional[Iterable[TransactionKind]] = None,
    ) -> LedgerHistoryResponse:
        with self.database.transaction() as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")

            query = select(LedgerEntryRecord).where(LedgerEntryRecord.user_id == user_id)
            count_query = select(func.count(LedgerEntryRecord.id)).where(LedgerEntryRecord.user_id == user_id)
            if kinds is not None:
                kinds = [TransactionKind(k) for k in kinds]
                query = query.where(LedgerEntryRecord.kind.in_(kinds))
                count_query = count_query.where(LedgerEntryRecord.kind.in_(kinds))

            records = s.execute(
                query.order_by(LedgerEntryRecord.sequence.desc()).limit(limit).offset(offset)
            ).scalars().all()

            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.model_validate(r) for r in records],
                total_count=s.execute(count_query).scalar_one(),
                current_balance=user.wallet_balance,
            )

    def get_earnings_breakdown(self, user_id: UUID) -> EarningsBreakdown:
        with self.database.transaction() as s:
            if s.get(UserRecord, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            rows = s.execute(
                select(LedgerEntryRecord.kind, func.sum(LedgerEntryRecord.amount))
                .where(
                    LedgerEntryRecord.user_id == user_id,
                    LedgerEntryRecord.kind.in_(COMMISSION_KINDS),
                )
                .group_by(LedgerEntryRecord.kind)
            ).all()

        per_kind = {kind: int(total or 0) for kind, total in rows}
        totals = {
            category: sum(per_kind.get(k, 0) for k in kinds)
            for category, kinds in EARNING_CATEGORIES.items()
        }
        return EarningsBreakdown(user_id=user_id, **totals)

    def verify_balance(self, user_id: UUID) -> BalanceReconciliation:
        """Replay the user's chain and compare it with the cached figures."""
        with self.database.transaction() as s:
            user = s.get(UserRecord, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            records = s.execute(
                select(LedgerEntryRecord)
                .where(LedgerEntryRecord.user_id == user_id)
                .order_by(LedgerEntryRecord.sequence)
            ).scalars().all()

            running = 0
            commission_sum = 0
            breaks: list[int] = []
            for record in records:
                running += record.amount
                if record.balance_after != running:
                    breaks.append(record.sequence)
                    running = record.balance_after
                if record.kind in COMMISSION_KINDS:
                    commission_sum += record.amount

            reconciliation = BalanceReconciliation(
                user_id=user_id,
                wallet_balance=user.wallet_balance,
                ledger_sum=sum(r.amount for r in records),
                last_balance_after=records[-1].balance_after if records else 0,
                total_earnings=user.total_earnings,
                commission_sum=commission_sum,
                chain_breaks=breaks,
            )

        if not reconciliation.is_consistent:
            self.logger.error(f"Balance reconciliation failed for {user_id}: {reconciliation.model_dump()}")
        return reconciliation

    @staticmethod
    def _find_entry(session: Session, reference_id: str) -> Optional[LedgerEntryRecord]:
        return session.execute(
            select(LedgerEntryRecord).where(LedgerEntryRecord.reference_id == reference_id)
        ).scalar_one_or_none()

    @staticmethod
    def _check_chain_head(session: Session, user: UserRecord) -> None:
        head = session.execute(
            select(LedgerEntryRecord.balance_after, LedgerEntryRecord.sequence)
            .where(LedgerEntryRecord.user_id == user.id)
            .order_by(LedgerEntryRecord.sequence.desc())
            .limit(1)
        ).first()
        head_balance, head_sequence = head if head else (0, 0)
        if head_balance != user.wallet_balance or head_sequence != user.ledger_sequence:
            raise LedgerInvariantError(
                f"User {user.id} balance {user.wallet_balance} (seq {user.ledger_sequence}) "
                f"does not match ledger head {head_balance} (seq {head_sequence})"
            )

    @staticmethod
    def _validate_amount(kind: TransactionKind, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Amount must be an integer number of base units, got {amount!r}")
        if amount == 0:
            raise ValidationError("Ledger entries must move a non-zero amount")
        if kind in NEGATIVE_KINDS and amount > 0:
            raise ValidationError(f"{kind.value} entries must be negative")
        if kind not in NEGATIVE_KINDS and amount < 0:
            raise ValidationError(f"{kind.value} entries must be positive")

    @staticmethod
    def _describe(kind: TransactionKind) -> str:
        return kind.value.replace("_", " ").capitalize()
