from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utc_now
from core.database import Base, UTCDateTime

from .models import AccountStatus, EntryStatus, TransactionKind


class UserRecord(Base):
    """
    User account with the two cached ledger figures.

    wallet_balance mirrors balance_after of the newest ledger entry and
    total_earnings the sum of commission-bearing entries. Both are written
    only by LedgerService.append in the same transaction as the entry.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus, native_enum=False, length=20),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )
    is_intern: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    daily_task_quota: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    wallet_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_earnings: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    ledger_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class LedgerEntryRecord(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("reference_id", name="uq_ledger_entries_reference_id"),
        UniqueConstraint("user_id", "sequence", name="uq_ledger_entries_user_sequence"),
        Index("idx_ledger_entries_user_time", "user_id", "created_at"),
        Index("idx_ledger_entries_user_kind", "user_id", "kind"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, native_enum=False, length=32), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EntryStatus] = mapped_column(
        Enum(EntryStatus, native_enum=False, length=16),
        default=EntryStatus.COMPLETED,
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<LedgerEntry(user={self.user_id}, kind='{self.kind.value}', amount={self.amount}, balance_after={self.balance_after})>"
