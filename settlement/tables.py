from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utc_now
from core.database import Base, UTCDateTime
from referrals.models import ReferralLevel

from .models import RunStatus, TriggerSource


class ManagementBonusRecord(Base):
    """
    One management bonus paid to one referrer for one subordinate's day.

    The unique (referrer, subordinate, date) key is what makes a settlement
    rerun a no-op for pairs that were already paid.
    """

    __tablename__ = "management_bonuses"
    __table_args__ = (
        UniqueConstraint(
            "referrer_id", "subordinate_id", "task_date",
            name="uq_management_bonuses_referrer_subordinate_date",
        ),
        Index("idx_management_bonuses_referrer_date", "referrer_id", "task_date"),
        Index("idx_management_bonuses_subordinate_date", "subordinate_id", "task_date"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    referrer_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    subordinate_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    subordinate_level: Mapped[ReferralLevel] = mapped_column(
        Enum(ReferralLevel, native_enum=False, length=1), nullable=False
    )
    task_date: Mapped[date] = mapped_column(Date, nullable=False)
    task_income: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bonus_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rate: Mapped[str] = mapped_column(String(16), nullable=False)
    ledger_reference_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class SettlementRunRecord(Base):
    """Persisted run state per civil day; replaces an in-process "is running" flag."""

    __tablename__ = "settlement_runs"

    settlement_date: Mapped[date] = mapped_column(Date, primary_key=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, native_enum=False, length=32), default=RunStatus.IDLE, nullable=False
    )
    trigger: Mapped[TriggerSource] = mapped_column(
        Enum(TriggerSource, native_enum=False, length=16), default=TriggerSource.MANUAL, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    users_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bonuses_paid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    already_settled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SettlementAuditRecord(Base):
    """Append-only audit trail. Never consulted when deciding what to pay."""

    __tablename__ = "settlement_audit_log"
    __table_args__ = (
        Index("idx_settlement_audit_log_date", "settlement_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settlement_date: Mapped[date] = mapped_column(Date, nullable=False)
    event: Mapped[str] = mapped_column(String(32), nullable=False)
    summary: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
