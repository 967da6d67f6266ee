from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utc_now
from core.database import Base, UTCDateTime


class ReferralEdgeRecord(Base):
    """
    Direct (A-level) referral link.

    B and C ancestors are never stored; they are read by walking this table.
    The primary key on referee_id is what limits a user to one referrer.
    """

    __tablename__ = "referral_edges"
    __table_args__ = (
        CheckConstraint("referrer_id <> referee_id", name="ck_referral_edges_not_self"),
        Index("idx_referral_edges_referrer", "referrer_id"),
    )

    referee_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True
    )
    referrer_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class ReferralRewardEventRecord(Base):
    """
    One row per referee whose referral rewards were decided.

    Written even when every level was skipped or rounded to zero, so the
    payout never runs twice for the same referee.
    """

    __tablename__ = "referral_reward_events"
    __table_args__ = (
        CheckConstraint("qualifying_amount > 0", name="ck_referral_reward_events_amount"),
    )

    referee_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True
    )
    qualifying_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_awarded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    source_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
