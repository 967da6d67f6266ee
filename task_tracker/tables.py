from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Boolean, Date, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from core.database import Base, UTCDateTime


class DailyTaskRecordRow(Base):
    __tablename__ = "daily_task_records"
    __table_args__ = (
        UniqueConstraint("user_id", "task_id", "task_date", name="uq_daily_task_records_user_task_date"),
        Index("idx_daily_task_records_user_date", "user_id", "task_date"),
        Index("idx_daily_task_records_date", "task_date"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    task_id: Mapped[str] = mapped_column(String(128), nullable=False)
    watched_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Civil date in the settlement timezone, fixed when the record is written.
    task_date: Mapped[date] = mapped_column(Date, nullable=False)
    reward_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
