from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import func, select

from core.clock import month_start
from core.database import Database
from core.errors import UserNotFoundError
from ledger.tables import UserRecord
from referrals.hierarchy import ReferralHierarchyIndex

from .models import LevelTotals, ManagementBonusStats, SubordinateActivity
from .tables import ManagementBonusRecord


def _next_month(day: date) -> date:
    start = month_start(day)
    return (start + timedelta(days=32)).replace(day=1)


class ManagementBonusStatsService:
    """Read-only views over paid management bonuses for dashboards."""

    def __init__(self, database: Database, hierarchy: ReferralHierarchyIndex):
        self.database = database
        self.hierarchy = hierarchy

    def get_management_bonus_stats(self, user_id: UUID, day: date) -> ManagementBonusStats:
        with self.database.transaction() as s:
            if s.get(UserRecord, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            daily = self._totals_by_level(s, user_id, day, day + timedelta(days=1))
            monthly = self._totals_by_level(s, user_id, month_start(day), _next_month(day))

        team = self.hierarchy.get_team_counts(user_id)
        return ManagementBonusStats(
            user_id=user_id,
            day=day,
            daily_bonuses=daily,
            monthly_bonuses=monthly,
            subordinate_count=LevelTotals(A=team.A, B=team.B, C=team.C),
        )

    def get_subordinate_activity(self, user_id: UUID, day: date, limit: int = 10) -> list[SubordinateActivity]:
        edges = self.hierarchy.get_descendant_edges(user_id)[:limit]
        activity = []
        with self.database.transaction() as s:
            for edge in edges:
                base = select(func.coalesce(func.sum(ManagementBonusRecord.bonus_amount), 0)).where(
                    ManagementBonusRecord.referrer_id == user_id,
                    ManagementBonusRecord.subordinate_id == edge.referee_id,
                )
                day_bonus = s.execute(base.where(ManagementBonusRecord.task_date == day)).scalar_one()
                monthly_bonus = s.execute(
                    base.where(
                        ManagementBonusRecord.task_date >= month_start(day),
                        ManagementBonusRecord.task_date < _next_month(day),
                    )
                ).scalar_one()
                last = s.execute(
                    select(func.max(ManagementBonusRecord.task_date)).where(
                        ManagementBonusRecord.referrer_id == user_id,
                        ManagementBonusRecord.subordinate_id == edge.referee_id,
                    )
                ).scalar_one()
                subordinate = s.get(UserRecord, edge.referee_id)
                activity.append(SubordinateActivity(
                    subordinate_id=edge.referee_id,
                    subordinate_name=subordinate.name if subordinate else "",
                    level=edge.level,
                    day_bonus=int(day_bonus),
                    monthly_bonus=int(monthly_bonus),
                    last_bonus_date=last,
                ))

        # Most recently active first, never-paid last.
        activity.sort(key=lambda a: (a.last_bonus_date is None, -(a.last_bonus_date or date.min).toordinal()))
        return activity

    @staticmethod
    def _totals_by_level(session, user_id: UUID, start: date, end: date) -> LevelTotals:
        rows = session.execute(
            select(ManagementBonusRecord.subordinate_level, func.sum(ManagementBonusRecord.bonus_amount))
            .where(
                ManagementBonusRecord.referrer_id == user_id,
                ManagementBonusRecord.task_date >= start,
                ManagementBonusRecord.task_date < end,
            )
            .group_by(ManagementBonusRecord.subordinate_level)
        ).all()
        return LevelTotals(**{level.value: int(total or 0) for level, total in rows})
