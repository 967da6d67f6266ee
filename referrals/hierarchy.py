from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import utc_now
from core.database import Database
from core.errors import (
    CommissionIntegrityError,
    ReferralConflictError,
    UserNotFoundError,
    ValidationError,
)
from ledger.tables import UserRecord

from .models import MAX_DEPTH, Ancestors, ReferralEdge, ReferralLevel, TeamCounts
from .tables import ReferralEdgeRecord


class ReferralHierarchyIndex:
    """
    Three-level referral ancestry.

    Only A-level edges are written. B and C are derived by following the
    A chain at read time, so there is one update path and nothing to keep
    in sync.
    """

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="ReferralHierarchyIndex")

    def record_referral(
        self, referrer_id: UUID, referee_id: UUID, session: Optional[Session] = None
    ) -> ReferralEdge:
        if referrer_id == referee_id:
            raise ValidationError("A user cannot refer themselves")

        with self.database.use(session) as s:
            for uid in (referrer_id, referee_id):
                if s.get(UserRecord, uid) is None:
                    raise UserNotFoundError(f"User {uid} not found")

            existing = s.get(ReferralEdgeRecord, referee_id)
            if existing is not None:
                raise ReferralConflictError(
                    f"User {referee_id} already has referrer {existing.referrer_id}"
                )

            # Linking under one of the referee's own descendants would close a loop.
            if self._is_upline(s, ancestor_id=referee_id, user_id=referrer_id):
                raise ValidationError(
                    f"User {referrer_id} is in the downline of {referee_id}; referral would create a cycle"
                )

            record = ReferralEdgeRecord(
                referee_id=referee_id, referrer_id=referrer_id, created_at=utc_now()
            )
            try:
                with s.begin_nested():
                    s.add(record)
                    s.flush()
            except IntegrityError as e:
                raise ReferralConflictError(f"User {referee_id} already has a referrer") from e

            self.logger.info(f"Recorded referral {referrer_id} -> {referee_id}")
            return ReferralEdge.model_validate(record)

    def get_referrer(self, user_id: UUID, session: Optional[Session] = None) -> Optional[UUID]:
        with self.database.use(session) as s:
            return self._referrer_of(s, user_id)

    def get_ancestors(self, user_id: UUID, session: Optional[Session] = None) -> Ancestors:
        with self.database.use(session) as s:
            if s.get(UserRecord, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")

            found: dict[str, UUID] = {}
            seen = {user_id}
            current = user_id
            for depth in range(1, MAX_DEPTH + 1):
                parent = self._referrer_of(s, current)
                if parent is None:
                    break
                if parent in seen:
                    raise CommissionIntegrityError(
                        f"Referral chain of {user_id} loops back to {parent}"
                    )
                seen.add(parent)
                found[ReferralLevel.from_depth(depth).value] = parent
                current = parent

            return Ancestors(user_id=user_id, **found)

    def get_descendants_at_level(
        self, user_id: UUID, level: ReferralLevel, session: Optional[Session] = None
    ) -> set[UUID]:
        level = ReferralLevel(level)
        with self.database.use(session) as s:
            if s.get(UserRecord, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")

            frontier = {user_id}
            for _ in range(level.depth):
                if not frontier:
                    break
                frontier = set(
                    s.execute(
                        select(ReferralEdgeRecord.referee_id).where(
                            ReferralEdgeRecord.referrer_id.in_(frontier)
                        )
                    ).scalars()
                )
            frontier.discard(user_id)
            return frontier

    def get_descendant_edges(self, user_id: UUID) -> list[ReferralEdge]:
        """All downline members up to level C, each tagged with its level relative to user_id."""
        edges: list[ReferralEdge] = []
        with self.database.transaction() as s:
            frontier = {user_id}
            for depth in range(1, MAX_DEPTH + 1):
                if not frontier:
                    break
                records = s.execute(
                    select(ReferralEdgeRecord).where(ReferralEdgeRecord.referrer_id.in_(frontier))
                ).scalars().all()
                level = ReferralLevel.from_depth(depth)
                edges.extend(
                    ReferralEdge(
                        referrer_id=user_id,
                        referee_id=r.referee_id,
                        level=level,
                        created_at=r.created_at,
                    )
                    for r in records
                )
                frontier = {r.referee_id for r in records}
        return edges

    def get_team_counts(self, user_id: UUID) -> TeamCounts:
        counts = {
            level.value: len(self.get_descendants_at_level(user_id, level))
            for level in ReferralLevel
        }
        return TeamCounts(user_id=user_id, **counts)

    def count_direct_referrals(self, user_id: UUID) -> int:
        with self.database.transaction() as s:
            return s.execute(
                select(func.count()).select_from(ReferralEdgeRecord).where(
                    ReferralEdgeRecord.referrer_id == user_id
                )
            ).scalar_one()

    @staticmethod
    def _referrer_of(session: Session, user_id: UUID) -> Optional[UUID]:
        return session.execute(
            select(ReferralEdgeRecord.referrer_id).where(ReferralEdgeRecord.referee_id == user_id)
        ).scalar_one_or_none()

    def _is_upline(self, session: Session, ancestor_id: UUID, user_id: UUID) -> bool:
        # Unbounded walk: a loop at any depth would break the three-hop reads.
        seen = set()
        current = self._referrer_of(session, user_id)
        while current is not None and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            current = self._referrer_of(session, current)
        return False
