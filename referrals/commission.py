"""
Commission calculations.

Pure functions: they read an ancestor chain and amounts and return the
awards owed. Committing awards is the caller's job (ReferralRewardService
for one-time referral rewards, the settlement engine for management
bonuses).
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError

from core.database import Database
from core.errors import CommissionIntegrityError, DuplicateEntryError, ValidationError
from ledger.models import AccountStatus
from ledger.service import LedgerService, lock_user

from .hierarchy import ReferralHierarchyIndex
from .models import Ancestors, CommissionAward, ReferralLevel, ReferralRewardResult
from .tables import ReferralRewardEventRecord


def apply_rate(base_amount: int, rate: Decimal) -> int:
    """Whole-unit commission, rounded half up."""
    return int((Decimal(base_amount) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def referral_reference(referee_id: UUID, level: ReferralLevel) -> str:
    return f"REFERRAL_{referee_id}_{ReferralLevel(level).value}"


def management_bonus_reference(referrer_id: UUID, subordinate_id: UUID, task_date: date) -> str:
    return f"MGMT_BONUS_{referrer_id}_{subordinate_id}_{task_date.isoformat()}"


def check_chain(subject_id: UUID, ancestors: Ancestors) -> None:
    """Reject chains that would pay the same user twice or pay the subject."""
    if ancestors.user_id != subject_id:
        raise CommissionIntegrityError(
            f"Ancestor chain belongs to {ancestors.user_id}, not {subject_id}"
        )
    seen: set[UUID] = set()
    for level, uid in ancestors.items():
        if uid == subject_id:
            raise CommissionIntegrityError(f"User {subject_id} is their own {level.value}-level ancestor")
        if uid in seen:
            raise CommissionIntegrityError(
                f"User {uid} appears at more than one level above {subject_id}"
            )
        seen.add(uid)
    # A missing hop followed by a present one means the chain was not built from A edges.
    depths = [level.depth for level, _ in ancestors.items()]
    if depths != list(range(1, len(depths) + 1)):
        raise CommissionIntegrityError(f"Ancestor chain of {subject_id} has gaps: {depths}")


def compute_referral_rewards(
    referee_id: UUID,
    qualifying_amount: int,
    ancestors: Ancestors,
    rates: Mapping[str, Decimal],
) -> list[CommissionAward]:
    if qualifying_amount < 0:
        raise ValidationError("Qualifying amount cannot be negative")
    check_chain(referee_id, ancestors)

    awards = []
    for level, beneficiary in ancestors.items():
        rate = Decimal(rates.get(level.value, 0))
        amount = apply_rate(qualifying_amount, rate)
        if amount <= 0:
            continue
        awards.append(CommissionAward(
            beneficiary_id=beneficiary,
            source_user_id=referee_id,
            level=level,
            kind=level.referral_reward_kind,
            base_amount=qualifying_amount,
            rate=str(rate),
            amount=amount,
            reference_id=referral_reference(referee_id, level),
        ))
    return awards


def compute_management_bonuses(
    subordinate_id: UUID,
    task_date: date,
    task_income: int,
    is_complete: bool,
    ancestors: Ancestors,
    rates: Mapping[str, Decimal],
) -> list[CommissionAward]:
    """
    Daily management bonus for each existing ancestor of the subordinate.

    Nothing is owed unless the subordinate finished 100% of the day's quota
    with positive income. Zero amounts are dropped rather than returned.
    """
    if task_income < 0:
        raise ValidationError("Task income cannot be negative")
    check_chain(subordinate_id, ancestors)
    if not is_complete or task_income == 0:
        return []

    awards = []
    for level, referrer in ancestors.items():
        rate = Decimal(rates.get(level.value, 0))
        amount = apply_rate(task_income, rate)
        if amount <= 0:
            continue
        awards.append(CommissionAward(
            beneficiary_id=referrer,
            source_user_id=subordinate_id,
            level=level,
            kind=level.management_bonus_kind,
            base_amount=task_income,
            rate=str(rate),
            amount=amount,
            reference_id=management_bonus_reference(referrer, subordinate_id, task_date),
        ))
    return awards


class ReferralRewardService:
    """One-time rewards paid to a referee's ancestors on their qualifying event."""

    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        hierarchy: ReferralHierarchyIndex,
        rates: Mapping[str, Decimal],
    ):
        self.database = database
        self.ledger = ledger
        self.hierarchy = hierarchy
        self.rates = dict(rates)
        self.logger = logger.bind(service="ReferralRewardService")

    def award_referral_rewards(
        self, referee_id: UUID, qualifying_amount: int, source_reference: Optional[str] = None
    ) -> ReferralRewardResult:
        if qualifying_amount <= 0:
            raise ValidationError("Qualifying amount must be positive")

        with self.database.transaction() as s:
            ancestors = self.hierarchy.get_ancestors(referee_id, session=s)
            event = ReferralRewardEventRecord(
                referee_id=referee_id,
                qualifying_amount=qualifying_amount,
                total_awarded=0,
                source_reference=source_reference,
            )
            try:
                with s.begin_nested():
                    s.add(event)
                    s.flush()
            except IntegrityError as e:
                raise DuplicateEntryError(
                    f"Referral rewards for {referee_id} were already paid",
                    reference_id=f"REFERRAL_{referee_id}",
                ) from e

            awards = compute_referral_rewards(referee_id, qualifying_amount, ancestors, self.rates)

            paid: list[CommissionAward] = []
            skipped: list[ReferralLevel] = []
            # Lock beneficiaries in a fixed order so concurrent payouts cannot deadlock.
            for award in sorted(awards, key=lambda a: str(a.beneficiary_id)):
                beneficiary = lock_user(s, award.beneficiary_id)
                if beneficiary.status != AccountStatus.ACTIVE:
                    skipped.append(award.level)
                    continue
                self.ledger.append(
                    award.beneficiary_id,
                    award.kind,
                    award.amount,
                    award.reference_id,
                    metadata={
                        "referred_user_id": str(referee_id),
                        "level": award.level.value,
                        "qualifying_amount": qualifying_amount,
                        "rate": award.rate,
                        "source_reference": source_reference,
                    },
                    description=f"{award.level.value}-level referral reward",
                    session=s,
                )
                paid.append(award)
            event.total_awarded = sum(a.amount for a in paid)

        paid.sort(key=lambda a: a.level.depth)
        result = ReferralRewardResult(
            referee_id=referee_id,
            qualifying_amount=qualifying_amount,
            awards=paid,
            skipped_levels=sorted(skipped, key=lambda lvl: lvl.depth),
        )
        self.logger.info(
            f"Referral rewards for {referee_id}: {len(paid)} paid, total {result.total_awarded}"
        )
        return result
