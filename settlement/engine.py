"""
Daily settlement.

Pays management bonuses for one civil day. Every (referrer, subordinate,
date) award commits in its own transaction; the unique key on
management_bonuses turns reruns and overlapping runs into no-ops for pairs
that were already paid, so no lock is taken at schedule time.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.clock import utc_now
from core.database import Database
from core.errors import (
    CommissionError,
    DuplicateEntryError,
    PartialBatchFailure,
    SettlementAbortedError,
)
from ledger.models import AccountStatus
from ledger.service import LedgerService
from ledger.tables import UserRecord
from referrals.commission import compute_management_bonuses
from referrals.hierarchy import ReferralHierarchyIndex
from referrals.models import CommissionAward
from task_tracker.tracker import TaskCompletionTracker

from .models import (
    ManagementBonusEntry,
    RunStatus,
    SettlementFailure,
    SettlementReport,
    SettlementRun,
    TriggerSource,
)
from .tables import ManagementBonusRecord, SettlementAuditRecord, SettlementRunRecord


PAID = "paid"
ALREADY_SETTLED = "already_settled"


class SettlementEngine:
    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        hierarchy: ReferralHierarchyIndex,
        tracker: TaskCompletionTracker,
        rates: Mapping[str, Decimal],
        max_workers: int = 4,
        failure_threshold: float = 0.5,
        stale_after: timedelta = timedelta(minutes=60),
    ):
        self.database = database
        self.ledger = ledger
        self.hierarchy = hierarchy
        self.tracker = tracker
        self.rates = dict(rates)
        self.max_workers = max_workers
        self.failure_threshold = failure_threshold
        self.stale_after = stale_after
        self.logger = logger.bind(service="SettlementEngine")

    def trigger_settlement(
        self, settlement_date: date, trigger: TriggerSource = TriggerSource.MANUAL
    ) -> SettlementReport:
        """
        Settle management bonuses for ``settlement_date``.

        Safe to call repeatedly and concurrently for the same date. Returns
        the report for COMPLETED and COMPLETED_WITH_ERRORS runs; raises
        PartialBatchFailure when the failure rate passes the threshold and
        SettlementAbortedError when the store cannot be read.
        """
        trigger = TriggerSource(trigger)
        report = SettlementReport(
            settlement_date=settlement_date, trigger=trigger, started_at=utc_now()
        )
        self._enter_running(report)
        self._audit(settlement_date, "STARTED", report.summary())

        try:
            awards, failures, users_processed = self._collect_awards(settlement_date)
        except SQLAlchemyError as e:
            report.status = RunStatus.FAILED
            report.finished_at = utc_now()
            self.logger.exception(f"Settlement for {settlement_date} aborted while reading tasks")
            self._finish(report, last_error=f"{type(e).__name__}: {e}")
            raise SettlementAbortedError(f"Settlement for {settlement_date} aborted: {e}") from e

        report.users_processed = users_processed
        report.eligible_subordinates = len({a.source_user_id for a in awards})
        report.failures.extend(failures)

        for award, outcome in self._commit_awards(settlement_date, awards):
            if isinstance(outcome, SettlementFailure):
                report.failures.append(outcome)
            elif outcome == ALREADY_SETTLED:
                report.already_settled += 1
            else:
                report.bonuses_paid += 1
                report.total_amount += award.amount

        if report.failures and report.failure_rate > self.failure_threshold:
            report.status = RunStatus.FAILED
        elif report.failures:
            report.status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            report.status = RunStatus.COMPLETED
        report.finished_at = utc_now()

        last_error = report.failures[-1].error if report.failures else None
        self._finish(report, last_error=last_error)

        if report.status == RunStatus.FAILED:
            raise PartialBatchFailure(
                f"Settlement for {settlement_date} failed: "
                f"{len(report.failures)} of {report.attempted} awards failed",
                report=report,
            )
        return report

    def get_run(self, settlement_date: date) -> Optional[SettlementRun]:
        with self.database.transaction() as s:
            record = s.get(SettlementRunRecord, settlement_date)
            return SettlementRun.model_validate(record) if record else None

    def list_runs(self, limit: int = 30) -> list[SettlementRun]:
        with self.database.transaction() as s:
            records = s.execute(
                select(SettlementRunRecord)
                .order_by(SettlementRunRecord.settlement_date.desc())
                .limit(limit)
            ).scalars().all()
            return [SettlementRun.model_validate(r) for r in records]

    def list_bonuses(
        self,
        settlement_date: Optional[date] = None,
        referrer_id: Optional[UUID] = None,
        subordinate_id: Optional[UUID] = None,
    ) -> list[ManagementBonusEntry]:
        query = select(ManagementBonusRecord)
        if settlement_date is not None:
            query = query.where(ManagementBonusRecord.task_date == settlement_date)
        if referrer_id is not None:
            query = query.where(ManagementBonusRecord.referrer_id == referrer_id)
        if subordinate_id is not None:
            query = query.where(ManagementBonusRecord.subordinate_id == subordinate_id)
        with self.database.transaction() as s:
            records = s.execute(
                query.order_by(ManagementBonusRecord.task_date, ManagementBonusRecord.subordinate_level)
            ).scalars().all()
            return [ManagementBonusEntry.model_validate(r) for r in records]

    def _collect_awards(
        self, settlement_date: date
    ) -> tuple[list[CommissionAward], list[SettlementFailure], int]:
        awards: list[CommissionAward] = []
        failures: list[SettlementFailure] = []

        with self.database.transaction() as s:
            user_ids = self.tracker.get_active_users(settlement_date, session=s)
            for user_id in user_ids:
                subordinate = s.get(UserRecord, user_id)
                # Interns never generate management bonuses.
                if subordinate is None or subordinate.is_intern:
                    continue

                status = self.tracker.get_daily_completion_status(user_id, settlement_date, session=s)
                if not status.is_complete or status.task_income <= 0:
                    continue

                try:
                    ancestors = self.hierarchy.get_ancestors(user_id, session=s)
                    owed = compute_management_bonuses(
                        user_id,
                        settlement_date,
                        status.task_income,
                        status.is_complete,
                        ancestors,
                        self.rates,
                    )
                except CommissionError as e:
                    self.logger.warning(f"Skipping subordinate {user_id} on {settlement_date}: {e}")
                    failures.append(SettlementFailure(
                        subordinate_id=user_id, error_type=type(e).__name__, error=str(e)
                    ))
                    continue

                for award in owed:
                    referrer = s.get(UserRecord, award.beneficiary_id)
                    if referrer is None or referrer.status != AccountStatus.ACTIVE:
                        continue
                    awards.append(award)

        return awards, failures, len(user_ids)

    def _commit_awards(self, settlement_date: date, awards: list[CommissionAward]):
        # Grouping by referrer gives each credited balance a single writer in this run.
        groups: dict[UUID, list[CommissionAward]] = defaultdict(list)
        for award in awards:
            groups[award.beneficiary_id].append(award)
        if not groups:
            return []

        def settle_group(group: list[CommissionAward]):
            return [(award, self._commit_award(settlement_date, award)) for award in group]

        workers = max(1, min(self.max_workers, len(groups)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="settlement") as pool:
            results = list(pool.map(settle_group, groups.values()))
        return [pair for group in results for pair in group]

    def _commit_award(self, settlement_date: date, award: CommissionAward):
        try:
            with self.database.transaction() as s:
                bonus = ManagementBonusRecord(
                    id=uuid4(),
                    referrer_id=award.beneficiary_id,
                    subordinate_id=award.source_user_id,
                    subordinate_level=award.level,
                    task_date=settlement_date,
                    task_income=award.base_amount,
                    bonus_amount=award.amount,
                    rate=award.rate,
                    ledger_reference_id=award.reference_id,
                    created_at=utc_now(),
                )
                try:
                    with s.begin_nested():
                        s.add(bonus)
                        s.flush()
                except IntegrityError as e:
                    raise DuplicateEntryError(
                        f"Bonus {award.reference_id} already settled", reference_id=award.reference_id
                    ) from e

                self.ledger.append(
                    award.beneficiary_id,
                    award.kind,
                    award.amount,
                    award.reference_id,
                    metadata={
                        "subordinate_id": str(award.source_user_id),
                        "subordinate_level": award.level.value,
                        "task_income": award.base_amount,
                        "rate": award.rate,
                        "task_date": settlement_date.isoformat(),
                    },
                    description=f"{award.level.value}-level management bonus from subordinate task completion",
                    session=s,
                )
            return PAID
        except DuplicateEntryError:
            return ALREADY_SETTLED
        except Exception as e:
            self.logger.error(
                f"Management bonus {award.reference_id} failed: {type(e).__name__}: {e}"
            )
            return SettlementFailure(
                subordinate_id=award.source_user_id,
                referrer_id=award.beneficiary_id,
                level=award.level,
                reference_id=award.reference_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    def _enter_running(self, report: SettlementReport) -> None:
        now = report.started_at
        with self.database.transaction() as s:
            record = s.execute(
                select(SettlementRunRecord)
                .where(SettlementRunRecord.settlement_date == report.settlement_date)
                .with_for_update()
            ).scalar_one_or_none()
            if record is None:
                record = SettlementRunRecord(
                    settlement_date=report.settlement_date,
                    status=RunStatus.IDLE,
                    trigger=report.trigger,
                    attempts=0,
                )
                try:
                    with s.begin_nested():
                        s.add(record)
                        s.flush()
                except IntegrityError:
                    # Another trigger created the row first.
                    record = s.execute(
                        select(SettlementRunRecord)
                        .where(SettlementRunRecord.settlement_date == report.settlement_date)
                        .with_for_update()
                    ).scalar_one()

            if (
                record.status == RunStatus.RUNNING
                and record.started_at is not None
                and now - record.started_at < self.stale_after
            ):
                report.overlapping_run_detected = True
                self.logger.warning(
                    f"Settlement for {report.settlement_date} is already running "
                    f"(started {record.started_at.isoformat()}); continuing, paid pairs will be skipped"
                )

            record.status = RunStatus.RUNNING
            record.trigger = report.trigger
            record.attempts += 1
            record.started_at = now
            record.finished_at = None
            report.attempt = record.attempts

    def _finish(self, report: SettlementReport, last_error: Optional[str] = None) -> None:
        with self.database.transaction() as s:
            record = s.get(SettlementRunRecord, report.settlement_date)
            record.status = report.status
            record.finished_at = report.finished_at
            record.users_processed = report.users_processed
            record.bonuses_paid = report.bonuses_paid
            record.already_settled = report.already_settled
            record.total_amount = report.total_amount
            record.failure_count = len(report.failures)
            record.last_error = last_error

        summary = report.summary()
        summary["failure_details"] = [f.model_dump(mode="json") for f in report.failures]
        self._audit(report.settlement_date, report.status.value, summary)

        bound = self.logger.bind(settlement=report.summary())
        if report.status == RunStatus.COMPLETED:
            bound.info(
                f"Settlement {report.settlement_date} completed: {report.bonuses_paid} paid, "
                f"{report.already_settled} already settled, total {report.total_amount}"
            )
        else:
            bound.error(
                f"Settlement {report.settlement_date} finished {report.status.value}: "
                f"{report.bonuses_paid} paid, {len(report.failures)} failures"
            )

    def _audit(self, settlement_date: date, event: str, summary: dict) -> None:
        with self.database.transaction() as s:
            s.add(SettlementAuditRecord(
                settlement_date=settlement_date,
                event=event,
                summary=summary,
                created_at=utc_now(),
            ))

    def get_audit_log(self, settlement_date: date) -> list[dict]:
        with self.database.transaction() as s:
            records = s.execute(
                select(SettlementAuditRecord)
                .where(SettlementAuditRecord.settlement_date == settlement_date)
                .order_by(SettlementAuditRecord.id)
            ).scalars().all()
            return [
                {"event": r.event, "summary": r.summary, "created_at": r.created_at}
                for r in records
            ]
