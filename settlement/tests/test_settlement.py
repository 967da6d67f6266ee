"""
Unit Tests for Daily Settlement

Tests cover:
1. The C -> B -> A management bonus scenario
2. Idempotent reruns
3. Eligibility (incomplete days, interns, inactive referrers)
4. Partial failures and the failure threshold
5. Run state, overlap detection and the audit log
6. Bonus statistics and the scheduler
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date

from core.clock import utc_now
from core.errors import LedgerInvariantError, PartialBatchFailure
from ledger.models import AccountStatus, TransactionKind
from referrals.models import ReferralLevel
from settlement.models import RunStatus, TriggerSource
from settlement.scheduler import DailySettlementScheduler
from settlement.tables import SettlementRunRecord


DAY = date(2025, 1, 15)


@pytest.fixture
def family(make_user):
    """C refers B refers A."""
    c_user = make_user("C")
    b_user = make_user("B", referrer=c_user)
    a_user = make_user("A", referrer=b_user)
    return a_user, b_user, c_user


def bonus_entries(services, user):
    history = services.ledger.get_ledger_history(user.id, kinds=[
        TransactionKind.MANAGEMENT_BONUS_A,
        TransactionKind.MANAGEMENT_BONUS_B,
        TransactionKind.MANAGEMENT_BONUS_C,
    ])
    return history.entries


class TestSettlementScenario:
    """Tests for the concrete three-user scenario."""

    def test_bonuses_paid_up_the_chain(self, services, family, complete_tasks):
        """Test A's full day pays B 8% and C 3%, with no C-level entry."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)

        report = services.settlement.trigger_settlement(DAY)

        assert report.status == RunStatus.COMPLETED
        assert report.users_processed == 1
        assert report.bonuses_paid == 2
        assert report.total_amount == 110

        b_entries = bonus_entries(services, b_user)
        assert [(e.kind, e.amount) for e in b_entries] == [(TransactionKind.MANAGEMENT_BONUS_A, 80)]
        c_entries = bonus_entries(services, c_user)
        assert [(e.kind, e.amount) for e in c_entries] == [(TransactionKind.MANAGEMENT_BONUS_B, 30)]

        # A's own balance only holds task income
        assert services.ledger.get_balance(a_user.id).current_balance == 1000
        assert bonus_entries(services, a_user) == []

    def test_rerun_changes_nothing(self, services, family, complete_tasks):
        """Test a second run for the same day pays nothing new."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)
        services.settlement.trigger_settlement(DAY)
        before = {u.id: services.ledger.get_balance(u.id) for u in family}

        report = services.settlement.trigger_settlement(DAY)

        assert report.bonuses_paid == 0
        assert report.already_settled == 2
        assert report.status == RunStatus.COMPLETED
        for user in family:
            after = services.ledger.get_balance(user.id)
            assert after.current_balance == before[user.id].current_balance
            assert after.total_entries == before[user.id].total_entries
        assert len(services.settlement.list_bonuses(DAY)) == 2

    def test_balances_reconcile_after_settlement(self, services, family, complete_tasks):
        """Test every participant's ledger still reconciles."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)
        services.settlement.trigger_settlement(DAY)

        for user in family:
            assert services.ledger.verify_balance(user.id).is_consistent

    def test_fan_out_to_one_referrer(self, services, make_user, complete_tasks):
        """Test a referrer is paid once per eligible subordinate."""
        leader = make_user("leader")
        members = [make_user(f"member-{i}", referrer=leader) for i in range(3)]
        for i, member in enumerate(members):
            complete_tasks(member, count=10, reward=100 * (i + 1), day=DAY)

        report = services.settlement.trigger_settlement(DAY)

        assert report.eligible_subordinates == 3
        assert report.bonuses_paid == 3
        # 8% of 1000 + 2000 + 3000
        assert services.ledger.get_balance(leader.id).current_balance == 480
        assert {b.subordinate_id for b in services.settlement.list_bonuses(DAY, referrer_id=leader.id)} == {
            m.id for m in members
        }


class TestEligibility:
    """Tests for subordinates and referrers that earn nothing."""

    def test_incomplete_day_pays_nothing(self, services, family, complete_tasks):
        """Test 90% completion produces no bonus rows."""
        complete_tasks(family[0], count=9, reward=100, day=DAY)

        report = services.settlement.trigger_settlement(DAY)

        assert report.users_processed == 1
        assert report.bonuses_paid == 0
        assert services.settlement.list_bonuses(DAY) == []

    def test_zero_income_pays_nothing(self, services, family, complete_tasks):
        """Test a complete day with zero rewards produces no bonus rows."""
        complete_tasks(family[0], count=10, reward=0, day=DAY)

        services.settlement.trigger_settlement(DAY)

        assert services.settlement.list_bonuses(DAY) == []

    def test_intern_generates_no_bonus(self, services, make_user, complete_tasks):
        """Test intern subordinates never pay their upline."""
        leader = make_user("leader")
        intern = make_user("intern", referrer=leader, is_intern=True)
        complete_tasks(intern, count=10, reward=100, day=DAY)

        services.settlement.trigger_settlement(DAY)

        assert services.ledger.get_balance(leader.id).current_balance == 0

    def test_suspended_referrer_skipped(self, services, family, complete_tasks):
        """Test inactive referrers are skipped while others are paid."""
        a_user, b_user, c_user = family
        services.accounts.set_status(b_user.id, AccountStatus.SUSPENDED)
        complete_tasks(a_user, count=10, reward=100, day=DAY)

        report = services.settlement.trigger_settlement(DAY)

        assert report.bonuses_paid == 1
        assert services.ledger.get_balance(b_user.id).current_balance == 0
        assert services.ledger.get_balance(c_user.id).current_balance == 30

    def test_other_days_untouched(self, services, family, complete_tasks):
        """Test settlement only looks at the requested day."""
        complete_tasks(family[0], count=10, reward=100, day=date(2025, 1, 14))

        report = services.settlement.trigger_settlement(DAY)

        assert report.users_processed == 0
        assert report.bonuses_paid == 0


class TestPartialFailure:
    """Tests for per-award failures."""

    def test_failed_award_does_not_abort_batch(self, services, family, complete_tasks, monkeypatch):
        """Test one failing award is reported while the other is paid."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)
        original_append = services.ledger.append

        def flaky_append(user_id, *args, **kwargs):
            if user_id == c_user.id:
                raise LedgerInvariantError("simulated drift")
            return original_append(user_id, *args, **kwargs)

        monkeypatch.setattr(services.ledger, "append", flaky_append)

        report = services.settlement.trigger_settlement(DAY)

        assert report.status == RunStatus.COMPLETED_WITH_ERRORS
        assert report.bonuses_paid == 1
        assert len(report.failures) == 1
        assert report.failures[0].referrer_id == c_user.id
        assert report.failures[0].level == ReferralLevel.B
        assert report.failures[0].error_type == "LedgerInvariantError"

        # The failed pair left no bonus row behind
        assert len(services.settlement.list_bonuses(DAY)) == 1

        # A later run pays the missing award only
        monkeypatch.setattr(services.ledger, "append", original_append)
        retry = services.settlement.trigger_settlement(DAY)
        assert retry.bonuses_paid == 1
        assert retry.already_settled == 1
        assert services.ledger.get_balance(c_user.id).current_balance == 30

    def test_failure_threshold_fails_run(self, services, family, complete_tasks, monkeypatch):
        """Test a run where every award fails raises PartialBatchFailure."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)
        tracker_user = family[0].id
        original_append = services.ledger.append

        def broken_append(user_id, *args, **kwargs):
            if user_id != tracker_user:
                raise LedgerInvariantError("simulated drift")
            return original_append(user_id, *args, **kwargs)

        monkeypatch.setattr(services.ledger, "append", broken_append)

        with pytest.raises(PartialBatchFailure) as exc:
            services.settlement.trigger_settlement(DAY)

        assert exc.value.report.status == RunStatus.FAILED
        assert len(exc.value.report.failures) == 2
        run = services.settlement.get_run(DAY)
        assert run.status == RunStatus.FAILED
        assert run.failure_count == 2
        assert "simulated drift" in run.last_error


    def test_unexpected_error_is_recorded(self, services, family, complete_tasks, monkeypatch):
        """Test an error outside the ledger's own errors still closes the run."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)
        original_append = services.ledger.append

        def failing_append(user_id, *args, **kwargs):
            if user_id == c_user.id:
                raise ValueError("bad metadata")
            return original_append(user_id, *args, **kwargs)

        monkeypatch.setattr(services.ledger, "append", failing_append)

        report = services.settlement.trigger_settlement(DAY)

        assert report.status == RunStatus.COMPLETED_WITH_ERRORS
        assert report.bonuses_paid == 1
        assert report.failures[0].error_type == "ValueError"
        # The run row is closed, not left RUNNING
        assert services.settlement.get_run(DAY).status == RunStatus.COMPLETED_WITH_ERRORS
        assert services.settlement.get_audit_log(DAY)[-1]["event"] == "COMPLETED_WITH_ERRORS"


class TestRunState:
    """Tests for the persisted run row and audit log."""

    def test_no_run_before_trigger(self, services):
        """Test a day that was never settled has no run."""
        assert services.settlement.get_run(DAY) is None

    def test_attempts_increment(self, services, family, complete_tasks):
        """Test every trigger re-enters RUNNING and counts an attempt."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)

        first = services.settlement.trigger_settlement(DAY)
        second = services.settlement.trigger_settlement(DAY, TriggerSource.TIMER)

        assert (first.attempt, second.attempt) == (1, 2)
        run = services.settlement.get_run(DAY)
        assert run.status == RunStatus.COMPLETED
        assert run.attempts == 2
        assert run.trigger == TriggerSource.TIMER
        assert run.finished_at is not None
        assert [r.settlement_date for r in services.settlement.list_runs()] == [DAY]

    def test_overlapping_run_detected(self, services, database, family, complete_tasks):
        """Test a fresh RUNNING row is reported but does not block the run."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)
        with database.transaction() as s:
            s.add(SettlementRunRecord(
                settlement_date=DAY,
                status=RunStatus.RUNNING,
                trigger=TriggerSource.TIMER,
                attempts=1,
                started_at=utc_now(),
            ))

        report = services.settlement.trigger_settlement(DAY)

        assert report.overlapping_run_detected
        assert report.bonuses_paid == 2
        assert services.settlement.get_run(DAY).attempts == 2

    def test_concurrent_triggers_pay_once(self, services, make_user, complete_tasks):
        """Test overlapping triggers for one day pay every bonus exactly once."""
        leader = make_user("leader")
        members = [make_user(f"member-{i}", referrer=leader) for i in range(3)]
        subs = [make_user(f"sub-{i}", referrer=members[i % 3]) for i in range(6)]
        for user in members + subs:
            complete_tasks(user, count=10, reward=100, day=DAY)

        with ThreadPoolExecutor(max_workers=3) as pool:
            futures = [
                pool.submit(services.settlement.trigger_settlement, DAY, trigger)
                for trigger in (TriggerSource.TIMER, TriggerSource.MANUAL, TriggerSource.MANUAL)
            ]
            reports = [f.result() for f in futures]

        # 3 member bonuses to the leader, 6 subs paying their member and the leader
        assert sum(r.bonuses_paid for r in reports) == 15
        assert all(not r.failures for r in reports)
        assert len(services.settlement.list_bonuses(DAY)) == 15
        assert services.ledger.get_balance(leader.id).current_balance == 3 * 80 + 6 * 30
        for member in members:
            assert services.ledger.get_balance(member.id).current_balance == 1000 + 2 * 80
        for user in [leader] + members:
            assert services.ledger.verify_balance(user.id).is_consistent
        assert services.settlement.get_run(DAY).attempts == 3

    def test_audit_log_records_start_and_finish(self, services, family, complete_tasks):
        """Test each run appends a STARTED and a final event."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)
        services.settlement.trigger_settlement(DAY)

        log = services.settlement.get_audit_log(DAY)

        assert [row["event"] for row in log] == ["STARTED", "COMPLETED"]
        assert log[-1]["summary"]["bonuses_paid"] == 2
        assert log[-1]["summary"]["total_amount"] == 110


class TestBonusStats:
    """Tests for management bonus statistics."""

    def test_stats_per_level(self, services, family, complete_tasks):
        """Test daily and monthly sums are split by subordinate level."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)
        services.settlement.trigger_settlement(DAY)

        stats = services.bonus_stats.get_management_bonus_stats(c_user.id, DAY)

        assert stats.daily_bonuses.B == 30
        assert stats.daily_bonuses.total == 30
        assert stats.monthly_bonuses.B == 30
        assert (stats.subordinate_count.A, stats.subordinate_count.B) == (1, 1)

        # A different day of the month counts toward monthly only
        other = services.bonus_stats.get_management_bonus_stats(c_user.id, date(2025, 1, 20))
        assert other.daily_bonuses.total == 0
        assert other.monthly_bonuses.total == 30

    def test_subordinate_activity(self, services, family, complete_tasks):
        """Test paying subordinates are listed before idle ones."""
        a_user, b_user, c_user = family
        complete_tasks(a_user, count=10, reward=100, day=DAY)
        services.settlement.trigger_settlement(DAY)

        activity = services.bonus_stats.get_subordinate_activity(c_user.id, DAY)

        assert [a.subordinate_id for a in activity] == [a_user.id, b_user.id]
        assert activity[0].level == ReferralLevel.B
        assert activity[0].day_bonus == 30
        assert activity[0].last_bonus_date == DAY
        assert activity[1].last_bonus_date is None


class TestScheduler:
    """Tests for the daily timer."""

    def test_disabled_scheduler_does_not_start(self, services):
        """Test start() is a no-op when disabled."""
        services.scheduler.start()

        status = services.scheduler.status()
        assert status["running"] is False
        assert status["enabled"] is False
        assert status["timezone"] == "Asia/Karachi"
        assert status["next_run_time"] is None

    def test_enabled_scheduler_has_next_run(self, services):
        """Test the cron job is registered at local midnight."""
        scheduler = DailySettlementScheduler(services.settlement, enabled=True)
        scheduler.start()
        try:
            next_run = scheduler.next_run_time()
            assert next_run is not None
            assert (next_run.hour, next_run.minute) == (0, 0)
            assert scheduler.status()["running"] is True
        finally:
            scheduler.shutdown(wait=False)

    def test_run_now_for_explicit_day(self, services, family, complete_tasks):
        """Test manual runs settle the given day."""
        complete_tasks(family[0], count=10, reward=100, day=DAY)

        report = services.scheduler.run_now(DAY)

        assert report.trigger == TriggerSource.MANUAL
        assert report.bonuses_paid == 2

    def test_scheduled_run_survives_failure(self, services, monkeypatch):
        """Test the timer callback logs failures instead of raising."""

        def explode(day, trigger):
            raise PartialBatchFailure("boom", report=None)

        monkeypatch.setattr(services.settlement, "trigger_settlement", explode)

        services.scheduler._run_scheduled()
