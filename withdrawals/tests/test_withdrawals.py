"""
Unit Tests for the Withdrawal State Machine

Tests cover:
1. Fee quotes and request creation
2. Rejection checks (intern, minimum, daily count, weekly cap, funds)
3. Approve / process / reject transitions
4. Compensating refunds on reject and delete
"""

import pytest
from datetime import UTC, datetime
from uuid import uuid4

from core.errors import (
    InsufficientFundsError,
    InvalidStateTransitionError,
    WithdrawalNotFoundError,
    WithdrawalRejectedError,
)
from ledger.models import EntryStatus, TransactionKind
from withdrawals.models import PaymentMethod, RejectionReason, WithdrawalAction, WithdrawalStatus
from withdrawals.service import debit_reference, refund_reference


WEDNESDAY = datetime(2025, 1, 15, 6, 0, tzinfo=UTC)
SATURDAY = datetime(2025, 1, 11, 6, 0, tzinfo=UTC)
SUNDAY = datetime(2025, 1, 12, 6, 0, tzinfo=UTC)


@pytest.fixture
def earner(services, make_user):
    """A user holding 5000 of task income."""
    user = make_user("earner")
    services.ledger.append(user.id, TransactionKind.TASK_INCOME, 5000, f"SEED_{user.id}")
    return user


def balance_of(services, user):
    return services.ledger.get_balance(user.id).current_balance


class TestQuote:
    """Tests for handling fees."""

    def test_bank_fee_is_ten_percent(self, services):
        """Test BANK withdrawals carry a 10% fee."""
        quote = services.withdrawals.quote(1000, PaymentMethod.BANK)

        assert quote.handling_fee == 100
        assert quote.total_deduction == 1100

    def test_usdt_has_no_fee(self, services):
        """Test USDT_TRC20 withdrawals are free."""
        quote = services.withdrawals.quote(1000, PaymentMethod.USDT_TRC20)

        assert quote.handling_fee == 0
        assert quote.total_deduction == 1000

    def test_fee_rounds_half_up(self, services):
        """Test fractional fees round half up."""
        assert services.withdrawals.quote(505, PaymentMethod.BANK).handling_fee == 51


class TestCreateWithdrawal:
    """Tests for the create flow."""

    def test_create_debits_total_deduction(self, services, earner):
        """Test a request holds amount plus fee as a PENDING debit."""
        response = services.withdrawals.create_withdrawal(
            earner.id, 1000, PaymentMethod.BANK, {"account": "PK00TEST"}, now=WEDNESDAY
        )

        # Verify request
        assert response.withdrawal.status == WithdrawalStatus.PENDING
        assert response.withdrawal.total_deduction == 1100
        assert response.withdrawal.payment_details == {"account": "PK00TEST"}

        # Verify ledger entry
        assert response.ledger_entry.kind == TransactionKind.DEBIT
        assert response.ledger_entry.amount == -1100
        assert response.ledger_entry.status == EntryStatus.PENDING
        assert response.ledger_entry.reference_id == debit_reference(response.withdrawal.id)
        assert balance_of(services, earner) == 3900

    def test_intern_cannot_withdraw(self, services, make_user):
        """Test intern accounts are rejected first."""
        intern = make_user("intern", is_intern=True)
        services.ledger.append(intern.id, TransactionKind.TASK_INCOME, 5000, "SEED_intern")

        with pytest.raises(WithdrawalRejectedError) as exc:
            services.withdrawals.create_withdrawal(intern.id, 1000, now=WEDNESDAY)

        assert exc.value.reason == RejectionReason.INTERN_NOT_ALLOWED

    def test_below_minimum(self, services, earner):
        """Test amounts under the minimum are rejected."""
        with pytest.raises(WithdrawalRejectedError) as exc:
            services.withdrawals.create_withdrawal(earner.id, 499, now=WEDNESDAY)

        assert exc.value.reason == RejectionReason.BELOW_MINIMUM

    def test_fee_counts_against_available(self, services, earner):
        """Test the whole deduction must be covered."""
        with pytest.raises(InsufficientFundsError) as exc:
            services.withdrawals.create_withdrawal(earner.id, 5000, PaymentMethod.BANK, now=WEDNESDAY)

        assert exc.value.available == 5000
        assert exc.value.required == 5500
        assert balance_of(services, earner) == 5000

    def test_only_commission_earnings_are_withdrawable(self, services, make_user):
        """Test plain credits do not raise the withdrawable amount."""
        user = make_user()
        services.ledger.append(user.id, TransactionKind.CREDIT, 10_000, "DEPOSIT_REFUND_1")

        assert services.withdrawals.get_available_balance(user.id) == 0
        with pytest.raises(InsufficientFundsError):
            services.withdrawals.create_withdrawal(user.id, 1000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

    def test_daily_request_limit(self, services, earner):
        """Test a sixth request on one day is rejected."""
        for _ in range(5):
            services.withdrawals.create_withdrawal(earner.id, 500, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        with pytest.raises(WithdrawalRejectedError) as exc:
            services.withdrawals.create_withdrawal(earner.id, 500, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        assert exc.value.reason == RejectionReason.DAILY_LIMIT_EXCEEDED


class TestWeeklyCap:
    """Tests for the Sunday-to-Sunday weekly cap."""

    @pytest.fixture
    def rich(self, services, make_user):
        user = make_user("rich")
        services.ledger.append(user.id, TransactionKind.TASK_INCOME, 300_000, "SEED_rich")
        return user

    def test_cap_exceeded_leaves_balance_unchanged(self, services, rich):
        """Test W + amount over the cap is rejected without touching the wallet."""
        services.withdrawals.create_withdrawal(rich.id, 60_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)
        before = balance_of(services, rich)

        with pytest.raises(WithdrawalRejectedError) as exc:
            services.withdrawals.create_withdrawal(rich.id, 50_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        assert exc.value.reason == RejectionReason.WEEKLY_CAP_EXCEEDED
        assert balance_of(services, rich) == before

    def test_cap_boundary_is_inclusive(self, services, rich):
        """Test withdrawing exactly up to the cap is allowed."""
        services.withdrawals.create_withdrawal(rich.id, 60_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        response = services.withdrawals.create_withdrawal(rich.id, 40_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        assert response.withdrawal.amount == 40_000

    def test_new_week_starts_on_sunday(self, services, rich):
        """Test Saturday's withdrawals do not count against Sunday's week."""
        services.withdrawals.create_withdrawal(rich.id, 90_000, PaymentMethod.USDT_TRC20, now=SATURDAY)

        response = services.withdrawals.create_withdrawal(rich.id, 50_000, PaymentMethod.USDT_TRC20, now=SUNDAY)

        assert response.withdrawal.status == WithdrawalStatus.PENDING

    def test_rejected_requests_free_the_cap(self, services, rich):
        """Test a rejected request no longer counts toward the cap."""
        first = services.withdrawals.create_withdrawal(rich.id, 90_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)
        services.withdrawals.transition_withdrawal(first.withdrawal.id, WithdrawalAction.REJECT, "admin")

        response = services.withdrawals.create_withdrawal(rich.id, 90_000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        assert response.withdrawal.status == WithdrawalStatus.PENDING


class TestTransitions:
    """Tests for the review flow."""

    def test_approve_then_process(self, services, earner):
        """Test processing settles the debit as COMPLETED."""
        created = services.withdrawals.create_withdrawal(earner.id, 1000, now=WEDNESDAY)
        request_id = created.withdrawal.id

        approved = services.withdrawals.transition_withdrawal(request_id, WithdrawalAction.APPROVE, "admin")
        processed = services.withdrawals.transition_withdrawal(request_id, WithdrawalAction.PROCESS, "admin")

        assert approved.withdrawal.status == WithdrawalStatus.APPROVED
        assert processed.withdrawal.status == WithdrawalStatus.PROCESSED
        assert processed.withdrawal.processed_at is not None
        assert processed.withdrawal.reviewed_by == "admin"
        assert processed.ledger_entry.status == EntryStatus.COMPLETED
        assert balance_of(services, earner) == 3900
        assert services.withdrawals.get_available_balance(earner.id) == 3900

    def test_process_requires_approval(self, services, earner):
        """Test PENDING requests cannot be processed directly."""
        created = services.withdrawals.create_withdrawal(earner.id, 1000, now=WEDNESDAY)

        with pytest.raises(InvalidStateTransitionError):
            services.withdrawals.transition_withdrawal(created.withdrawal.id, WithdrawalAction.PROCESS, "admin")

    def test_approved_cannot_be_rejected(self, services, earner):
        """Test approval is final for rejection."""
        created = services.withdrawals.create_withdrawal(earner.id, 1000, now=WEDNESDAY)
        services.withdrawals.transition_withdrawal(created.withdrawal.id, WithdrawalAction.APPROVE, "admin")

        with pytest.raises(InvalidStateTransitionError):
            services.withdrawals.transition_withdrawal(created.withdrawal.id, WithdrawalAction.REJECT, "admin")

    def test_unknown_request(self, services):
        """Test transitions for a missing request fail."""
        with pytest.raises(WithdrawalNotFoundError):
            services.withdrawals.transition_withdrawal(uuid4(), WithdrawalAction.APPROVE, "admin")


class TestRefunds:
    """Tests for compensating refunds."""

    def test_reject_restores_balance(self, services, earner):
        """Test rejecting returns the exact pre-request balance."""
        before = balance_of(services, earner)
        created = services.withdrawals.create_withdrawal(earner.id, 1000, now=WEDNESDAY)
        request_id = created.withdrawal.id

        response = services.withdrawals.transition_withdrawal(
            request_id, WithdrawalAction.REJECT, "admin", reason="Invalid account"
        )

        assert response.withdrawal.status == WithdrawalStatus.REJECTED
        assert response.withdrawal.rejection_reason == "Invalid account"
        assert response.ledger_entry.reference_id == refund_reference(request_id)
        assert response.ledger_entry.amount == 1100
        assert balance_of(services, earner) == before

        # The original debit is kept, marked FAILED, amount unchanged
        debit = services.ledger.get_entry(debit_reference(request_id))
        assert debit.status == EntryStatus.FAILED
        assert debit.amount == -1100

        assert services.withdrawals.get_available_balance(earner.id) == before
        assert services.ledger.verify_balance(earner.id).is_consistent

    def test_delete_pending_refunds_and_removes(self, services, earner):
        """Test deleting a PENDING request refunds it and drops the row."""
        before = balance_of(services, earner)
        created = services.withdrawals.create_withdrawal(earner.id, 2000, now=WEDNESDAY)
        request_id = created.withdrawal.id

        response = services.withdrawals.delete_withdrawal(request_id, performed_by="admin")

        assert response.ledger_entry.metadata["performed_by"] == "admin"
        assert balance_of(services, earner) == before
        with pytest.raises(WithdrawalNotFoundError):
            services.withdrawals.get_withdrawal(request_id)

        # Ledger history keeps both sides
        assert services.ledger.get_entry(debit_reference(request_id)) is not None
        assert services.ledger.get_entry(refund_reference(request_id)) is not None

    def test_delete_approved_is_refused(self, services, earner):
        """Test only PENDING requests can be deleted."""
        created = services.withdrawals.create_withdrawal(earner.id, 1000, now=WEDNESDAY)
        services.withdrawals.transition_withdrawal(created.withdrawal.id, WithdrawalAction.APPROVE, "admin")

        with pytest.raises(InvalidStateTransitionError):
            services.withdrawals.delete_withdrawal(created.withdrawal.id, performed_by="admin")

        assert balance_of(services, earner) == 3900


class TestSummary:
    """Tests for the withdrawal summary."""

    def test_summary(self, services, earner):
        """Test summary reports available, weekly and daily figures."""
        services.withdrawals.create_withdrawal(earner.id, 1000, PaymentMethod.USDT_TRC20, now=WEDNESDAY)

        summary = services.withdrawals.get_withdrawal_summary(earner.id, now=WEDNESDAY)

        assert summary.available_balance == 4000
        assert summary.weekly_withdrawn == 1000
        assert summary.weekly_remaining == 99_000
        assert summary.requests_today == 1

    def test_list_withdrawals_by_status(self, services, earner):
        """Test requests can be listed per user and status."""
        first = services.withdrawals.create_withdrawal(earner.id, 500, PaymentMethod.USDT_TRC20, now=WEDNESDAY)
        services.withdrawals.create_withdrawal(earner.id, 600, PaymentMethod.USDT_TRC20, now=WEDNESDAY)
        services.withdrawals.transition_withdrawal(first.withdrawal.id, WithdrawalAction.APPROVE, "admin")

        pending = services.withdrawals.list_withdrawals(earner.id, WithdrawalStatus.PENDING)

        assert [w.amount for w in pending] == [600]
