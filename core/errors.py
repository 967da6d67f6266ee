from typing import Any, Optional


class CommissionError(Exception):
    pass


class ValidationError(CommissionError):
    pass


class NotFoundError(ValidationError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class DuplicateEntryError(CommissionError):
    """The causing event was already applied."""

    def __init__(self, message: str, reference_id: Optional[str] = None):
        super().__init__(message)
        self.reference_id = reference_id


class ReferralConflictError(DuplicateEntryError):
    pass


class InsufficientFundsError(CommissionError):
    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class WithdrawalRejectedError(ValidationError):
    def __init__(self, message: str, reason: Any):
        super().__init__(message)
        self.reason = reason


class InvalidStateTransitionError(CommissionError):
    pass


class LedgerInvariantError(CommissionError):
    """Balance chain is inconsistent. Always fatal for the enclosing transaction."""
    pass


class CommissionIntegrityError(ValidationError):
    pass


class SettlementAbortedError(CommissionError):
    pass


class PartialBatchFailure(CommissionError):
    def __init__(self, message: str, report: Any):
        super().__init__(message)
        self.report = report
