from contextlib import asynccontextmanager
from datetime import date
from functools import lru_cache
from uuid import UUID
import os
import sys

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.container import Services, build_services
from core.errors import (
    CommissionError,
    DuplicateEntryError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PartialBatchFailure,
    SettlementAbortedError,
    ValidationError,
    WithdrawalRejectedError,
)
from core.logging import setup_logging
from ledger.models import (
    Account,
    BalanceReconciliation,
    EarningsBreakdown,
    LedgerHistoryResponse,
    RegisterUserRequest,
    TransactionKind,
    UserBalance,
)
from referrals.models import (
    Ancestors,
    AwardReferralRewardsRequest,
    CreateReferralRequest,
    ReferralEdge,
    ReferralLevel,
    ReferralRewardResult,
)
from settlement.models import ManagementBonusStats, SettlementReport, SettlementRun
from task_tracker.models import DailyCompletionStatus, RecordCompletionRequest, TaskCompletionResponse
from withdrawals.models import (
    CreateWithdrawalRequest,
    TransitionWithdrawalRequest,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalSummary,
)


@lru_cache
def get_services() -> Services:
    services = build_services()
    setup_logging(services.settings)
    services.database.create_all()
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.dependency_overrides.get(get_services, get_services)()
    services.scheduler.start()
    yield
    services.scheduler.shutdown(wait=False)


app = FastAPI(
    title="Commission Ledger API",
    description="Three-level commission ledger with daily management bonus settlement",
    version="1.0.0",
    root_path="/api",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def http_error(e: CommissionError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, DuplicateEntryError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, WithdrawalRejectedError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "reason": getattr(e.reason, "value", e.reason)},
        )
    if isinstance(e, InsufficientFundsError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": str(e),
                "reason": "INSUFFICIENT_BALANCE",
                "available": e.available,
                "required": e.required,
            },
        )
    if isinstance(e, (ValidationError, InvalidStateTransitionError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.exception(f"Unhandled commission error: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@app.get("/health", tags=["System"])
def health_check(services: Services = Depends(get_services)):
    return {
        "status": "healthy",
        "service": "commission-ledger",
        "scheduler": services.scheduler.status(),
    }


@app.post("/users", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, services: Services = Depends(get_services)) -> Account:
    try:
        return services.accounts.register(
            user_id=request.user_id,
            name=request.name,
            daily_task_quota=request.daily_task_quota,
            is_intern=request.is_intern,
            referrer_id=request.referrer_id,
        )
    except CommissionError as e:
        raise http_error(e)


@app.post("/tasks/completions", response_model=TaskCompletionResponse, status_code=status.HTTP_201_CREATED, tags=["Tasks"])
def record_task_completion(
    request: RecordCompletionRequest, services: Services = Depends(get_services)
) -> TaskCompletionResponse:
    try:
        return services.tracker.record_completion(
            request.user_id,
            request.task_id,
            request.reward_amount,
            watched_at=request.watched_at,
            verified=request.verified,
        )
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/tasks/{day}/total", tags=["Tasks"])
def get_daily_task_total(user_id: UUID, day: date, services: Services = Depends(get_services)):
    return {"user_id": user_id, "date": day, "total": services.tracker.get_daily_total(user_id, day)}


@app.get("/users/{user_id}/tasks/{day}/status", tags=["Tasks"])
def get_daily_task_status(user_id: UUID, day: date, services: Services = Depends(get_services)):
    try:
        result: DailyCompletionStatus = services.tracker.get_daily_completion_status(user_id, day)
    except CommissionError as e:
        raise http_error(e)
    return {
        **result.model_dump(),
        "percentage": result.percentage,
        "is_complete": result.is_complete,
    }


@app.post("/referrals", response_model=ReferralEdge, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def record_referral(request: CreateReferralRequest, services: Services = Depends(get_services)) -> ReferralEdge:
    try:
        return services.hierarchy.record_referral(request.referrer_id, request.referee_id)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/ancestors", response_model=Ancestors, tags=["Referrals"])
def get_ancestors(user_id: UUID, services: Services = Depends(get_services)) -> Ancestors:
    try:
        return services.hierarchy.get_ancestors(user_id)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/descendants/{level}", tags=["Referrals"])
def get_descendants(user_id: UUID, level: ReferralLevel, services: Services = Depends(get_services)):
    try:
        members = services.hierarchy.get_descendants_at_level(user_id, level)
    except CommissionError as e:
        raise http_error(e)
    return {"user_id": user_id, "level": level, "members": sorted(members, key=str)}


@app.post("/referrals/{referee_id}/rewards", response_model=ReferralRewardResult, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def award_referral_rewards(
    referee_id: UUID, request: AwardReferralRewardsRequest, services: Services = Depends(get_services)
) -> ReferralRewardResult:
    try:
        return services.referral_rewards.award_referral_rewards(
            referee_id, request.qualifying_amount, source_reference=request.source_reference
        )
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: UUID, services: Services = Depends(get_services)) -> UserBalance:
    try:
        return services.ledger.get_balance(user_id)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    user_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    kind: list[TransactionKind] | None = Query(default=None),
    services: Services = Depends(get_services),
) -> LedgerHistoryResponse:
    try:
        return services.ledger.get_ledger_history(user_id, limit, offset, kinds=kind)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/earnings", response_model=EarningsBreakdown, tags=["Users"])
def get_user_earnings(user_id: UUID, services: Services = Depends(get_services)) -> EarningsBreakdown:
    try:
        return services.ledger.get_earnings_breakdown(user_id)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/reconciliation", tags=["Users"])
def get_user_reconciliation(user_id: UUID, services: Services = Depends(get_services)):
    try:
        result: BalanceReconciliation = services.ledger.verify_balance(user_id)
    except CommissionError as e:
        raise http_error(e)
    return {**result.model_dump(), "is_consistent": result.is_consistent}


@app.get("/users/{user_id}/management-bonuses/{day}", response_model=ManagementBonusStats, tags=["Users"])
def get_management_bonus_stats(
    user_id: UUID, day: date, services: Services = Depends(get_services)
) -> ManagementBonusStats:
    try:
        return services.bonus_stats.get_management_bonus_stats(user_id, day)
    except CommissionError as e:
        raise http_error(e)


@app.post("/settlements/{day}", response_model=SettlementReport, tags=["Settlement"])
def trigger_settlement(day: date, services: Services = Depends(get_services)) -> SettlementReport:
    try:
        return services.scheduler.run_now(day)
    except PartialBatchFailure as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(e), "summary": e.report.summary()},
        )
    except SettlementAbortedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/settlements/{day}", response_model=SettlementRun, tags=["Settlement"])
def get_settlement_run(day: date, services: Services = Depends(get_services)) -> SettlementRun:
    run = services.settlement.get_run(day)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No settlement run for {day}")
    return run


@app.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def create_withdrawal(
    request: CreateWithdrawalRequest, services: Services = Depends(get_services)
) -> WithdrawalResponse:
    try:
        return services.withdrawals.create_withdrawal(
            request.user_id, request.amount, request.payment_method, request.payment_details
        )
    except CommissionError as e:
        raise http_error(e)


@app.get("/withdrawals/{request_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(request_id: UUID, services: Services = Depends(get_services)) -> WithdrawalRequest:
    try:
        return services.withdrawals.get_withdrawal(request_id)
    except CommissionError as e:
        raise http_error(e)


@app.post("/withdrawals/{request_id}/transition", response_model=WithdrawalResponse, tags=["Withdrawals"])
def transition_withdrawal(
    request_id: UUID, request: TransitionWithdrawalRequest, services: Services = Depends(get_services)
) -> WithdrawalResponse:
    try:
        return services.withdrawals.transition_withdrawal(
            request_id, request.action, performed_by=request.performed_by, reason=request.reason
        )
    except CommissionError as e:
        raise http_error(e)


@app.delete("/withdrawals/{request_id}", response_model=WithdrawalResponse, tags=["Withdrawals"])
def delete_withdrawal(
    request_id: UUID, performed_by: str | None = None, services: Services = Depends(get_services)
) -> WithdrawalResponse:
    try:
        return services.withdrawals.delete_withdrawal(request_id, performed_by=performed_by)
    except CommissionError as e:
        raise http_error(e)


@app.get("/users/{user_id}/withdrawals/summary", response_model=WithdrawalSummary, tags=["Withdrawals"])
def get_withdrawal_summary(user_id: UUID, services: Services = Depends(get_services)) -> WithdrawalSummary:
    try:
        return services.withdrawals.get_withdrawal_summary(user_id)
    except CommissionError as e:
        raise http_error(e)


handler = Mangum(app)
