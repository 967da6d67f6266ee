"""
Service wiring.

Builds every service from one Settings object and one Database so the API,
the scheduler and the tests share the same graph.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from .clock import settlement_zone
from .config import Settings, get_settings
from .database import Database

if TYPE_CHECKING:
    from ledger.accounts import AccountService
    from ledger.service import LedgerService
    from referrals.commission import ReferralRewardService
    from referrals.hierarchy import ReferralHierarchyIndex
    from settlement.engine import SettlementEngine
    from settlement.scheduler import DailySettlementScheduler
    from settlement.stats import ManagementBonusStatsService
    from task_tracker.tracker import TaskCompletionTracker
    from withdrawals.service import WithdrawalService


@dataclass
class Services:
    settings: Settings
    database: Database
    ledger: "LedgerService"
    accounts: "AccountService"
    hierarchy: "ReferralHierarchyIndex"
    referral_rewards: "ReferralRewardService"
    tracker: "TaskCompletionTracker"
    settlement: "SettlementEngine"
    scheduler: "DailySettlementScheduler"
    bonus_stats: "ManagementBonusStatsService"
    withdrawals: "WithdrawalService"


def build_services(settings: Optional[Settings] = None, database: Optional[Database] = None) -> Services:
    from ledger.accounts import AccountService
    from ledger.service import LedgerService
    from referrals.commission import ReferralRewardService
    from referrals.hierarchy import ReferralHierarchyIndex
    from settlement.engine import SettlementEngine
    from settlement.scheduler import DailySettlementScheduler
    from settlement.stats import ManagementBonusStatsService
    from task_tracker.tracker import TaskCompletionTracker
    from withdrawals.service import WithdrawalPolicy, WithdrawalService

    settings = settings or get_settings()
    database = database or Database(settings=settings)
    zone = settlement_zone(settings.settlement_timezone)

    ledger = LedgerService(database)
    hierarchy = ReferralHierarchyIndex(database)
    tracker = TaskCompletionTracker(
        database, ledger, default_daily_quota=settings.default_daily_task_quota, zone=zone
    )
    engine = SettlementEngine(
        database,
        ledger,
        hierarchy,
        tracker,
        settings.management_bonus_rates,
        max_workers=settings.settlement_max_workers,
        failure_threshold=settings.settlement_failure_threshold,
        stale_after=timedelta(minutes=settings.settlement_stale_after_minutes),
    )
    policy = WithdrawalPolicy(
        minimum_withdrawal=settings.minimum_withdrawal,
        weekly_cap=settings.weekly_withdrawal_cap,
        max_daily_requests=settings.max_daily_withdrawals,
        fee_percentage=settings.withdrawal_fee_percentage,
    )

    return Services(
        settings=settings,
        database=database,
        ledger=ledger,
        accounts=AccountService(database, hierarchy),
        hierarchy=hierarchy,
        referral_rewards=ReferralRewardService(database, ledger, hierarchy, settings.referral_reward_rates),
        tracker=tracker,
        settlement=engine,
        scheduler=DailySettlementScheduler(
            engine,
            zone=zone,
            hour=settings.settlement_cron_hour,
            minute=settings.settlement_cron_minute,
            enabled=settings.scheduler_enabled,
        ),
        bonus_stats=ManagementBonusStatsService(database, hierarchy),
        withdrawals=WithdrawalService(database, ledger, policy, zone=zone),
    )
