"""
Daily settlement of management bonuses

This module provides:
- The settlement engine (one run per civil day, idempotent, partial-failure tolerant)
- Persisted run state and an append-only audit log
- An APScheduler timer firing at local midnight
- Management bonus statistics
"""

from .models import (
    ManagementBonusEntry,
    RunStatus,
    SettlementFailure,
    SettlementReport,
    SettlementRun,
    TriggerSource,
)
from .engine import SettlementEngine
from .scheduler import DailySettlementScheduler
from .stats import ManagementBonusStatsService

__all__ = [
    "ManagementBonusEntry",
    "RunStatus",
    "SettlementFailure",
    "SettlementReport",
    "SettlementRun",
    "TriggerSource",
    "SettlementEngine",
    "DailySettlementScheduler",
    "ManagementBonusStatsService",
]
