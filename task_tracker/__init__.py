"""
Task completion tracking

Records completed reward-bearing tasks per civil day, credits task income
in real time, and reports daily totals and quota completion for
settlement.
"""

from .models import DailyCompletionStatus, DailyTaskRecord, TaskCompletionResponse
from .tracker import TaskCompletionTracker

__all__ = [
    "DailyCompletionStatus",
    "DailyTaskRecord",
    "TaskCompletionResponse",
    "TaskCompletionTracker",
]
