"""
Daily settlement timer.

Fires at local midnight in the settlement timezone and settles the civil
day that just ended. Manual runs for backfills go through run_now().
"""

from datetime import date
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from core import clock
from core.errors import PartialBatchFailure, SettlementAbortedError

from .engine import SettlementEngine
from .models import SettlementReport, TriggerSource


JOB_ID = "daily-settlement"


class DailySettlementScheduler:
    def __init__(
        self,
        engine: SettlementEngine,
        zone: Optional[ZoneInfo] = None,
        hour: int = 0,
        minute: int = 0,
        enabled: bool = True,
    ):
        self.engine = engine
        self.zone = zone or clock.settlement_zone()
        self.hour = hour
        self.minute = minute
        self.enabled = enabled
        self.scheduler = BackgroundScheduler(timezone=self.zone)

    def start(self) -> None:
        if self.scheduler.running:
            logger.info("Daily settlement scheduler is already running")
            return
        if not self.enabled:
            logger.info("Daily settlement scheduler is disabled")
            return

        self.scheduler.add_job(
            self._run_scheduled,
            CronTrigger(hour=self.hour, minute=self.minute, timezone=self.zone),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Daily settlement scheduler started ({self.zone.key} {self.hour:02d}:{self.minute:02d}), "
            f"next run {self.next_run_time()}"
        )

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Daily settlement scheduler stopped")

    def next_run_time(self):
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "enabled": self.enabled,
            "timezone": self.zone.key,
            "next_run_time": self.next_run_time(),
        }

    def run_now(self, settlement_date: Optional[date] = None) -> SettlementReport:
        """Manual trigger. Defaults to yesterday in the settlement timezone."""
        day = settlement_date or clock.yesterday(self.zone)
        logger.info(f"Manual settlement triggered for {day}")
        return self.engine.trigger_settlement(day, TriggerSource.MANUAL)

    def _run_scheduled(self) -> None:
        day = clock.yesterday(self.zone)
        logger.info(f"Scheduled settlement starting for {day}")
        try:
            self.engine.trigger_settlement(day, TriggerSource.TIMER)
        except PartialBatchFailure as e:
            logger.error(f"Scheduled settlement for {day} failed: {e}")
        except SettlementAbortedError as e:
            logger.error(f"Scheduled settlement for {day} aborted: {e}")
        except Exception as e:
            # Keep the timer alive; the run row and audit log record the outcome.
            logger.exception(f"Scheduled settlement for {day} crashed: {e}")
