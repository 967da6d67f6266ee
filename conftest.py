"""
Shared fixtures: a fresh SQLite database per test and the full service graph.
"""

from datetime import UTC, date, datetime, time, timedelta

import pytest

from core.config import Settings
from core.container import build_services
from core.database import Database


SETTLEMENT_DAY = date(2025, 1, 15)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        settlement_timezone="Asia/Karachi",
        settlement_max_workers=2,
        scheduler_enabled=False,
        _env_file=None,
    )


@pytest.fixture
def database(settings):
    db = Database(settings=settings)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def services(settings, database):
    return build_services(settings, database)


@pytest.fixture
def make_user(services):
    """Register a user; pass referrer= to attach an A-level edge."""

    def _make_user(name="user", referrer=None, is_intern=False, daily_task_quota=None):
        account = services.accounts.register(
            name=name,
            referrer_id=referrer.id if referrer is not None else None,
            is_intern=is_intern,
            daily_task_quota=daily_task_quota,
        )
        return account

    return _make_user


@pytest.fixture
def complete_tasks(services):
    """Record ``count`` verified tasks of ``reward`` each on a civil day."""

    def _complete_tasks(user, count=10, reward=100, day=SETTLEMENT_DAY, prefix="video"):
        # 05:00 UTC is 10:00 in Karachi, safely inside the same civil day.
        watched_at = datetime.combine(day, time(5, 0), tzinfo=UTC)
        return [
            services.tracker.record_completion(
                user.id, f"{prefix}-{i}", reward, watched_at=watched_at + timedelta(minutes=i)
            )
            for i in range(count)
        ]

    return _complete_tasks
