"""
Database configuration.

Engine, session factory and transaction scopes shared by all services.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Optional

from loguru import logger
from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import Settings, get_settings


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass an aware UTC value")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    pass


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up
    # front so read-then-write balance updates are serialized per database.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.url = url or settings.database_url
        echo = settings.database_echo if echo is None else echo

        engine_kwargs: dict[str, Any] = {"echo": echo, "future": True}
        is_sqlite = self.url.startswith("sqlite")
        if is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_engine(self.url, **engine_kwargs)
        if is_sqlite:
            _configure_sqlite(self.engine)

        self.session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        logger.debug(f"Database engine created for {self.engine.url.render_as_string(hide_password=True)}")

    def create_all(self) -> None:
        # Table modules register themselves on Base.metadata when imported.
        from ledger import tables as _ledger_tables  # noqa: F401
        from referrals import tables as _referral_tables  # noqa: F401
        from settlement import tables as _settlement_tables  # noqa: F401
        from task_tracker import tables as _task_tables  # noqa: F401
        from withdrawals import tables as _withdrawal_tables  # noqa: F401

        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def use(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Join the caller's transaction when one is given, otherwise open one."""
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own
