"""
xessrewards/ledger/store.py

LedgerStore owns the database engine and hands out explicitly scoped
sessions. Nothing in xessrewards keeps a global connection; every service
receives the store it should use.

Usage:
    store = LedgerStore("postgresql+psycopg://...")
    store.create_schema()

    with store.transaction() as session:
        session.add(...)            # committed on exit, rolled back on error

    with store.job_lock("claim-epoch-build", key=9100000000000001):
        ...                         # raises LockBusy if held elsewhere
"""

import logging
from contextlib import contextmanager
from datetime import timedelta, timezone
from typing import Iterator, Optional

from sqlalchemy import create_engine, delete, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import STALE_BATCH_MINUTES
from .models import Base, JobLock, utc_now

logger = logging.getLogger("xessrewards.ledger.store")


class LockBusy(Exception):
    """Another job holds the requested lock."""
    pass


class LedgerStore:
    """
    Transaction-scoped access to the reward ledger database.

    In-memory SQLite URLs share a single connection so that every session
    sees the same database.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        engine: Optional[Engine] = None,
        lock_stale_minutes: int = STALE_BATCH_MINUTES,
    ):
        if engine is None:
            if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
                engine = create_engine(
                    url,
                    echo=echo,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                engine = create_engine(url, echo=echo, pool_pre_ping=True)
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        # job_locks rows older than this belong to a crashed holder
        self.lock_stale_minutes = lock_stale_minutes

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_schema(self) -> None:
        """Create all ledger tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only style session; nothing is committed."""
        session = self._sessions()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Single atomic unit of work: commit on success, roll back on any error."""
        session = self._sessions()
        try:
            with session.begin():
                yield session
        finally:
            session.close()

    # ========================================================================
    # LOCKING
    # ========================================================================

    @contextmanager
    def job_lock(self, name: str, key: int) -> Iterator[None]:
        """
        Hold a job-wide mutual exclusion lock for the duration of the block.

        PostgreSQL uses a session advisory lock on `key`. Other databases use
        a row in job_locks keyed by `name`; a row older than
        lock_stale_minutes is taken over.

        Raises:
            LockBusy: If the lock is already held
        """
        if self.dialect == "postgresql":
            with self._advisory_lock(key):
                yield
            return

        self._acquire_row_lock(name)
        try:
            yield
        finally:
            with self.transaction() as session:
                session.execute(delete(JobLock).where(JobLock.name == name))
            logger.debug(f"Released lock {name}")

    @contextmanager
    def _advisory_lock(self, key: int) -> Iterator[None]:
        with self.engine.connect() as conn:
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
            ).scalar()
            conn.commit()
            if not acquired:
                raise LockBusy(f"advisory lock {key} is held")
            try:
                yield
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                conn.commit()

    def _acquire_row_lock(self, name: str) -> None:
        try:
            self._insert_row_lock(name)
        except IntegrityError:
            with self.session() as session:
                held = session.scalar(select(JobLock).where(JobLock.name == name))
            if held is None or not self._expire_row_lock(held):
                since = held.acquired_at if held else "unknown"
                raise LockBusy(f"lock {name} held since {since}")
            try:
                self._insert_row_lock(name)
            except IntegrityError:
                raise LockBusy(f"lock {name} was taken over by another job")
        logger.debug(f"Acquired lock {name}")

    def _insert_row_lock(self, name: str) -> None:
        with self.transaction() as session:
            session.add(JobLock(name=name))

    def _expire_row_lock(self, held: JobLock) -> bool:
        """Delete `held` if it is stale. Returns True when it was removed."""
        acquired_at = held.acquired_at
        if acquired_at.tzinfo is None:
            # SQLite hands back naive datetimes
            acquired_at = acquired_at.replace(tzinfo=timezone.utc)
        if acquired_at > utc_now() - timedelta(minutes=self.lock_stale_minutes):
            return False
        with self.transaction() as session:
            removed = session.execute(
                delete(JobLock).where(
                    JobLock.name == held.name,
                    JobLock.acquired_at == held.acquired_at,
                )
            ).rowcount
        if removed:
            logger.warning(f"Lock {held.name} held since {held.acquired_at} is stale; taking over")
        return removed == 1
