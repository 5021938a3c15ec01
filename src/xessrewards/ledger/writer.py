"""
xessrewards/ledger/writer.py

Reward Ledger Writer.

Persists computed rewards as reward_events rows. Every write is an
insert-or-skip keyed by the unique (ref_type, ref_id) pair, so replaying a
whole weekly computation only inserts what is missing. This is what makes
re-running distribution after a partial failure safe.

The writer is also the only place that changes claim columns:
mark_claimed() is conditional on claimed_at IS NULL and reset_claims() is
only called once the chain has been checked.

Usage:
    writer = RewardLedgerWriter(store)
    summary = writer.write([RewardGrant(...), ...])
    summary.inserted, summary.skipped
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import SYNCED_FROM_CHAIN_SIG
from .models import RewardEvent, RewardStatus, RewardType, WeeklyUserStat, utc_now
from .store import LedgerStore

logger = logging.getLogger("xessrewards.ledger.writer")


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class RewardGrant:
    """One computed reward, ready to be written."""
    user_id: str
    week_key: str
    type: RewardType
    pool: str
    amount: int                       # 6-decimal atomic units
    ref_type: str
    ref_id: str
    referral_from_user_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, int) or isinstance(self.amount, bool):
            raise TypeError("amount must be an integer number of atomic units")
        if self.amount < 0:
            raise ValueError(f"negative reward for {self.ref_type}/{self.ref_id}")
        if not self.ref_type or not self.ref_id:
            raise ValueError("ref_type and ref_id are required")
        self.type = RewardType(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class WriteSummary:
    """What a write() call did."""
    inserted: int = 0
    skipped: int = 0
    pending: int = 0
    inserted_amount: int = 0
    conflicts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


# ============================================================================
# WRITER
# ============================================================================

class RewardLedgerWriter:
    """Idempotent writer for reward_events."""

    def __init__(self, store: LedgerStore, provisional_threshold_atomic: int = 0):
        """
        Args:
            store: Ledger store
            provisional_threshold_atomic: Rewards at or above this amount are
                written PENDING for review. 0 disables the check.
        """
        self.store = store
        self.provisional_threshold_atomic = provisional_threshold_atomic

    def status_for(self, amount: int) -> RewardStatus:
        if self.provisional_threshold_atomic and amount >= self.provisional_threshold_atomic:
            return RewardStatus.PENDING
        return RewardStatus.PAID

    def write(self, grants: Iterable[RewardGrant], session: Optional[Session] = None) -> WriteSummary:
        """
        Insert grants that do not exist yet.

        When `session` is given the rows join the caller's transaction;
        otherwise the whole batch is written in a transaction of its own.
        Either way a batch is all-or-nothing.
        """
        if session is not None:
            return self._write(session, grants)
        with self.store.transaction() as own:
            return self._write(own, grants)

    def _write(self, session: Session, grants: Iterable[RewardGrant]) -> WriteSummary:
        summary = WriteSummary()
        for grant in grants:
            status = self.status_for(grant.amount)
            row = grant.to_dict()
            row["status"] = status.value
            row["created_at"] = utc_now()

            if self._insert_ignore(session, row):
                summary.inserted += 1
                summary.inserted_amount += grant.amount
                if status == RewardStatus.PENDING:
                    summary.pending += 1
                continue

            summary.skipped += 1
            existing = session.scalar(
                select(RewardEvent).where(
                    RewardEvent.ref_type == grant.ref_type,
                    RewardEvent.ref_id == grant.ref_id,
                )
            )
            if existing is not None and (
                existing.amount != grant.amount or existing.user_id != grant.user_id
            ):
                logger.warning(
                    f"Conflicting payload for existing reward {grant.ref_type}/{grant.ref_id}: "
                    f"stored {existing.user_id}={existing.amount}, "
                    f"computed {grant.user_id}={grant.amount}; keeping stored row"
                )
                summary.conflicts.append(f"{grant.ref_type}/{grant.ref_id}")

        logger.debug(
            f"Ledger write: {summary.inserted} inserted, {summary.skipped} skipped, "
            f"{len(summary.conflicts)} conflicts"
        )
        return summary

    def _insert_ignore(self, session: Session, row: Dict[str, Any]) -> bool:
        """Insert one row unless (ref_type, ref_id) exists. Returns True if inserted."""
        dialect = session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert(RewardEvent).values(**row).on_conflict_do_nothing(
                index_elements=["ref_type", "ref_id"]
            )
            return session.execute(stmt).rowcount == 1

        try:
            with session.begin_nested():
                session.add(RewardEvent(**row))
        except IntegrityError:
            return False
        return True

    # ========================================================================
    # STATUS TRANSITIONS
    # ========================================================================

    def approve_provisional(self, ref_ids: Sequence[str], ref_type: Optional[str] = None) -> int:
        """Move PENDING rewards to PAID. Returns rows changed."""
        if not ref_ids:
            return 0
        conditions = [
            RewardEvent.ref_id.in_(list(ref_ids)),
            RewardEvent.status == RewardStatus.PENDING.value,
        ]
        if ref_type:
            conditions.append(RewardEvent.ref_type == ref_type)
        with self.store.transaction() as session:
            weeks = set(session.scalars(
                select(RewardEvent.week_key).where(and_(*conditions)).distinct()
            ))
            changed = session.execute(
                update(RewardEvent)
                .where(and_(*conditions))
                .values(status=RewardStatus.PAID.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            for week_key in sorted(weeks):
                self.refresh_user_totals(session, week_key)
        logger.info(f"Approved {changed} provisional reward(s)")
        return changed

    def list_provisional(self, week_key: Optional[str] = None) -> List[RewardEvent]:
        with self.store.session() as session:
            query = select(RewardEvent).where(RewardEvent.status == RewardStatus.PENDING.value)
            if week_key:
                query = query.where(RewardEvent.week_key == week_key)
            return list(session.scalars(query.order_by(RewardEvent.id)))

    @staticmethod
    def mark_claimed(
        session: Session,
        reward_ids: Sequence[int],
        tx_sig: str,
        claimed_at: Optional[datetime] = None,
    ) -> int:
        """
        Set claimed_at/tx_sig on rows that are still unclaimed.

        Rows already claimed are left untouched, so two racing confirmations
        can never leave different signatures on one reward.
        """
        if not reward_ids:
            return 0
        return session.execute(
            update(RewardEvent)
            .where(
                RewardEvent.id.in_(list(reward_ids)),
                RewardEvent.claimed_at.is_(None),
            )
            .values(claimed_at=claimed_at or utc_now(), tx_sig=tx_sig)
            .execution_options(synchronize_session=False)
        ).rowcount

    @staticmethod
    def reset_claims(session: Session, reward_ids: Sequence[int], suspect_only: bool = True) -> int:
        """
        Clear claimed_at/tx_sig. Callers must have checked the chain first.

        With suspect_only, rows whose tx_sig is a real signature are left alone.
        """
        if not reward_ids:
            return 0
        conditions = [RewardEvent.id.in_(list(reward_ids))]
        if suspect_only:
            conditions.append(or_(
                RewardEvent.tx_sig.is_(None),
                RewardEvent.tx_sig == SYNCED_FROM_CHAIN_SIG,
            ))
        return session.execute(
            update(RewardEvent)
            .where(*conditions)
            .values(claimed_at=None, tx_sig=None)
            .execution_options(synchronize_session=False)
        ).rowcount

    @staticmethod
    def claimable_rows(session: Session, week_key: Optional[str] = None) -> List[RewardEvent]:
        """PAID, unclaimed, non-zero rewards (optionally for one week)."""
        query = select(RewardEvent).where(
            RewardEvent.status == RewardStatus.PAID.value,
            RewardEvent.claimed_at.is_(None),
            RewardEvent.amount > 0,
        )
        if week_key is not None:
            query = query.where(RewardEvent.week_key == week_key)
        return list(session.scalars(query.order_by(RewardEvent.id)))

    @staticmethod
    def week_total(session: Session, week_key: str) -> int:
        return session.scalar(
            select(func.coalesce(func.sum(RewardEvent.amount), 0)).where(
                RewardEvent.week_key == week_key
            )
        )

    @staticmethod
    def refresh_user_totals(session: Session, week_key: str) -> List[Tuple[str, str, int, int]]:
        """
        Recompute paid_atomic / pending_atomic on weekly_user_stats.

        Returns (user_id, pool, paid, pending) for every user holding rewards
        in the week, stats row or not.
        """
        rows = session.execute(
            select(
                RewardEvent.user_id,
                RewardEvent.pool,
                RewardEvent.status,
                func.sum(RewardEvent.amount),
            )
            .where(RewardEvent.week_key == week_key)
            .group_by(RewardEvent.user_id, RewardEvent.pool, RewardEvent.status)
        ).all()
        totals: Dict[Tuple[str, str], List[int]] = {}
        for user_id, pool, status, amount in rows:
            bucket = totals.setdefault((user_id, pool), [0, 0])
            if status == RewardStatus.PAID.value:
                bucket[0] += int(amount or 0)
            elif status == RewardStatus.PENDING.value:
                bucket[1] += int(amount or 0)

        for (user_id, pool), (paid, pending) in totals.items():
            session.execute(
                update(WeeklyUserStat)
                .where(
                    WeeklyUserStat.week_key == week_key,
                    WeeklyUserStat.user_id == user_id,
                    WeeklyUserStat.pool == pool,
                )
                .values(paid_atomic=paid, pending_atomic=pending)
                .execution_options(synchronize_session=False)
            )
        return [(user_id, pool, paid, pending) for (user_id, pool), (paid, pending) in sorted(totals.items())]
