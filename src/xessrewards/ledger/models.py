"""
xessrewards/ledger/models.py

Relational schema for the reward ledger.

All monetary columns are integers: reward_events.amount and
weekly_user_stats.*_atomic at 6 decimals, claim_leaves.amount_atomic and
claim_epochs.total_atomic at 9 decimals.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)

    def to_dict(self) -> Dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RewardStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class RewardType(str, Enum):
    WEEKLY_LIKES = "WEEKLY_LIKES"
    WEEKLY_MVM = "WEEKLY_MVM"
    WEEKLY_COMMENTS = "WEEKLY_COMMENTS"
    REF_L1 = "REF_L1"
    REF_L2 = "REF_L2"
    REF_L3 = "REF_L3"


class BatchStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class Participant(Base):
    """Read model of the platform's user catalog: wallet and referral link."""
    __tablename__ = "participants"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet: Mapped[Optional[str]] = mapped_column(String(64))
    referred_by_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    reward_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class WeeklyUserStat(Base):
    __tablename__ = "weekly_user_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_key: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pool: Mapped[str] = mapped_column(String(16), nullable=False)
    score_received: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    diamond_comments: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    mvm_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    pending_atomic: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    paid_atomic: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("week_key", "user_id", "pool"),)


class RewardEvent(Base):
    __tablename__ = "reward_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    week_key: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    pool: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RewardStatus.PAID.value)
    ref_type: Mapped[str] = mapped_column(String(64), nullable=False)
    ref_id: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_from_user_id: Mapped[Optional[str]] = mapped_column(String(64))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    tx_sig: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("ref_type", "ref_id"),
        Index("ix_reward_events_week_status", "week_key", "status"),
    )


class RewardBatch(Base):
    __tablename__ = "reward_batches"

    week_key: Mapped[str] = mapped_column(String(16), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(String(1000))


class BurnRecord(Base):
    """Budget that a weekly run could not hand out."""
    __tablename__ = "burn_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_key: Mapped[str] = mapped_column(String(16), nullable=False)
    pool: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    budget: Mapped[int] = mapped_column(BigInteger, nullable=False)
    distributed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    burned: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (UniqueConstraint("week_key", "pool", "category"),)


class ClaimEpoch(Base):
    __tablename__ = "claim_epochs"

    epoch: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    week_key: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    root_hex: Mapped[str] = mapped_column(String(64), nullable=False)
    leaf_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False)
    build_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    set_on_chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    on_chain_tx_sig: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (UniqueConstraint("week_key", "version"),)


class ClaimLeaf(Base):
    __tablename__ = "claim_leaves"

    epoch: Mapped[int] = mapped_column(ForeignKey("claim_epochs.epoch"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet: Mapped[Optional[str]] = mapped_column(String(64))
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False)
    proof: Mapped[list] = mapped_column(JSON, nullable=False)
    user_key_hex: Mapped[str] = mapped_column(String(64), nullable=False)
    salt_hex: Mapped[str] = mapped_column(String(64), nullable=False)
    leaf_hex: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (UniqueConstraint("epoch", "index"),)


class ClaimLeafReward(Base):
    """Reward events aggregated into a claim leaf."""
    __tablename__ = "claim_leaf_rewards"

    epoch: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reward_event_id: Mapped[int] = mapped_column(ForeignKey("reward_events.id"), primary_key=True)


class ClaimSalt(Base):
    __tablename__ = "claim_salts"

    epoch: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_key_hex: Mapped[str] = mapped_column(String(64), nullable=False)
    salt_hex: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class JobLock(Base):
    """Row lock used where the database has no advisory locks."""
    __tablename__ = "job_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
