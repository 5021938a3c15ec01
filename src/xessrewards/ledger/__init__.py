"""
xessrewards/ledger/

Relational reward ledger: schema, transaction-scoped store and the
idempotent reward writer.
"""

from .models import (
    Base,
    Participant,
    WeeklyUserStat,
    RewardEvent,
    RewardBatch,
    BurnRecord,
    ClaimEpoch,
    ClaimLeaf,
    ClaimLeafReward,
    ClaimSalt,
    JobLock,
    RewardStatus,
    RewardType,
    BatchStatus,
)
from .store import LedgerStore, LockBusy
from .writer import RewardLedgerWriter, RewardGrant, WriteSummary

__all__ = [
    "Base",
    "Participant",
    "WeeklyUserStat",
    "RewardEvent",
    "RewardBatch",
    "BurnRecord",
    "ClaimEpoch",
    "ClaimLeaf",
    "ClaimLeafReward",
    "ClaimSalt",
    "JobLock",
    "RewardStatus",
    "RewardType",
    "BatchStatus",
    "LedgerStore",
    "LockBusy",
    "RewardLedgerWriter",
    "RewardGrant",
    "WriteSummary",
]
