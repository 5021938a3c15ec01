"""
xessrewards/protocol/

Reward computation and claim epochs.
"""

from .emission import (
    weekly_emission,
    split_pools,
    plan_week,
    week_key_for,
    week_index_for,
    PoolSplit,
    EmissionPlan,
)
from .ladder import RankEntry, Award, DistributionResult, distribute_ladder, distribute_pro_rata
from .referral import (
    ReferralAttributionEngine,
    ParticipantRecord,
    BaseEarning,
    ReferralReward,
    AttributionResult,
    MissingParticipantError,
)
from .epoch_builder import (
    ClaimEpochBuilder,
    BuildRequest,
    BuildOutcome,
    BuildStatus,
    ClaimProof,
    EpochPublishedError,
    EpochVerificationError,
    compute_build_hash,
)
from .reconciliation import (
    ClaimReconciler,
    ClaimConfirmation,
    ClaimResult,
    ReconcileStatus,
    ClaimError,
    RepairReport,
)
from .weekly import WeeklyDistributor, DistributionRequest, DistributionOutcome, DistributionStatus

__all__ = [
    # Emission
    "weekly_emission",
    "split_pools",
    "plan_week",
    "week_key_for",
    "week_index_for",
    "PoolSplit",
    "EmissionPlan",
    # Ranking
    "RankEntry",
    "Award",
    "DistributionResult",
    "distribute_ladder",
    "distribute_pro_rata",
    # Referrals
    "ReferralAttributionEngine",
    "ParticipantRecord",
    "BaseEarning",
    "ReferralReward",
    "AttributionResult",
    "MissingParticipantError",
    # Claim epochs
    "ClaimEpochBuilder",
    "BuildRequest",
    "BuildOutcome",
    "BuildStatus",
    "ClaimProof",
    "EpochPublishedError",
    "EpochVerificationError",
    "compute_build_hash",
    # Reconciliation
    "ClaimReconciler",
    "ClaimConfirmation",
    "ClaimResult",
    "ReconcileStatus",
    "ClaimError",
    "RepairReport",
    # Weekly pipeline
    "WeeklyDistributor",
    "DistributionRequest",
    "DistributionOutcome",
    "DistributionStatus",
]
