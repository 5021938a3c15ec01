"""
xessrewards - Weekly token rewards and merkle claim epochs

Computes each week's emission, ranks participants per pool, attributes
referral rewards, writes an idempotent reward ledger, builds salted merkle
claim epochs and reconciles on-chain claims back into the ledger.

Usage:
    from xessrewards import LedgerStore, WeeklyDistributor, ClaimEpochBuilder
    from xessrewards.protocol import DistributionRequest, BuildRequest

    store = LedgerStore("postgresql+psycopg://...")
    WeeklyDistributor(store).run(DistributionRequest(week_key="2026-02-02"))

    outcome = ClaimEpochBuilder(store).build(BuildRequest(week_key="2026-02-02"))
    print(outcome.epoch, outcome.root_hex)

CLI Usage:
    xessrewards distribute --week-key 2026-02-02
    xessrewards build-epoch --week-key 2026-02-02
"""

from .amounts import FixedAmount
from .config import RewardsConfig
from .ledger import LedgerStore, RewardLedgerWriter
from .protocol import (
    WeeklyDistributor,
    ClaimEpochBuilder,
    ClaimReconciler,
    ReferralAttributionEngine,
)

__version__ = "0.1.0"

__all__ = [
    "FixedAmount",
    "RewardsConfig",
    "LedgerStore",
    "RewardLedgerWriter",
    "WeeklyDistributor",
    "ClaimEpochBuilder",
    "ClaimReconciler",
    "ReferralAttributionEngine",
]
