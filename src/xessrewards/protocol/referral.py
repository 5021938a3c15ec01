"""
xessrewards/protocol/referral.py

Referral Attribution Engine.

For every user who earned a base reward, walk up to three referral hops
(L1 = direct referrer, L2 = L1's referrer, L3 = L2's referrer). Each level
earns a fixed basis-point share of the referred user's earned amount.

Referrers without a payout wallet still accrue their reward; wallets only
matter at claim time. A hop whose referrer record is missing ends the walk
and is logged as a data-integrity problem. Referral loops end the walk the
same way.

When a per-pool budget is given and the rewards owed exceed it, every
referral amount in that pool is scaled down by the same parts-per-million
factor.

Usage:
    engine = ReferralAttributionEngine(directory)
    result = engine.attribute(earnings, budgets={"xessex": 1_000_000})
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import BPS_DENOMINATOR, REFERRAL_LEVEL_BPS, REFERRAL_MAX_DEPTH, REFERRAL_SCALE_PPM
from ..ledger.models import Participant, RewardType

logger = logging.getLogger("xessrewards.protocol.referral")


class MissingParticipantError(LookupError):
    """An earner has no participant record (strict mode only)."""
    pass


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class ParticipantRecord:
    """What attribution needs to know about a user."""
    user_id: str
    referred_by_id: Optional[str] = None
    wallet: Optional[str] = None
    reward_banned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantRecord":
        """Create from dictionary."""
        return cls(**data)


@dataclass(frozen=True)
class BaseEarning:
    user_id: str
    pool: str
    amount: int                       # ledger atomic units


@dataclass
class ReferralReward:
    referrer_id: str
    from_user_id: str
    pool: str
    level: int
    amount: int
    has_wallet: bool = False

    @property
    def reward_type(self) -> RewardType:
        return RewardType(f"REF_L{self.level}")


@dataclass
class BrokenChain:
    user_id: str
    missing_id: str
    level: int
    reason: str


@dataclass
class AttributionResult:
    rewards: List[ReferralReward] = field(default_factory=list)
    broken_chains: List[BrokenChain] = field(default_factory=list)
    owed: Dict[str, int] = field(default_factory=dict)
    scale_ppm: Dict[str, int] = field(default_factory=dict)

    def total(self, pool: Optional[str] = None) -> int:
        return sum(r.amount for r in self.rewards if pool is None or r.pool == pool)


# ============================================================================
# ENGINE
# ============================================================================

def load_directory(session: Session) -> Dict[str, ParticipantRecord]:
    """Snapshot of every participant, keyed by user id."""
    return {
        p.user_id: ParticipantRecord(
            user_id=p.user_id,
            referred_by_id=p.referred_by_id,
            wallet=p.wallet,
            reward_banned=bool(p.reward_banned),
        )
        for p in session.scalars(select(Participant))
    }


class ReferralAttributionEngine:
    """
    Computes referral rewards from base earnings.

    Args:
        directory: user id -> ParticipantRecord
        level_bps: level -> bps of the referred user's amount
        max_depth: Number of hops to walk
        strict: Raise MissingParticipantError for unknown earners
    """

    def __init__(
        self,
        directory: Dict[str, ParticipantRecord],
        level_bps: Optional[Dict[int, int]] = None,
        max_depth: int = REFERRAL_MAX_DEPTH,
        strict: bool = False,
    ):
        self.directory = directory
        self.level_bps = dict(level_bps or REFERRAL_LEVEL_BPS)
        self.max_depth = max_depth
        self.strict = strict
        if sum(self.level_bps.values()) > BPS_DENOMINATOR:
            raise ValueError("referral level shares exceed 100%")

    def referral_chain(self, user_id: str, broken: Optional[List[BrokenChain]] = None) -> List[str]:
        """Referrer ids from L1 upwards, stopping at a gap, a loop or max depth."""
        record = self.directory.get(user_id)
        if record is None:
            if self.strict:
                raise MissingParticipantError(user_id)
            logger.warning(f"Data integrity: earner {user_id} has no participant record")
            return []

        chain: List[str] = []
        current = record.referred_by_id
        for level in range(1, self.max_depth + 1):
            if not current:
                break
            if current == user_id or current in chain:
                logger.warning(
                    f"Data integrity: referral loop at L{level} for {user_id} via {current}"
                )
                if broken is not None:
                    broken.append(BrokenChain(user_id, current, level, "loop"))
                break
            referrer = self.directory.get(current)
            if referrer is None:
                logger.warning(
                    f"Data integrity: broken referral chain for {user_id}, "
                    f"L{level} referrer {current} has no record"
                )
                if broken is not None:
                    broken.append(BrokenChain(user_id, current, level, "missing_referrer"))
                break
            chain.append(current)
            current = referrer.referred_by_id
        return chain

    def attribute(
        self,
        earnings: Iterable[BaseEarning],
        budgets: Optional[Dict[str, int]] = None,
    ) -> AttributionResult:
        """
        Referral rewards for a set of base earnings.

        Args:
            earnings: Base (non-referral) earnings; several per user/pool are summed
            budgets: Optional pool -> maximum total referral payout

        Returns:
            AttributionResult, rewards ordered by (pool, from_user, level)
        """
        earned: Dict[tuple, int] = OrderedDict()
        for earning in earnings:
            key = (earning.pool, earning.user_id)
            earned[key] = earned.get(key, 0) + earning.amount

        result = AttributionResult()
        for (pool, user_id), amount in sorted(earned.items()):
            if amount <= 0:
                continue
            chain = self.referral_chain(user_id, result.broken_chains)
            for level, referrer_id in enumerate(chain, start=1):
                referrer = self.directory[referrer_id]
                if referrer.reward_banned:
                    logger.debug(f"Skipping banned referrer {referrer_id}")
                    continue
                bps = self.level_bps.get(level, 0)
                reward = amount * bps // BPS_DENOMINATOR
                if reward <= 0:
                    continue
                result.rewards.append(ReferralReward(
                    referrer_id=referrer_id,
                    from_user_id=user_id,
                    pool=pool,
                    level=level,
                    amount=reward,
                    has_wallet=bool(referrer.wallet),
                ))

        for pool in sorted({r.pool for r in result.rewards}):
            owed = result.total(pool)
            result.owed[pool] = owed
            budget = (budgets or {}).get(pool)
            if budget is None or owed <= budget:
                result.scale_ppm[pool] = REFERRAL_SCALE_PPM
                continue
            ppm = budget * REFERRAL_SCALE_PPM // owed
            result.scale_ppm[pool] = ppm
            for reward in result.rewards:
                if reward.pool == pool:
                    reward.amount = reward.amount * ppm // REFERRAL_SCALE_PPM
            logger.info(
                f"Referral rewards for {pool} scaled to {ppm} ppm (owed {owed}, budget {budget})"
            )

        result.rewards = [r for r in result.rewards if r.amount > 0]
        return result
