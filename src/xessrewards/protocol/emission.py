"""
xessrewards/protocol/emission.py

Emission Scheduler.

Maps a week index to that week's token emission and splits it into pools
by basis-point weights. Everything here is a pure function over integers.

Splitting rule: each pool gets floor(total * bps / 10000). Whatever is left
of the total after flooring (rounding dust, plus any unweighted share when
the weights sum to less than 10000) goes to the pool with the largest
weight; ties go to the alphabetically first pool name.

Usage:
    from xessrewards.protocol.emission import weekly_emission, plan_week

    weekly_emission(0)                       # FixedAmount(666667000000, 6)
    plan = plan_week(3)
    plan.budget("xessex", "likes")
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from ..amounts import FixedAmount
from ..config import (
    BPS_DENOMINATOR,
    CATEGORY_WEIGHTS,
    CONTENT_POOL_WEIGHTS,
    EMISSION_PHASES,
    GENESIS_WEEK_KEY,
    LEDGER_DECIMALS,
)

logger = logging.getLogger("xessrewards.protocol.emission")


# ============================================================================
# WEEK KEYS
# ============================================================================

def week_key_for(moment: Union[date, datetime]) -> str:
    """Week key (Monday date, UTC) containing `moment`."""
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        moment = moment.date()
    monday = moment - timedelta(days=moment.weekday())
    return monday.isoformat()


def parse_week_key(week_key: str) -> date:
    """Validate and parse a week key. Raises ValueError if not a Monday date."""
    try:
        day = date.fromisoformat(week_key)
    except (TypeError, ValueError):
        raise ValueError(f"invalid week key {week_key!r}, expected YYYY-MM-DD")
    if day.weekday() != 0:
        raise ValueError(f"week key {week_key} is not a Monday")
    return day


def week_index_for(week_key: str, genesis_week_key: str = GENESIS_WEEK_KEY) -> int:
    """0-based week index from genesis; weeks before genesis clamp to 0."""
    delta = parse_week_key(week_key) - parse_week_key(genesis_week_key)
    return max(0, delta.days // 7)


# ============================================================================
# EMISSION
# ============================================================================

def weekly_emission(
    week_index: int,
    phases: List[Tuple[Optional[int], int]] = EMISSION_PHASES,
) -> FixedAmount:
    """
    Total emission for a week, in ledger units.

    Phases are (exclusive upper week index, whole tokens) in order; a None
    bound marks the tail phase. Negative indices are clamped to 0.
    """
    if week_index < 0:
        logger.warning(f"Negative week index {week_index} clamped to 0")
        week_index = 0
    for upper, tokens in phases:
        if upper is None or week_index < upper:
            return FixedAmount.from_tokens(tokens, LEDGER_DECIMALS)
    # Table without a tail phase: the last rate continues
    return FixedAmount.from_tokens(phases[-1][1], LEDGER_DECIMALS)


def validate_weights(weights: Dict[str, int]) -> None:
    if not weights:
        raise ValueError("at least one pool weight is required")
    for name, bps in weights.items():
        if not isinstance(bps, int) or bps < 0:
            raise ValueError(f"pool {name!r} has invalid weight {bps!r}")
    total = sum(weights.values())
    if total > BPS_DENOMINATOR:
        raise ValueError(f"pool weights sum to {total} bps, above {BPS_DENOMINATOR}")


def largest_pool(weights: Dict[str, int]) -> str:
    return sorted(weights.items(), key=lambda item: (-item[1], item[0]))[0][0]


@dataclass
class PoolSplit:
    """A total divided among named pools."""
    total: FixedAmount
    weights: Dict[str, int]
    pools: Dict[str, FixedAmount]
    remainder: FixedAmount
    remainder_pool: str

    def allocated(self) -> FixedAmount:
        result = FixedAmount.zero(self.total.decimals)
        for amount in self.pools.values():
            result = result + amount
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total": self.total.atomic,
            "decimals": self.total.decimals,
            "weights": dict(self.weights),
            "pools": {name: amount.atomic for name, amount in self.pools.items()},
            "remainder": self.remainder.atomic,
            "remainder_pool": self.remainder_pool,
        }


def split_pools(total: FixedAmount, weights: Dict[str, int]) -> PoolSplit:
    """
    Split `total` by basis-point weights.

    The pool amounts always sum exactly to `total`; the remainder after
    flooring is credited to the largest-weight pool and reported.
    """
    validate_weights(weights)
    pools = {name: total.mul_bps(bps) for name, bps in weights.items()}
    floored = FixedAmount.zero(total.decimals)
    for amount in pools.values():
        floored = floored + amount
    remainder = total - floored
    target = largest_pool(weights)
    pools[target] = pools[target] + remainder
    return PoolSplit(
        total=total,
        weights=dict(weights),
        pools=pools,
        remainder=remainder,
        remainder_pool=target,
    )


@dataclass
class EmissionPlan:
    """Budgets for one week: content pool -> category -> amount."""
    week_index: int
    total: FixedAmount
    content: PoolSplit
    categories: Dict[str, PoolSplit] = field(default_factory=dict)

    def budget(self, pool: str, category: str) -> FixedAmount:
        return self.categories[pool].pools[category]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "week_index": self.week_index,
            "total": self.total.atomic,
            "content": self.content.to_dict(),
            "categories": {pool: split.to_dict() for pool, split in self.categories.items()},
        }


def plan_week(
    week_index: int,
    content_weights: Dict[str, int] = CONTENT_POOL_WEIGHTS,
    category_weights: Dict[str, int] = CATEGORY_WEIGHTS,
    phases: List[Tuple[Optional[int], int]] = EMISSION_PHASES,
) -> EmissionPlan:
    """Emission for `week_index` split into content pools, then categories."""
    total = weekly_emission(week_index, phases)
    content = split_pools(total, content_weights)
    categories = {
        pool: split_pools(amount, category_weights)
        for pool, amount in content.pools.items()
    }
    return EmissionPlan(
        week_index=max(week_index, 0),
        total=total,
        content=content,
        categories=categories,
    )
