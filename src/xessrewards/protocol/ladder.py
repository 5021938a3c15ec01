"""
xessrewards/protocol/ladder.py

Ranking Ladder Distributor.

Participants in a pool are ranked by their metric, highest first, with
ties broken by user id ascending so the ordering is reproducible. Ranks
1-50 receive a fixed share of the pool from the ladder table:

    rank 1       20%
    rank 2       12%
    rank 3        8%
    ranks 4-10    5% each
    ranks 11-50   0.625% each

amount = floor(pool * share / LADDER_DENOMINATOR). Rounding dust, and the
shares of ranks nobody filled, are not redistributed; they are reported as
`undistributed` so the caller can record them.

distribute_pro_rata() is the proportional alternative used for the
comments category.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from ..amounts import FixedAmount
from ..config import LADDER_DENOMINATOR, LADDER_MAX_RANK, LADDER_SHARES

logger = logging.getLogger("xessrewards.protocol.ladder")


@dataclass(frozen=True)
class RankEntry:
    """A participant and the metric they are ranked by."""
    user_id: str
    metric: int


@dataclass(frozen=True)
class Award:
    user_id: str
    rank: int
    metric: int
    amount: FixedAmount


@dataclass
class DistributionResult:
    budget: FixedAmount
    awards: List[Award] = field(default_factory=list)

    @property
    def distributed(self) -> FixedAmount:
        total = FixedAmount.zero(self.budget.decimals)
        for award in self.awards:
            total = total + award.amount
        return total

    @property
    def undistributed(self) -> FixedAmount:
        return self.budget - self.distributed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "budget": self.budget.atomic,
            "distributed": self.distributed.atomic,
            "awards": [
                {"user_id": a.user_id, "rank": a.rank, "metric": a.metric, "amount": a.amount.atomic}
                for a in self.awards
            ],
        }


def validate_ladder(shares: Dict[int, int], denominator: int = LADDER_DENOMINATOR) -> None:
    if any(rank < 1 for rank in shares):
        raise ValueError("ladder ranks start at 1")
    if any(share < 0 for share in shares.values()):
        raise ValueError("ladder shares must be non-negative")
    total = sum(shares.values())
    if total > denominator:
        raise ValueError(f"ladder shares sum to {total}, above {denominator}")


def rank_entries(entries: Iterable[RankEntry], min_metric: int = 1) -> List[Tuple[int, RankEntry]]:
    """
    Rank entries by metric descending, user id ascending.

    Entries below `min_metric` are not ranked. Duplicate user ids are
    rejected since they would make the ranking ambiguous.
    """
    seen = set()
    eligible = []
    for entry in entries:
        if entry.user_id in seen:
            raise ValueError(f"duplicate participant {entry.user_id!r} in ranking input")
        seen.add(entry.user_id)
        if entry.metric >= min_metric:
            eligible.append(entry)
    eligible.sort(key=lambda e: (-e.metric, e.user_id))
    return [(position + 1, entry) for position, entry in enumerate(eligible)]


def distribute_ladder(
    budget: FixedAmount,
    entries: Sequence[RankEntry],
    shares: Dict[int, int] = LADDER_SHARES,
    denominator: int = LADDER_DENOMINATOR,
    max_rank: int = LADDER_MAX_RANK,
    min_metric: int = 1,
) -> DistributionResult:
    """
    Pay the top `max_rank` entries their ladder share of `budget`.

    Args:
        budget: Pool budget
        entries: Participants with their metric
        shares: rank -> share in units of 1/denominator
        denominator: Share denominator
        max_rank: Last paid rank
        min_metric: Entries below this are not ranked

    Returns:
        DistributionResult with awards in rank order
    """
    validate_ladder(shares, denominator)
    result = DistributionResult(budget=budget)
    for rank, entry in rank_entries(entries, min_metric):
        if rank > max_rank:
            break
        share = shares.get(rank, 0)
        amount = budget.mul_ratio(share, denominator)
        if amount.atomic <= 0:
            continue
        result.awards.append(Award(entry.user_id, rank, entry.metric, amount))

    logger.debug(
        f"Ladder: {len(result.awards)} awards, {result.distributed} of {budget} distributed"
    )
    return result


def distribute_pro_rata(
    budget: FixedAmount,
    entries: Sequence[RankEntry],
    min_metric: int = 1,
) -> DistributionResult:
    """Split `budget` proportionally to metric: floor(budget * metric / total)."""
    ranked = rank_entries(entries, min_metric)
    result = DistributionResult(budget=budget)
    total_metric = sum(entry.metric for _, entry in ranked)
    if total_metric <= 0:
        return result
    for rank, entry in ranked:
        amount = budget.mul_ratio(entry.metric, total_metric)
        if amount.atomic > 0:
            result.awards.append(Award(entry.user_id, rank, entry.metric, amount))
    return result
