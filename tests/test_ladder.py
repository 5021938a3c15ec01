"""
xessrewards/tests/test_ladder.py

Unit tests for the ranking ladder distributor and pro-rata split.
"""

import pytest

from xessrewards.amounts import FixedAmount
from xessrewards.config import LADDER_SHARES
from xessrewards.protocol.ladder import (
    RankEntry,
    distribute_ladder,
    distribute_pro_rata,
    rank_entries,
    validate_ladder,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def likes_pool():
    """The week-0 likes pool: 500,000.25 tokens."""
    return FixedAmount(500_000_250_000)


@pytest.fixture
def sixty_users():
    return [RankEntry(f"user-{i:03d}", 1_000 - i) for i in range(60)]


class TestLadderTable:
    """Tests for the ladder constants."""

    def test_shares_sum_to_whole_pool(self):
        assert sum(LADDER_SHARES.values()) == 100_000

    def test_ladder_shape(self):
        assert LADDER_SHARES[1] == 20_000
        assert LADDER_SHARES[2] == 12_000
        assert LADDER_SHARES[3] == 8_000
        assert all(LADDER_SHARES[r] == 5_000 for r in range(4, 11))
        assert all(LADDER_SHARES[r] == 625 for r in range(11, 51))
        assert 51 not in LADDER_SHARES

    def test_oversized_ladder_rejected(self):
        with pytest.raises(ValueError):
            validate_ladder({1: 60_000, 2: 50_000})


class TestDistributeLadder:
    """Tests for distribute_ladder()."""

    def test_rank_one_example(self, likes_pool, sixty_users):
        """Rank 1 gets floor(pool * 20%) exactly."""
        result = distribute_ladder(likes_pool, sixty_users)
        first = result.awards[0]
        assert first.user_id == "user-000"
        assert first.rank == 1
        assert first.amount.atomic == 100_000_050_000

    def test_ladder_amounts(self, likes_pool, sixty_users):
        amounts = [a.amount.atomic for a in distribute_ladder(likes_pool, sixty_users).awards]
        assert amounts[1] == 60_000_030_000
        assert amounts[2] == 40_000_020_000
        assert amounts[3:10] == [25_000_012_500] * 7
        assert amounts[10:] == [3_125_001_562] * 40

    def test_only_top_fifty_paid(self, likes_pool, sixty_users):
        result = distribute_ladder(likes_pool, sixty_users)
        assert len(result.awards) == 50
        assert result.awards[-1].rank == 50
        assert "user-050" not in {a.user_id for a in result.awards}

    def test_rounding_leakage_not_redistributed(self, likes_pool, sixty_users):
        result = distribute_ladder(likes_pool, sixty_users)
        assert result.distributed.atomic == 500_000_249_980
        assert result.undistributed.atomic == 20

    def test_unfilled_ranks_left_undistributed(self, likes_pool):
        result = distribute_ladder(likes_pool, [RankEntry("a", 5), RankEntry("b", 3)])
        assert [a.amount.atomic for a in result.awards] == [100_000_050_000, 60_000_030_000]
        assert result.undistributed.atomic == likes_pool.atomic - 160_000_080_000

    def test_ties_broken_by_user_id(self, likes_pool):
        entries = [RankEntry("carol", 10), RankEntry("alice", 10), RankEntry("bob", 10)]
        result = distribute_ladder(likes_pool, entries)
        assert [a.user_id for a in result.awards] == ["alice", "bob", "carol"]
        assert [a.rank for a in result.awards] == [1, 2, 3]

    def test_deterministic_regardless_of_input_order(self, likes_pool, sixty_users):
        forward = distribute_ladder(likes_pool, sixty_users)
        backward = distribute_ladder(likes_pool, list(reversed(sixty_users)))
        assert forward.awards == backward.awards
        assert forward.to_dict() == distribute_ladder(likes_pool, sixty_users).to_dict()

    def test_zero_metric_not_ranked(self, likes_pool):
        result = distribute_ladder(likes_pool, [RankEntry("a", 0), RankEntry("b", 1)])
        assert [a.user_id for a in result.awards] == ["b"]

    def test_empty_input(self, likes_pool):
        result = distribute_ladder(likes_pool, [])
        assert result.awards == []
        assert result.undistributed == likes_pool

    def test_duplicate_participant_rejected(self, likes_pool):
        with pytest.raises(ValueError):
            rank_entries([RankEntry("a", 1), RankEntry("a", 2)])


class TestDistributeProRata:
    """Tests for distribute_pro_rata()."""

    def test_proportional_floor(self):
        result = distribute_pro_rata(FixedAmount(1_000), [RankEntry("a", 1), RankEntry("b", 2)])
        amounts = {a.user_id: a.amount.atomic for a in result.awards}
        assert amounts == {"a": 333, "b": 666}
        assert result.undistributed.atomic == 1

    def test_no_metric_pays_nothing(self):
        result = distribute_pro_rata(FixedAmount(1_000), [RankEntry("a", 0)])
        assert result.awards == []
