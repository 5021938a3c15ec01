"""
xessrewards/tests/test_referral.py

Unit tests for the referral attribution engine:
- three-level chain walks
- broken chains and loops
- budget scaling
"""

import logging

import pytest

from xessrewards.ledger.models import Participant, RewardType
from xessrewards.protocol.referral import (
    BaseEarning,
    MissingParticipantError,
    ParticipantRecord,
    ReferralAttributionEngine,
    load_directory,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def chain_directory():
    """a <- b <- c <- d <- e (e was referred by d, ...)."""
    return {
        "a": ParticipantRecord("a", wallet="WalletA"),
        "b": ParticipantRecord("b", referred_by_id="a"),
        "c": ParticipantRecord("c", referred_by_id="b", wallet="WalletC"),
        "d": ParticipantRecord("d", referred_by_id="c"),
        "e": ParticipantRecord("e", referred_by_id="d"),
    }


class TestReferralChain:
    """Tests for referral_chain()."""

    def test_walks_three_levels(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        assert engine.referral_chain("e") == ["d", "c", "b"]
        assert engine.referral_chain("c") == ["b", "a"]
        assert engine.referral_chain("a") == []

    def test_missing_referrer_stops_and_logs(self, chain_directory, caplog):
        chain_directory["c"].referred_by_id = "ghost"
        engine = ReferralAttributionEngine(chain_directory)
        broken = []
        with caplog.at_level(logging.WARNING, logger="xessrewards.protocol.referral"):
            assert engine.referral_chain("d", broken) == ["c"]
        assert broken[0].missing_id == "ghost"
        assert broken[0].level == 2
        assert "broken referral chain" in caplog.text

    def test_loop_stops(self):
        directory = {
            "a": ParticipantRecord("a", referred_by_id="b"),
            "b": ParticipantRecord("b", referred_by_id="a"),
        }
        engine = ReferralAttributionEngine(directory)
        broken = []
        assert engine.referral_chain("a", broken) == ["b"]
        assert broken[0].reason == "loop"

    def test_unknown_earner(self, chain_directory):
        assert ReferralAttributionEngine(chain_directory).referral_chain("zed") == []
        with pytest.raises(MissingParticipantError):
            ReferralAttributionEngine(chain_directory, strict=True).referral_chain("zed")


class TestAttribute:
    """Tests for attribute()."""

    def test_level_percentages(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([BaseEarning("e", "xessex", 1_000_000)])
        got = {(r.referrer_id, r.level): r.amount for r in result.rewards}
        assert got == {("d", 1): 100_000, ("c", 2): 60_000, ("b", 3): 40_000}
        assert all(r.from_user_id == "e" for r in result.rewards)
        assert result.rewards[0].reward_type == RewardType.REF_L1

    def test_referrer_without_wallet_still_accrues(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([BaseEarning("e", "xessex", 1_000_000)])
        d_reward = next(r for r in result.rewards if r.referrer_id == "d")
        assert d_reward.has_wallet is False
        assert d_reward.amount == 100_000

    def test_custom_level_bps(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory, level_bps={1: 1_000, 2: 300, 3: 100})
        result = engine.attribute([BaseEarning("e", "embed", 10_000)])
        assert [r.amount for r in result.rewards] == [1_000, 300, 100]

    def test_earnings_summed_per_pool(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([
            BaseEarning("b", "xessex", 600),
            BaseEarning("b", "xessex", 400),
            BaseEarning("b", "embed", 100),
        ])
        by_pool = {(r.pool, r.referrer_id): r.amount for r in result.rewards}
        assert by_pool == {("embed", "a"): 10, ("xessex", "a"): 100}

    def test_budget_scaling(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([BaseEarning("e", "xessex", 1_000_000)], budgets={"xessex": 100_000})
        assert result.owed["xessex"] == 200_000
        assert result.scale_ppm["xessex"] == 500_000
        assert [r.amount for r in result.rewards] == [50_000, 30_000, 20_000]
        assert result.total("xessex") <= 100_000

    def test_budget_not_exceeded_means_no_scaling(self, chain_directory):
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([BaseEarning("e", "xessex", 1_000_000)], budgets={"xessex": 10 ** 9})
        assert result.scale_ppm["xessex"] == 1_000_000
        assert result.total() == 200_000

    def test_banned_referrer_skipped(self, chain_directory):
        chain_directory["d"].reward_banned = True
        engine = ReferralAttributionEngine(chain_directory)
        result = engine.attribute([BaseEarning("e", "xessex", 1_000_000)])
        assert {r.referrer_id for r in result.rewards} == {"c", "b"}

    def test_broken_chain_reported(self, chain_directory):
        chain_directory["e"].referred_by_id = "ghost"
        result = ReferralAttributionEngine(chain_directory).attribute(
            [BaseEarning("e", "xessex", 1_000_000)]
        )
        assert result.rewards == []
        assert len(result.broken_chains) == 1

    def test_shares_above_100_percent_rejected(self, chain_directory):
        with pytest.raises(ValueError):
            ReferralAttributionEngine(chain_directory, level_bps={1: 9_000, 2: 2_000})


class TestLoadDirectory:
    """Tests for loading participants from the ledger."""

    def test_load_directory(self, store):
        with store.transaction() as session:
            session.add_all([
                Participant(user_id="a", wallet="WalletA"),
                Participant(user_id="b", referred_by_id="a", reward_banned=True),
            ])
        with store.session() as session:
            directory = load_directory(session)
        assert directory["a"].wallet == "WalletA"
        assert directory["b"].referred_by_id == "a"
        assert directory["b"].reward_banned is True
