"""
xessrewards/tests/test_ledger_writer.py

Unit tests for the ledger store and reward ledger writer:
- idempotent (ref_type, ref_id) writes
- provisional rewards
- conditional claim marking and resets
- job locks
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from xessrewards.config import SYNCED_FROM_CHAIN_SIG
from xessrewards.ledger.models import JobLock, RewardEvent, RewardStatus, RewardType, utc_now
from xessrewards.ledger.store import LockBusy
from xessrewards.ledger.writer import RewardGrant, RewardLedgerWriter


WEEK = "2026-02-02"


def grant(user_id="u1", amount=1_000_000, ref_type="xessex:weekly_likes", **kwargs):
    return RewardGrant(
        user_id=user_id,
        week_key=WEEK,
        type=kwargs.pop("type", RewardType.WEEKLY_LIKES),
        pool="xessex",
        amount=amount,
        ref_type=ref_type,
        ref_id=kwargs.pop("ref_id", f"{WEEK}:{user_id}:{ref_type}"),
        **kwargs,
    )


def count_rows(store) -> int:
    with store.session() as session:
        return session.scalar(select(func.count()).select_from(RewardEvent))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def writer(store):
    return RewardLedgerWriter(store)


class TestRewardGrant:
    """Tests for RewardGrant validation."""

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            grant(amount=-1)

    def test_float_amount_rejected(self):
        with pytest.raises(TypeError):
            grant(amount=1.5)

    def test_missing_ref_rejected(self):
        with pytest.raises(ValueError):
            grant(ref_id="")

    def test_type_coerced_from_string(self):
        assert grant(type="REF_L2").type == RewardType.REF_L2


class TestWrite:
    """Tests for idempotent writes."""

    def test_write_twice_persists_once(self, store, writer):
        first = writer.write([grant()])
        second = writer.write([grant()])
        assert (first.inserted, first.skipped) == (1, 0)
        assert (second.inserted, second.skipped) == (0, 1)
        assert count_rows(store) == 1

    def test_duplicate_within_one_batch(self, store, writer):
        summary = writer.write([grant(), grant()])
        assert summary.inserted == 1
        assert count_rows(store) == 1

    def test_status_paid_by_default(self, store, writer):
        writer.write([grant()])
        with store.session() as session:
            row = session.scalar(select(RewardEvent))
        assert row.status == RewardStatus.PAID.value
        assert row.claimed_at is None

    def test_conflicting_payload_keeps_stored_row(self, store, writer, caplog):
        writer.write([grant(amount=100)])
        summary = writer.write([grant(amount=999)])
        assert summary.conflicts == [f"xessex:weekly_likes/{WEEK}:u1:xessex:weekly_likes"]
        with store.session() as session:
            assert session.scalar(select(RewardEvent.amount)) == 100
        assert "Conflicting payload" in caplog.text

    def test_batch_is_all_or_nothing(self, store, writer):
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                writer.write([grant("u1"), grant("u2")], session=session)
                raise RuntimeError("crash before commit")
        assert count_rows(store) == 0

    def test_inserted_amount(self, writer):
        summary = writer.write([grant("u1", 5), grant("u2", 7)])
        assert summary.inserted_amount == 12

    def test_referral_source_stored(self, store, writer):
        writer.write([grant("a", 10, ref_type="xessex:ref_l1", type=RewardType.REF_L1,
                            ref_id=f"{WEEK}:a:b:xessex:ref_l1", referral_from_user_id="b")])
        with store.session() as session:
            row = session.scalar(select(RewardEvent))
        assert row.referral_from_user_id == "b"
        assert row.type == "REF_L1"


class TestProvisional:
    """Tests for PENDING rewards."""

    def test_large_rewards_pending(self, store):
        writer = RewardLedgerWriter(store, provisional_threshold_atomic=1_000)
        summary = writer.write([grant("u1", 999), grant("u2", 1_000)])
        assert summary.pending == 1
        pending = writer.list_provisional()
        assert [r.user_id for r in pending] == ["u2"]

    def test_approve(self, store):
        writer = RewardLedgerWriter(store, provisional_threshold_atomic=1_000)
        writer.write([grant("u2", 5_000)])
        ref_id = f"{WEEK}:u2:xessex:weekly_likes"
        assert writer.approve_provisional([ref_id]) == 1
        assert writer.approve_provisional([ref_id]) == 0
        assert writer.list_provisional() == []


class TestClaimColumns:
    """Tests for mark_claimed() and reset_claims()."""

    def _ids(self, store):
        with store.session() as session:
            return list(session.scalars(select(RewardEvent.id)))

    def test_mark_claimed_is_conditional(self, store, writer):
        writer.write([grant("u1"), grant("u2")])
        ids = self._ids(store)
        with store.transaction() as session:
            assert RewardLedgerWriter.mark_claimed(session, ids, "sig-one") == 2
        with store.transaction() as session:
            assert RewardLedgerWriter.mark_claimed(session, ids, "sig-two") == 0
        with store.session() as session:
            assert set(session.scalars(select(RewardEvent.tx_sig))) == {"sig-one"}

    def test_reset_only_suspect_rows(self, store, writer):
        writer.write([grant("u1"), grant("u2"), grant("u3")])
        ids = self._ids(store)
        with store.transaction() as session:
            RewardLedgerWriter.mark_claimed(session, ids[:1], "real-signature")
            RewardLedgerWriter.mark_claimed(session, ids[1:2], SYNCED_FROM_CHAIN_SIG)
            session.execute(
                RewardEvent.__table__.update()
                .where(RewardEvent.id == ids[2])
                .values(claimed_at=func.current_timestamp())
            )
        with store.transaction() as session:
            assert RewardLedgerWriter.reset_claims(session, ids) == 2
        with store.session() as session:
            claimed = session.scalars(select(RewardEvent.tx_sig).where(RewardEvent.claimed_at.is_not(None)))
            assert list(claimed) == ["real-signature"]

    def test_claimable_rows(self, store, writer):
        writer.write([grant("u1"), grant("u2", amount=0)])
        with store.session() as session:
            rows = RewardLedgerWriter.claimable_rows(session, WEEK)
            assert [r.user_id for r in rows] == ["u1"]
            assert RewardLedgerWriter.claimable_rows(session, "2026-02-09") == []


class TestJobLock:
    """Tests for LedgerStore.job_lock()."""

    def test_second_holder_is_busy(self, store):
        with store.job_lock("build", key=1):
            with pytest.raises(LockBusy):
                with store.job_lock("build", key=1):
                    pass

    def test_released_after_block(self, store):
        with store.job_lock("build", key=1):
            pass
        with store.job_lock("build", key=1):
            pass
        with store.session() as session:
            assert session.scalar(select(func.count()).select_from(JobLock)) == 0

    def test_released_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.job_lock("build", key=1):
                raise RuntimeError("boom")
        with store.job_lock("build", key=1):
            pass

    def test_independent_names(self, store):
        with store.job_lock("a", key=1):
            with store.job_lock("b", key=2):
                pass

    def test_stale_row_is_taken_over(self, store):
        with store.transaction() as session:
            session.add(JobLock(name="build", acquired_at=utc_now() - timedelta(minutes=31)))
        with store.job_lock("build", key=1):
            with store.session() as session:
                held = session.scalars(select(JobLock)).one()
                assert held.name == "build"
        with store.session() as session:
            assert session.scalar(select(func.count()).select_from(JobLock)) == 0

    def test_recent_leftover_row_still_busy(self, store):
        with store.transaction() as session:
            session.add(JobLock(name="build", acquired_at=utc_now() - timedelta(minutes=5)))
        with pytest.raises(LockBusy):
            with store.job_lock("build", key=1):
                pass

    def test_stale_window_is_configurable(self, store):
        store.lock_stale_minutes = 1
        with store.transaction() as session:
            session.add(JobLock(name="build", acquired_at=utc_now() - timedelta(minutes=5)))
        with store.job_lock("build", key=1):
            pass
