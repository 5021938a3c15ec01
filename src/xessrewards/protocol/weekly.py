"""
xessrewards/protocol/weekly.py

Weekly distribution pipeline: Emission Scheduler -> Ranking Ladder
Distributor -> Referral Attribution -> Reward Ledger Writer.

One run per week key, tracked in reward_batches:
- DONE            skipped unless forced
- RUNNING         skipped while younger than the stale window
- FAILED / stale  retried

Retrying is safe because every reward has a deterministic (ref_type, ref_id)
and the writer skips rows that already exist:

    ref_type  "{pool}:weekly_{category}"      e.g. "xessex:weekly_likes"
              "{pool}:ref_l{level}"           e.g. "embed:ref_l2"
    ref_id    "{weekKey}:{userId}:{ref_type}"
              "{weekKey}:{referrerId}:{fromUserId}:{ref_type}"   (referrals)

Per content pool: likes and mvm are paid by rank ladder, comments pro-rata,
and the referrals category is the budget for referral rewards. Whatever a
category does not hand out is written to burn_records.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..amounts import FixedAmount
from ..config import (
    CATEGORY_WEIGHTS,
    CONTENT_POOL_WEIGHTS,
    EMISSION_PHASES,
    RewardsConfig,
)
from ..ledger.models import (
    BatchStatus,
    BurnRecord,
    ClaimEpoch,
    ClaimLeafReward,
    RewardBatch,
    RewardEvent,
    RewardType,
    WeeklyUserStat,
    utc_now,
)
from ..ledger.store import LedgerStore
from ..ledger.writer import RewardGrant, RewardLedgerWriter, WriteSummary
from ..results import BestEffort
from .emission import EmissionPlan, parse_week_key, plan_week, week_index_for
from .epoch_builder import EpochPublishedError
from .ladder import DistributionResult, RankEntry, distribute_ladder, distribute_pro_rata
from .referral import AttributionResult, BaseEarning, ReferralAttributionEngine, load_directory

logger = logging.getLogger("xessrewards.protocol.weekly")

REFERRALS = "referrals"

# category -> (stat column, reward type, distribution)
CATEGORY_RULES = {
    "likes": ("score_received", RewardType.WEEKLY_LIKES, "ladder"),
    "mvm": ("mvm_points", RewardType.WEEKLY_MVM, "ladder"),
    "comments": ("diamond_comments", RewardType.WEEKLY_COMMENTS, "pro_rata"),
}


class DistributionStatus(str, Enum):
    COMPLETED = "completed"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_RUNNING = "already_running"


def ref_type_for(pool: str, category: str) -> str:
    return f"{pool}:weekly_{category}"


def referral_ref_type(pool: str, level: int) -> str:
    return f"{pool}:ref_l{level}"


def _aware(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class DistributionRequest:
    week_key: str
    week_index: Optional[int] = None
    force: bool = False

    def __post_init__(self):
        parse_week_key(self.week_key)
        if self.week_index is None:
            self.week_index = week_index_for(self.week_key)


@dataclass
class DistributionOutcome:
    status: DistributionStatus
    week_key: str
    week_index: int
    run_id: Optional[str] = None
    total_amount: int = 0
    total_users: int = 0
    burned: int = 0
    broken_chains: int = 0
    referrals_without_wallet: int = 0   # referral rewards whose referrer has no wallet yet
    write: Optional[WriteSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class _Computation:
    grants: List[RewardGrant] = field(default_factory=list)
    burns: List[BurnRecord] = field(default_factory=list)
    attribution: Optional[AttributionResult] = None


# ============================================================================
# DISTRIBUTOR
# ============================================================================

class WeeklyDistributor:
    """
    Runs the weekly reward computation for one week key.

    Args:
        store: Ledger store
        config: Rewards config (referral bps, provisional threshold, stale window)
        writer: Ledger writer; built from config when omitted
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[RewardsConfig] = None,
        writer: Optional[RewardLedgerWriter] = None,
        content_weights: Optional[Dict[str, int]] = None,
        category_weights: Optional[Dict[str, int]] = None,
        phases: Optional[List[Tuple[Optional[int], int]]] = None,
    ):
        self.store = store
        self.config = config or RewardsConfig()
        self.writer = writer or RewardLedgerWriter(
            store, self.config.provisional_threshold_atomic
        )
        self.content_weights = content_weights or CONTENT_POOL_WEIGHTS
        self.category_weights = category_weights or CATEGORY_WEIGHTS
        self.phases = phases or EMISSION_PHASES

    def run(self, request: DistributionRequest) -> DistributionOutcome:
        """
        Compute and write one week's rewards.

        Raises:
            EpochPublishedError: Forced re-run of a week already on-chain
        """
        status, run_id = self._start_batch(request)
        if status is not None:
            logger.info(f"Weekly distribution {request.week_key}: {status.value}")
            return DistributionOutcome(status, request.week_key, request.week_index, run_id)

        logger.info(
            f"Weekly distribution {request.week_key} (week {request.week_index}) run {run_id}"
        )
        try:
            plan = plan_week(
                request.week_index, self.content_weights, self.category_weights, self.phases
            )
            computation = self._compute(request.week_key, plan)
            outcome = self._commit(request, run_id, computation)
        except Exception as e:
            BestEffort.attempt(
                "mark batch failed", self._fail_batch, request.week_key, run_id, str(e)
            )
            logger.error(f"Weekly distribution {request.week_key} failed: {e}")
            raise

        logger.info(
            f"Weekly distribution {request.week_key} done: {outcome.total_users} users, "
            f"{FixedAmount(outcome.total_amount)} written, {FixedAmount(outcome.burned)} burned"
        )
        return outcome

    # ========================================================================
    # BATCH LIFECYCLE
    # ========================================================================

    def _start_batch(
        self, request: DistributionRequest
    ) -> Tuple[Optional[DistributionStatus], Optional[str]]:
        """Claim the week's batch. Returns (skip status, run id)."""
        run_id = uuid.uuid4().hex
        stale_before = utc_now() - timedelta(minutes=self.config.stale_batch_minutes)
        try:
            with self.store.transaction() as session:
                batch = session.get(RewardBatch, request.week_key)
                if batch is None:
                    session.add(RewardBatch(
                        week_key=request.week_key,
                        run_id=run_id,
                        status=BatchStatus.RUNNING.value,
                        started_at=utc_now(),
                    ))
                    return None, run_id

                if batch.status == BatchStatus.DONE.value and not request.force:
                    return DistributionStatus.ALREADY_PROCESSED, batch.run_id
                if batch.status == BatchStatus.RUNNING.value and _aware(batch.started_at) > stale_before:
                    return DistributionStatus.ALREADY_RUNNING, batch.run_id
                if batch.status == BatchStatus.DONE.value:
                    self._ensure_week_unpublished(session, request.week_key)
                if batch.status == BatchStatus.RUNNING.value:
                    logger.warning(
                        f"Batch {request.week_key} run {batch.run_id} is stale; taking over"
                    )

                changed = session.execute(
                    update(RewardBatch)
                    .where(
                        RewardBatch.week_key == request.week_key,
                        RewardBatch.run_id == batch.run_id,
                    )
                    .values(
                        run_id=run_id,
                        status=BatchStatus.RUNNING.value,
                        started_at=utc_now(),
                        finished_at=None,
                        error=None,
                    )
                ).rowcount
                if changed == 0:
                    return DistributionStatus.ALREADY_RUNNING, None
                return None, run_id
        except IntegrityError:
            return DistributionStatus.ALREADY_RUNNING, None

    @staticmethod
    def _ensure_week_unpublished(session: Session, week_key: str) -> None:
        linked = (
            select(ClaimLeafReward.epoch)
            .join(RewardEvent, RewardEvent.id == ClaimLeafReward.reward_event_id)
            .where(RewardEvent.week_key == week_key)
        )
        published = session.scalar(
            select(ClaimEpoch.epoch).where(
                ClaimEpoch.set_on_chain.is_(True),
                or_(ClaimEpoch.week_key == week_key, ClaimEpoch.epoch.in_(linked)),
            ).limit(1)
        )
        if published is not None:
            raise EpochPublishedError(
                f"week {week_key} is part of published epoch {published}; refusing re-run"
            )

    def _fail_batch(self, week_key: str, run_id: str, error: str) -> int:
        with self.store.transaction() as session:
            return session.execute(
                update(RewardBatch)
                .where(RewardBatch.week_key == week_key, RewardBatch.run_id == run_id)
                .values(status=BatchStatus.FAILED.value, finished_at=utc_now(), error=error[:1000])
            ).rowcount

    # ========================================================================
    # COMPUTATION
    # ========================================================================

    def _compute(self, week_key: str, plan: EmissionPlan) -> _Computation:
        with self.store.session() as session:
            stats = list(session.scalars(
                select(WeeklyUserStat)
                .where(WeeklyUserStat.week_key == week_key)
                .order_by(WeeklyUserStat.pool, WeeklyUserStat.user_id)
            ))
            directory = load_directory(session)

        banned = {uid for uid, record in directory.items() if record.reward_banned}
        computation = _Computation()
        earnings: List[BaseEarning] = []

        for pool in sorted(plan.categories):
            pool_stats = [s for s in stats if s.pool == pool and s.user_id not in banned]
            for category in sorted(plan.categories[pool].pools):
                if category == REFERRALS:
                    continue
                budget = plan.budget(pool, category)
                rule = CATEGORY_RULES.get(category)
                if rule is None:
                    logger.warning(f"No distribution rule for category {category!r}; burning")
                    computation.burns.append(self._burn(week_key, pool, category, budget, 0, "no_rule"))
                    continue

                column, reward_type, method = rule
                entries = [RankEntry(s.user_id, int(getattr(s, column) or 0)) for s in pool_stats]
                if method == "ladder":
                    result = distribute_ladder(budget, entries)
                else:
                    result = distribute_pro_rata(budget, entries)

                ref_type = ref_type_for(pool, category)
                for award in result.awards:
                    computation.grants.append(RewardGrant(
                        user_id=award.user_id,
                        week_key=week_key,
                        type=reward_type,
                        pool=pool,
                        amount=award.amount.atomic,
                        ref_type=ref_type,
                        ref_id=f"{week_key}:{award.user_id}:{ref_type}",
                    ))
                    earnings.append(BaseEarning(award.user_id, pool, award.amount.atomic))
                self._record_burn(computation, week_key, pool, category, result)

        engine = ReferralAttributionEngine(directory, self.config.referral_level_bps)
        budgets = {
            pool: plan.budget(pool, REFERRALS).atomic
            for pool in plan.categories
            if REFERRALS in plan.categories[pool].pools
        }
        attribution = engine.attribute(earnings, budgets)
        computation.attribution = attribution
        for reward in attribution.rewards:
            ref_type = referral_ref_type(reward.pool, reward.level)
            computation.grants.append(RewardGrant(
                user_id=reward.referrer_id,
                week_key=week_key,
                type=reward.reward_type,
                pool=reward.pool,
                amount=reward.amount,
                ref_type=ref_type,
                ref_id=f"{week_key}:{reward.referrer_id}:{reward.from_user_id}:{ref_type}",
                referral_from_user_id=reward.from_user_id,
            ))
        for pool, budget in budgets.items():
            paid = attribution.total(pool)
            if budget > paid:
                computation.burns.append(
                    self._burn(week_key, pool, REFERRALS, FixedAmount(budget), paid, "unused")
                )
        return computation

    def _record_burn(self, computation, week_key, pool, category, result: DistributionResult):
        if result.undistributed.atomic <= 0:
            return
        reason = "no_participants" if not result.awards else "unfilled_ranks"
        computation.burns.append(
            self._burn(week_key, pool, category, result.budget, result.distributed.atomic, reason)
        )

    @staticmethod
    def _burn(week_key: str, pool: str, category: str, budget: FixedAmount,
              distributed: int, reason: str) -> BurnRecord:
        return BurnRecord(
            week_key=week_key,
            pool=pool,
            category=category,
            budget=budget.atomic,
            distributed=distributed,
            burned=budget.atomic - distributed,
            reason=reason,
        )

    # ========================================================================
    # COMMIT
    # ========================================================================

    def _commit(self, request: DistributionRequest, run_id: str, computation: _Computation) -> DistributionOutcome:
        week_key = request.week_key
        with self.store.transaction() as session:
            summary = self.writer.write(computation.grants, session=session)

            # Burns are recomputed on every run; the latest run wins
            existing = {
                (b.pool, b.category): b
                for b in session.scalars(select(BurnRecord).where(BurnRecord.week_key == week_key))
            }
            for burn in computation.burns:
                row = existing.pop((burn.pool, burn.category), None)
                if row is None:
                    session.add(burn)
                else:
                    row.budget, row.distributed = burn.budget, burn.distributed
                    row.burned, row.reason = burn.burned, burn.reason
            for stale in existing.values():
                session.delete(stale)

            totals = self.writer.refresh_user_totals(session, week_key)
            total_amount = sum(paid + pending for _, _, paid, pending in totals)
            total_users = len({user_id for user_id, _, _, _ in totals})
            burned = sum(b.burned for b in computation.burns)
            changed = session.execute(
                update(RewardBatch)
                .where(RewardBatch.week_key == week_key, RewardBatch.run_id == run_id)
                .values(
                    status=BatchStatus.DONE.value,
                    finished_at=utc_now(),
                    total_amount=total_amount,
                    total_users=total_users,
                )
            ).rowcount
            if changed != 1:
                raise RuntimeError(f"batch {week_key} was taken over by another run")

        attribution = computation.attribution
        without_wallet = sum(1 for r in attribution.rewards if not r.has_wallet) if attribution else 0
        if without_wallet:
            logger.info(f"{without_wallet} referral reward(s) for {week_key} await a referrer wallet")
        return DistributionOutcome(
            status=DistributionStatus.COMPLETED,
            week_key=week_key,
            week_index=request.week_index,
            run_id=run_id,
            total_amount=total_amount,
            total_users=total_users,
            burned=burned,
            broken_chains=len(attribution.broken_chains) if attribution else 0,
            referrals_without_wallet=without_wallet,
            write=summary,
        )
