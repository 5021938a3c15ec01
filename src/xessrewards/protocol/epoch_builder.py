"""
xessrewards/protocol/epoch_builder.py

Merkle Claim Epoch Builder.

An epoch is a merkle tree over every user's claimable balance. Its life:

    BUILDING  (set_on_chain = false)  rebuild as often as needed
    PUBLISHED (set_on_chain = true)   immutable forever

A build:
1. takes the build lock (concurrent builders get LOCK_BUSY)
2. reads PAID, unclaimed rewards for the week (or all weeks) that are not
   already committed to another published epoch
3. sums them per user and scales 6 -> 9 decimals exactly
4. reuses each user's salt for this epoch, creating it only once
5. orders users by user-key hex, hashes leaves, builds the tree
6. replaces the epoch row, leaves and reward links in one transaction

buildHash = sha256("{epoch}|{weekKey}|" + ",".join(sorted("user:amount"))).
An unchanged buildHash means identical leaves, so nothing is rewritten and
the outcome is UNCHANGED.

The root is published on-chain by an external job; mark_epoch_published()
checks the epoch_root account before flipping set_on_chain.

Usage:
    builder = ClaimEpochBuilder(store, observer, program_id)
    outcome = builder.build(BuildRequest(week_key="2026-02-02"))
    if outcome.needs_publish:
        print(outcome.epoch, outcome.root_hex)
"""

import hashlib
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, aliased

from ..amounts import FixedAmount
from ..blockchain.merkle import (
    MerkleTree,
    SALT_LEN,
    leaf_hash,
    user_key_for,
    verify_proof_hex,
)
from ..blockchain.observer import ChainObserver, EpochRootAccount
from ..config import (
    EPOCH_BUILD_LOCK_KEY,
    EPOCH_BUILD_LOCK_NAME,
    EPOCH_SCAN_MAX_GAPS,
    LEDGER_DECIMALS,
)
from ..ledger.models import (
    ClaimEpoch,
    ClaimLeaf,
    ClaimLeafReward,
    ClaimSalt,
    Participant,
    RewardEvent,
    RewardStatus,
    utc_now,
)
from ..ledger.store import LedgerStore, LockBusy
from .emission import parse_week_key

logger = logging.getLogger("xessrewards.protocol.epoch_builder")

# week_key of epochs that span every week with outstanding balances
ALL_WEEKS = "all"

CLAIM_VERSION = 2


class EpochPublishedError(Exception):
    """The epoch is on-chain and can no longer change."""
    pass


class EpochVerificationError(Exception):
    """The on-chain epoch root does not match the stored epoch."""
    pass


class BuildStatus(str, Enum):
    BUILT = "built"
    REBUILT = "rebuilt"
    UNCHANGED = "unchanged"
    NO_CLAIMABLES = "no_claimables"
    LOCK_BUSY = "lock_busy"


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class BuildRequest:
    """Which epoch to build. week_key=None builds across all weeks."""
    week_key: Optional[str] = None
    version: int = CLAIM_VERSION
    epoch: Optional[int] = None

    def __post_init__(self):
        if self.week_key is not None and self.week_key != ALL_WEEKS:
            parse_week_key(self.week_key)
        if self.week_key == ALL_WEEKS:
            self.week_key = None
        if self.epoch is not None and self.epoch < 1:
            raise ValueError("epoch numbers start at 1")
        if self.version < 1:
            raise ValueError("version must be positive")

    @property
    def label(self) -> str:
        return self.week_key or ALL_WEEKS


@dataclass
class BuildOutcome:
    status: BuildStatus
    week_key: str
    epoch: Optional[int] = None
    root_hex: Optional[str] = None
    leaf_count: int = 0
    total_atomic: int = 0
    build_hash: Optional[str] = None

    @property
    def needs_publish(self) -> bool:
        """True when the root changed and must be (re)published on-chain."""
        return self.status in (BuildStatus.BUILT, BuildStatus.REBUILT)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        data["needs_publish"] = self.needs_publish
        return data


@dataclass
class ClaimProof:
    """Everything a client submits to claim one leaf."""
    epoch: int
    user_id: str
    index: int
    amount_atomic: int
    user_key_hex: str
    salt_hex: str
    leaf_hex: str
    proof: List[str]
    root_hex: str
    published: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class _UserBalance:
    user_id: str
    amount: int = 0
    reward_ids: List[int] = field(default_factory=list)


def compute_build_hash(epoch: int, week_key: str, balances: Dict[str, int]) -> str:
    """sha256 hex over the epoch, week and sorted "user:amount" pairs (6 dp amounts)."""
    pairs = sorted(f"{user_id}:{amount}" for user_id, amount in balances.items())
    payload = f"{epoch}|{week_key}|" + ",".join(pairs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ============================================================================
# BUILDER
# ============================================================================

class ClaimEpochBuilder:
    """
    Builds, publishes and serves merkle claim epochs.

    Args:
        store: Ledger store
        observer: Chain observer, used for epoch numbering and publish checks
        program_id: Claim program address
        salt_factory: Source of fresh salts (32 bytes)
    """

    def __init__(
        self,
        store: LedgerStore,
        observer: Optional[ChainObserver] = None,
        program_id: Optional[str] = None,
        salt_factory: Callable[[int], bytes] = secrets.token_bytes,
    ):
        self.store = store
        self.observer = observer
        self.program_id = program_id
        self.salt_factory = salt_factory

    # ========================================================================
    # BUILD
    # ========================================================================

    def build(self, request: BuildRequest) -> BuildOutcome:
        """
        Build or rebuild the epoch for `request`.

        Raises:
            EpochPublishedError: The target epoch is already on-chain
        """
        try:
            with self.store.job_lock(EPOCH_BUILD_LOCK_NAME, EPOCH_BUILD_LOCK_KEY):
                return self._build_locked(request)
        except LockBusy as e:
            logger.info(f"Epoch build for {request.label} skipped: {e}")
            return BuildOutcome(status=BuildStatus.LOCK_BUSY, week_key=request.label)

    def _build_locked(self, request: BuildRequest) -> BuildOutcome:
        with self.store.session() as session:
            existing = session.scalar(
                select(ClaimEpoch).where(
                    ClaimEpoch.week_key == request.label,
                    ClaimEpoch.version == request.version,
                )
            )
        if existing is not None and existing.set_on_chain:
            raise EpochPublishedError(
                f"epoch {existing.epoch} for {request.label} v{request.version} is published"
            )
        if existing is not None and request.epoch is not None and request.epoch != existing.epoch:
            raise ValueError(
                f"{request.label} v{request.version} is already epoch {existing.epoch}"
            )

        if existing is not None:
            epoch = existing.epoch
        elif request.epoch is not None:
            epoch = request.epoch
        else:
            # Chain scan happens here, before any transaction is open
            epoch = self.next_epoch_number()

        with self.store.transaction() as session:
            return self._build_in(session, request, epoch)

    def _build_in(self, session: Session, request: BuildRequest, epoch: int) -> BuildOutcome:
        current = session.get(ClaimEpoch, epoch)
        if current is not None:
            if current.set_on_chain:
                raise EpochPublishedError(f"epoch {epoch} is published")
            if current.week_key != request.label or current.version != request.version:
                raise ValueError(
                    f"epoch {epoch} belongs to {current.week_key} v{current.version}"
                )

        balances = self._claimable_balances(session, request.week_key, epoch)
        if not balances:
            if current is not None:
                logger.warning(f"Epoch {epoch} has no claimables left; dropping unpublished tree")
                self._delete_tree(session, epoch)
                session.delete(current)
            logger.info(f"No claimables for {request.label}")
            return BuildOutcome(status=BuildStatus.NO_CLAIMABLES, week_key=request.label)

        build_hash = compute_build_hash(
            epoch, request.label, {b.user_id: b.amount for b in balances.values()}
        )
        if current is not None and current.build_hash == build_hash:
            logger.info(f"Epoch {epoch} unchanged (buildHash {build_hash[:12]})")
            return BuildOutcome(
                status=BuildStatus.UNCHANGED,
                week_key=request.label,
                epoch=epoch,
                root_hex=current.root_hex,
                leaf_count=current.leaf_count,
                total_atomic=current.total_atomic,
                build_hash=build_hash,
            )

        salts = self._salts_for(session, epoch, list(balances))
        wallets = dict(
            session.execute(
                select(Participant.user_id, Participant.wallet).where(
                    Participant.user_id.in_(list(balances))
                )
            ).all()
        )

        entries = []
        for balance in balances.values():
            user_key = user_key_for(balance.user_id)
            entries.append((user_key.hex(), balance.user_id, user_key, balance))
        entries.sort(key=lambda e: (e[0], e[1]))

        leaves = []
        total_atomic = 0
        for index, (user_key_hex, user_id, user_key, balance) in enumerate(entries):
            amount9 = FixedAmount(balance.amount, LEDGER_DECIMALS).to_mint().atomic
            total_atomic += amount9
            salt = bytes.fromhex(salts[user_id])
            leaves.append((index, user_key_hex, user_id, balance, amount9, salt,
                           leaf_hash(user_key, epoch, amount9, index, salt)))

        tree = MerkleTree([leaf[-1] for leaf in leaves])

        self._delete_tree(session, epoch)
        status = BuildStatus.REBUILT if current is not None else BuildStatus.BUILT
        if current is None:
            current = ClaimEpoch(epoch=epoch, week_key=request.label, version=request.version,
                                 created_at=utc_now())
            session.add(current)
        current.root_hex = tree.root_hex
        current.leaf_count = len(leaves)
        current.total_atomic = total_atomic
        current.build_hash = build_hash
        current.set_on_chain = False
        current.updated_at = utc_now()
        session.flush()

        for index, user_key_hex, user_id, balance, amount9, salt, digest in leaves:
            session.add(ClaimLeaf(
                epoch=epoch,
                user_id=user_id,
                wallet=wallets.get(user_id),
                index=index,
                amount_atomic=amount9,
                proof=tree.get_proof_hex(index),
                user_key_hex=user_key_hex,
                salt_hex=salt.hex(),
                leaf_hex=digest.hex(),
            ))
            session.add_all(
                ClaimLeafReward(epoch=epoch, user_id=user_id, reward_event_id=reward_id)
                for reward_id in balance.reward_ids
            )

        logger.info(
            f"Epoch {epoch} {status.value} for {request.label}: {len(leaves)} leaves, "
            f"total {total_atomic}, root {tree.root_hex}"
        )
        return BuildOutcome(
            status=status,
            week_key=request.label,
            epoch=epoch,
            root_hex=tree.root_hex,
            leaf_count=len(leaves),
            total_atomic=total_atomic,
            build_hash=build_hash,
        )

    def _claimable_balances(
        self, session: Session, week_key: Optional[str], epoch: int
    ) -> Dict[str, _UserBalance]:
        committed = (
            select(ClaimLeafReward.reward_event_id)
            .join(ClaimEpoch, ClaimEpoch.epoch == ClaimLeafReward.epoch)
            .where(ClaimEpoch.set_on_chain.is_(True), ClaimEpoch.epoch != epoch)
        )
        query = select(RewardEvent).where(
            RewardEvent.status == RewardStatus.PAID.value,
            RewardEvent.claimed_at.is_(None),
            RewardEvent.amount > 0,
            RewardEvent.id.not_in(committed),
        )
        if week_key is not None:
            query = query.where(RewardEvent.week_key == week_key)

        balances: Dict[str, _UserBalance] = OrderedDict()
        for row in session.scalars(query.order_by(RewardEvent.id)):
            balance = balances.setdefault(row.user_id, _UserBalance(row.user_id))
            balance.amount += row.amount
            balance.reward_ids.append(row.id)
        return balances

    def _salts_for(self, session: Session, epoch: int, user_ids: List[str]) -> Dict[str, str]:
        """Existing salt per user for this epoch; new ones are created once."""
        salts = {
            s.user_id: s.salt_hex
            for s in session.scalars(
                select(ClaimSalt).where(ClaimSalt.epoch == epoch, ClaimSalt.user_id.in_(user_ids))
            )
        }
        for user_id in user_ids:
            if user_id in salts:
                continue
            salt = self.salt_factory(SALT_LEN)
            if len(salt) != SALT_LEN:
                raise ValueError(f"salt factory returned {len(salt)} bytes")
            salts[user_id] = salt.hex()
            session.add(ClaimSalt(
                epoch=epoch,
                user_id=user_id,
                user_key_hex=user_key_for(user_id).hex(),
                salt_hex=salt.hex(),
            ))
        return salts

    @staticmethod
    def _delete_tree(session: Session, epoch: int) -> None:
        session.execute(delete(ClaimLeafReward).where(ClaimLeafReward.epoch == epoch))
        session.execute(delete(ClaimLeaf).where(ClaimLeaf.epoch == epoch))

    # ========================================================================
    # EPOCH NUMBERING
    # ========================================================================

    def latest_stored_epoch(self) -> int:
        with self.store.session() as session:
            return session.scalar(select(func.coalesce(func.max(ClaimEpoch.epoch), 0)))

    def latest_onchain_epoch(self, start: int = 0) -> int:
        """
        Highest epoch with an epoch_root account, scanning upward from
        `start` + 1 until EPOCH_SCAN_MAX_GAPS consecutive epochs are missing.
        """
        if self.observer is None or not self.program_id:
            return start
        latest = start
        gaps = 0
        candidate = start + 1
        while gaps < EPOCH_SCAN_MAX_GAPS:
            address = self.observer.epoch_root_address(self.program_id, candidate)
            if self.observer.account_exists(address):
                latest = candidate
                gaps = 0
            else:
                gaps += 1
            candidate += 1
        return latest

    def next_epoch_number(self) -> int:
        """max(latest stored, latest on-chain) + 1."""
        stored = self.latest_stored_epoch()
        onchain = self.latest_onchain_epoch(stored)
        if onchain > stored:
            logger.warning(f"Chain has epoch {onchain} beyond stored epoch {stored}")
        return max(stored, onchain) + 1

    # ========================================================================
    # PUBLICATION
    # ========================================================================

    def mark_epoch_published(
        self, epoch: int, tx_sig: Optional[str] = None, verify: bool = True
    ) -> Dict[str, Any]:
        """
        Flip set_on_chain after checking the on-chain epoch_root account.

        Raises:
            LookupError: Unknown epoch
            EpochVerificationError: Account missing, wrong owner or different root,
                or the epoch shares rewards with an epoch already published
        """
        with self.store.session() as session:
            row = session.get(ClaimEpoch, epoch)
        if row is None:
            raise LookupError(f"epoch {epoch} not found")
        if row.set_on_chain:
            return {"epoch": epoch, "root_hex": row.root_hex, "already_published": True}

        with self.store.session() as session:
            self._ensure_no_published_overlap(session, epoch)
        if verify:
            self._verify_onchain_root(epoch, row.root_hex)

        with self.store.transaction() as session:
            self._ensure_no_published_overlap(session, epoch)
            changed = session.execute(
                update(ClaimEpoch)
                .where(
                    ClaimEpoch.epoch == epoch,
                    ClaimEpoch.root_hex == row.root_hex,
                    ClaimEpoch.set_on_chain.is_(False),
                )
                .values(set_on_chain=True, on_chain_tx_sig=tx_sig, updated_at=utc_now())
            ).rowcount
            if changed == 0:
                now = session.get(ClaimEpoch, epoch)
                if now is None or not now.set_on_chain:
                    raise EpochVerificationError(
                        f"epoch {epoch} was rebuilt while being marked published"
                    )
                return {"epoch": epoch, "root_hex": now.root_hex, "already_published": True}

        logger.info(f"Epoch {epoch} marked published (root {row.root_hex})")
        return {"epoch": epoch, "root_hex": row.root_hex, "already_published": False}

    @staticmethod
    def _published_overlap(session: Session, epoch: int):
        """First (published epoch, reward id) that `epoch` also covers, or None."""
        own = aliased(ClaimLeafReward)
        return session.execute(
            select(ClaimLeafReward.epoch, ClaimLeafReward.reward_event_id)
            .join(ClaimEpoch, ClaimEpoch.epoch == ClaimLeafReward.epoch)
            .join(own, own.reward_event_id == ClaimLeafReward.reward_event_id)
            .where(
                own.epoch == epoch,
                ClaimLeafReward.epoch != epoch,
                ClaimEpoch.set_on_chain.is_(True),
            )
            .limit(1)
        ).first()

    def _ensure_no_published_overlap(self, session: Session, epoch: int) -> None:
        """A reward may only be covered by one published epoch."""
        overlap = self._published_overlap(session, epoch)
        if overlap is not None:
            raise EpochVerificationError(
                f"epoch {epoch} covers reward {overlap.reward_event_id} already in "
                f"published epoch {overlap.epoch}; rebuild it before publishing"
            )

    def _verify_onchain_root(self, epoch: int, root_hex: str) -> None:
        if self.observer is None or not self.program_id:
            raise EpochVerificationError("chain observer and program id are required to verify")
        address = self.observer.epoch_root_address(self.program_id, epoch)
        account = self.observer.get_account(address)
        if account is None:
            raise EpochVerificationError(f"epoch_root account {address} not found")
        if account.owner != self.program_id:
            raise EpochVerificationError(
                f"epoch_root account {address} owned by {account.owner}"
            )
        try:
            onchain = EpochRootAccount.parse(account.data)
        except ValueError as e:
            raise EpochVerificationError(str(e)) from e
        if onchain.epoch != epoch:
            raise EpochVerificationError(f"account holds epoch {onchain.epoch}, expected {epoch}")
        if onchain.root.hex() != root_hex:
            raise EpochVerificationError(
                f"on-chain root {onchain.root.hex()} differs from stored {root_hex}"
            )

    def list_unpublished(self) -> List[Dict[str, Any]]:
        """Epochs waiting for the external set-root step."""
        with self.store.session() as session:
            rows = list(session.scalars(
                select(ClaimEpoch)
                .where(ClaimEpoch.set_on_chain.is_(False))
                .order_by(ClaimEpoch.epoch)
            ))
            return [
                {
                    "epoch": r.epoch,
                    "week_key": r.week_key,
                    "version": r.version,
                    "root_hex": r.root_hex,
                    "leaf_count": r.leaf_count,
                    "total_atomic": r.total_atomic,
                    "build_hash": r.build_hash,
                    "overlaps_published": self._published_overlap(session, r.epoch) is not None,
                }
                for r in rows
            ]

    # ========================================================================
    # PROOFS
    # ========================================================================

    def get_claim_proof(self, epoch: int, user_id: str) -> Optional[ClaimProof]:
        with self.store.session() as session:
            row = session.get(ClaimEpoch, epoch)
            leaf = session.get(ClaimLeaf, (epoch, user_id))
            if row is None or leaf is None:
                return None
            return ClaimProof(
                epoch=epoch,
                user_id=user_id,
                index=leaf.index,
                amount_atomic=leaf.amount_atomic,
                user_key_hex=leaf.user_key_hex,
                salt_hex=leaf.salt_hex,
                leaf_hex=leaf.leaf_hex,
                proof=list(leaf.proof),
                root_hex=row.root_hex,
                published=row.set_on_chain,
            )

    def verify_epoch(self, epoch: int) -> bool:
        """Recompute every stored leaf and check its proof against the stored root."""
        with self.store.session() as session:
            row = session.get(ClaimEpoch, epoch)
            if row is None:
                raise LookupError(f"epoch {epoch} not found")
            leaves = list(session.scalars(select(ClaimLeaf).where(ClaimLeaf.epoch == epoch)))
        if len(leaves) != row.leaf_count:
            return False
        for leaf in leaves:
            expected = leaf_hash(
                bytes.fromhex(leaf.user_key_hex), epoch, leaf.amount_atomic,
                leaf.index, bytes.fromhex(leaf.salt_hex),
            ).hex()
            if expected != leaf.leaf_hex:
                return False
            if not verify_proof_hex(leaf.leaf_hex, leaf.index, leaf.proof, row.root_hex):
                return False
        return True
