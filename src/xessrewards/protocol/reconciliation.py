"""
xessrewards/protocol/reconciliation.py

Claim Reconciliation Service.

A claim is only recorded in the ledger after the chain shows it happened:
either the program's receipt account for (epoch, user key) exists, or the
submitted transaction invoked the claim program, succeeded, and moved at
least the leaf amount out of the vault to the claimer's token account.
The transaction must also touch this leaf's receipt account, and a
signature already recorded for other rewards is never accepted again.

Chain lookups happen with no database transaction open. The final write
only touches rows that are still unclaimed, so concurrent confirmations of
one leaf settle on a single tx_sig.

Failure codes:
    claim_leaf_not_found       permanent
    epoch_not_published        permanent
    tx_not_found               retryable
    chain_unavailable          retryable
    tx_failed                  permanent
    wrong_program              permanent
    transfer_amount_mismatch   permanent
    wallet_mismatch            permanent
    tx_not_for_leaf            permanent
    tx_already_used            permanent

repair_false_claims() undoes claims recorded without a signature (or by the
legacy on-chain sync) when the receipt account does not exist.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..blockchain.observer import ChainObserver, ChainObserverError
from ..config import SYNCED_FROM_CHAIN_SIG
from ..ledger.models import ClaimEpoch, ClaimLeaf, ClaimLeafReward, RewardEvent
from ..ledger.store import LedgerStore
from ..ledger.writer import RewardLedgerWriter

logger = logging.getLogger("xessrewards.protocol.reconciliation")

# base58 transaction signature
SIGNATURE_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")
ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


# ============================================================================
# ERRORS
# ============================================================================

class ClaimError(Exception):
    """Base class for claim confirmation failures."""
    code = "claim_error"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "retryable": self.retryable,
                "message": str(self), **self.details}


class ClaimLeafNotFound(ClaimError):
    code = "claim_leaf_not_found"


class EpochNotPublished(ClaimError):
    code = "epoch_not_published"


class TransactionNotFound(ClaimError):
    code = "tx_not_found"
    retryable = True


class ChainUnavailable(ClaimError):
    code = "chain_unavailable"
    retryable = True


class TransactionFailed(ClaimError):
    code = "tx_failed"


class WrongProgram(ClaimError):
    code = "wrong_program"


class TransferAmountMismatch(ClaimError):
    code = "transfer_amount_mismatch"


class WalletMismatch(ClaimError):
    code = "wallet_mismatch"


class TransactionNotForLeaf(ClaimError):
    code = "tx_not_for_leaf"


class TxAlreadyUsed(ClaimError):
    code = "tx_already_used"


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class ClaimConfirmation:
    """A user's report that they claimed their leaf in `epoch`."""
    epoch: int
    user_id: str
    wallet: str
    tx_sig: str

    def __post_init__(self):
        if not isinstance(self.epoch, int) or self.epoch < 1:
            raise ValueError("epoch must be a positive integer")
        if not self.user_id:
            raise ValueError("user_id is required")
        if not ADDRESS_RE.match(self.wallet or ""):
            raise ValueError(f"invalid wallet address {self.wallet!r}")
        if not SIGNATURE_RE.match(self.tx_sig or ""):
            raise ValueError("invalid transaction signature")


class ReconcileStatus(str, Enum):
    CONFIRMED = "confirmed"
    SETTLED_BY_RECEIPT = "settled_by_receipt"
    ALREADY_CLAIMED = "already_claimed"


@dataclass
class ClaimResult:
    status: ReconcileStatus
    epoch: int
    user_id: str
    tx_sig: str
    amount_atomic: int
    rows_updated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class RepairCandidate:
    epoch: int
    user_id: str
    reward_ids: List[int]
    receipt_address: Optional[str] = None
    receipt_exists: Optional[bool] = None
    action: str = "pending"
    error: Optional[str] = None


@dataclass
class RepairReport:
    dry_run: bool
    checked: int = 0
    reset_rows: int = 0
    unverifiable: List[int] = field(default_factory=list)
    candidates: List[RepairCandidate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class _LeafSnapshot:
    epoch: int
    published: bool
    amount_atomic: int
    user_key: bytes
    reward_ids: List[int]
    claimed_sigs: List[Optional[str]]
    wallet: Optional[str] = None

    @property
    def fully_claimed(self) -> bool:
        return bool(self.reward_ids) and len(self.claimed_sigs) == len(self.reward_ids)


# ============================================================================
# RECONCILER
# ============================================================================

class ClaimReconciler:
    """
    Confirms on-chain claims against the ledger.

    Args:
        store: Ledger store
        observer: Chain observer
        program_id: Claim program address
        vault_ata: Vault token account the program pays from
        mint: Token mint, used to derive the claimer's token account
    """

    def __init__(
        self,
        store: LedgerStore,
        observer: ChainObserver,
        program_id: str,
        vault_ata: str,
        mint: Optional[str] = None,
    ):
        if not program_id or not vault_ata:
            raise ValueError("program_id and vault_ata are required")
        self.store = store
        self.observer = observer
        self.program_id = program_id
        self.vault_ata = vault_ata
        self.mint = mint

    def _snapshot(self, epoch: int, user_id: str) -> Optional[_LeafSnapshot]:
        with self.store.session() as session:
            leaf = session.get(ClaimLeaf, (epoch, user_id))
            if leaf is None:
                return None
            epoch_row = session.get(ClaimEpoch, epoch)
            rows = session.execute(
                select(RewardEvent.id, RewardEvent.claimed_at, RewardEvent.tx_sig)
                .join(ClaimLeafReward, ClaimLeafReward.reward_event_id == RewardEvent.id)
                .where(ClaimLeafReward.epoch == epoch, ClaimLeafReward.user_id == user_id)
                .order_by(RewardEvent.id)
            ).all()
            return _LeafSnapshot(
                epoch=epoch,
                published=bool(epoch_row and epoch_row.set_on_chain),
                amount_atomic=leaf.amount_atomic,
                user_key=bytes.fromhex(leaf.user_key_hex),
                reward_ids=[r.id for r in rows],
                claimed_sigs=[r.tx_sig for r in rows if r.claimed_at is not None],
                wallet=leaf.wallet,
            )

    def confirm(self, confirmation: ClaimConfirmation) -> ClaimResult:
        """
        Record a claim once the chain proves it.

        Raises:
            ClaimError: A subclass naming the failure; check `.retryable`
        """
        epoch, user_id = confirmation.epoch, confirmation.user_id
        snapshot = self._snapshot(epoch, user_id)
        if snapshot is None:
            raise ClaimLeafNotFound(f"no leaf for {user_id} in epoch {epoch}",
                                    epoch=epoch, user_id=user_id)

        if snapshot.fully_claimed:
            existing = next((s for s in snapshot.claimed_sigs if s), confirmation.tx_sig)
            logger.debug(f"Claim {epoch}/{user_id} already recorded with {existing}")
            return ClaimResult(ReconcileStatus.ALREADY_CLAIMED, epoch, user_id,
                               existing, snapshot.amount_atomic)

        if not snapshot.published:
            raise EpochNotPublished(f"epoch {epoch} is not on-chain", epoch=epoch)
        if snapshot.wallet and snapshot.wallet != confirmation.wallet:
            raise WalletMismatch(
                f"wallet {confirmation.wallet} does not match the leaf wallet",
                epoch=epoch, user_id=user_id, wallet=confirmation.wallet,
            )
        with self.store.session() as session:
            self._ensure_signature_unused(session, confirmation, snapshot)

        try:
            receipt = self.observer.receipt_address(self.program_id, epoch, snapshot.user_key)
            account = self.observer.get_account(receipt)
        except ChainObserverError as e:
            raise ChainUnavailable(str(e)) from e

        if account is not None:
            if account.owner != self.program_id:
                raise WrongProgram(f"receipt {receipt} owned by {account.owner}",
                                   receipt=receipt, owner=account.owner)
            logger.info(f"Receipt {receipt} exists for {epoch}/{user_id}; settling")
            return self._settle(confirmation, snapshot, ReconcileStatus.SETTLED_BY_RECEIPT)

        self._verify_transaction(confirmation, snapshot, receipt)
        return self._settle(confirmation, snapshot, ReconcileStatus.CONFIRMED)

    @staticmethod
    def _ensure_signature_unused(
        session: Session, confirmation: ClaimConfirmation, snapshot: _LeafSnapshot
    ) -> None:
        """Raise TxAlreadyUsed when tx_sig settled rewards outside this leaf."""
        query = select(RewardEvent.id, RewardEvent.user_id).where(
            RewardEvent.tx_sig == confirmation.tx_sig
        )
        if snapshot.reward_ids:
            query = query.where(RewardEvent.id.not_in(snapshot.reward_ids))
        other = session.execute(query.limit(1)).first()
        if other is not None:
            logger.warning(
                f"Claim {snapshot.epoch}/{confirmation.user_id}: tx {confirmation.tx_sig} "
                f"already settled reward {other.id} of {other.user_id}"
            )
            raise TxAlreadyUsed(
                f"transaction {confirmation.tx_sig} was already used for another claim",
                tx_sig=confirmation.tx_sig,
            )

    def _verify_transaction(
        self, confirmation: ClaimConfirmation, snapshot: _LeafSnapshot, receipt: str
    ) -> None:
        try:
            tx = self.observer.get_transaction(confirmation.tx_sig)
            destination = (
                self.observer.token_account_address(confirmation.wallet, self.mint)
                if self.mint else None
            )
        except ChainObserverError as e:
            raise ChainUnavailable(str(e)) from e

        if tx is None:
            raise TransactionNotFound(f"transaction {confirmation.tx_sig} not found",
                                      tx_sig=confirmation.tx_sig)
        if tx.failed:
            raise TransactionFailed(f"transaction {confirmation.tx_sig} failed on-chain",
                                    tx_sig=confirmation.tx_sig)
        if not tx.invokes(self.program_id):
            raise WrongProgram(f"transaction {confirmation.tx_sig} does not invoke the claim program",
                               tx_sig=confirmation.tx_sig)
        if receipt not in tx.account_keys:
            raise TransactionNotForLeaf(
                f"transaction {confirmation.tx_sig} does not create receipt {receipt}",
                tx_sig=confirmation.tx_sig, receipt=receipt,
            )

        moved = tx.transferred(self.vault_ata, destination)
        if moved < snapshot.amount_atomic:
            logger.warning(
                f"Claim {snapshot.epoch}/{confirmation.user_id}: vault transfer {moved} "
                f"below leaf amount {snapshot.amount_atomic}"
            )
            raise TransferAmountMismatch(
                f"vault transferred {moved}, expected at least {snapshot.amount_atomic}",
                transferred=moved, expected=snapshot.amount_atomic,
            )

    def _settle(
        self, confirmation: ClaimConfirmation, snapshot: _LeafSnapshot, status: ReconcileStatus
    ) -> ClaimResult:
        with self.store.transaction() as session:
            self._ensure_signature_unused(session, confirmation, snapshot)
            updated = RewardLedgerWriter.mark_claimed(
                session, snapshot.reward_ids, confirmation.tx_sig
            )
            sigs = session.scalars(
                select(RewardEvent.tx_sig)
                .where(RewardEvent.id.in_(snapshot.reward_ids), RewardEvent.tx_sig.is_not(None))
                .order_by(RewardEvent.id)
            ).all()

        tx_sig = sigs[0] if sigs else confirmation.tx_sig
        if updated == 0:
            # Another confirmation won the race
            status = ReconcileStatus.ALREADY_CLAIMED
        logger.info(
            f"Claim {snapshot.epoch}/{confirmation.user_id} {status.value}: "
            f"{updated} row(s), tx {tx_sig}"
        )
        return ClaimResult(status, snapshot.epoch, confirmation.user_id, tx_sig,
                           snapshot.amount_atomic, updated)

    # ========================================================================
    # REPAIR
    # ========================================================================

    def repair_false_claims(
        self, user_id: Optional[str] = None, dry_run: bool = True, limit: int = 500
    ) -> RepairReport:
        """
        Reset claims that have no on-chain receipt.

        Only rows claimed with tx_sig NULL or "synced-from-onchain" are
        considered, and only when they belong to a leaf whose receipt can be
        checked. Nothing is written in dry-run mode.
        """
        report = RepairReport(dry_run=dry_run)
        groups: Dict[Tuple[int, str], RepairCandidate] = OrderedDict()
        keys: Dict[Tuple[int, str], bytes] = {}

        with self.store.session() as session:
            query = (
                select(RewardEvent.id, ClaimLeaf.epoch, ClaimLeaf.user_id, ClaimLeaf.user_key_hex)
                .outerjoin(ClaimLeafReward, ClaimLeafReward.reward_event_id == RewardEvent.id)
                .outerjoin(
                    ClaimLeaf,
                    (ClaimLeaf.epoch == ClaimLeafReward.epoch)
                    & (ClaimLeaf.user_id == ClaimLeafReward.user_id),
                )
                .where(
                    RewardEvent.claimed_at.is_not(None),
                    or_(RewardEvent.tx_sig.is_(None), RewardEvent.tx_sig == SYNCED_FROM_CHAIN_SIG),
                )
                .order_by(RewardEvent.id)
                .limit(limit)
            )
            if user_id:
                query = query.where(RewardEvent.user_id == user_id)
            rows = session.execute(query).all()

        for reward_id, epoch, leaf_user, user_key_hex in rows:
            if epoch is None:
                report.unverifiable.append(reward_id)
                continue
            key = (epoch, leaf_user)
            if key not in groups:
                groups[key] = RepairCandidate(epoch=epoch, user_id=leaf_user, reward_ids=[])
                keys[key] = bytes.fromhex(user_key_hex)
            groups[key].reward_ids.append(reward_id)

        if report.unverifiable:
            logger.warning(
                f"{len(report.unverifiable)} suspect claim(s) have no leaf and cannot be checked"
            )

        for key, candidate in groups.items():
            report.checked += 1
            try:
                candidate.receipt_address = self.observer.receipt_address(
                    self.program_id, candidate.epoch, keys[key]
                )
                candidate.receipt_exists = self.observer.account_exists(candidate.receipt_address)
            except ChainObserverError as e:
                candidate.action = "error"
                candidate.error = str(e)
                report.candidates.append(candidate)
                continue

            if candidate.receipt_exists:
                candidate.action = "keep"
            elif dry_run:
                candidate.action = "would_reset"
            else:
                with self.store.transaction() as session:
                    report.reset_rows += RewardLedgerWriter.reset_claims(
                        session, candidate.reward_ids
                    )
                candidate.action = "reset"
                logger.info(
                    f"Reset {len(candidate.reward_ids)} false claim row(s) for "
                    f"{candidate.user_id} in epoch {candidate.epoch}"
                )
            report.candidates.append(candidate)

        return report
