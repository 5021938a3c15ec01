"""
xessrewards/cli.py

Command line entry points. Each command is one short-lived job; results
are printed as JSON.

Exit codes:
    0   success, or a benign skip (lock busy, already processed, no claimables)
    1   permanent failure (bad input, integrity violation, rejected claim)
    75  retryable failure (transaction not found yet, RPC unavailable)

Usage:
    xessrewards distribute --week-key 2026-02-02
    xessrewards build-epoch --week-key 2026-02-02
    xessrewards mark-published 7 --tx-sig <sig>
    xessrewards confirm-claim --epoch 7 --user-id u1 --wallet <addr> --tx-sig <sig>
"""

import json
import logging
import sys
from typing import Any

import click

from .config import RewardsConfig
from .ledger.store import LedgerStore
from .ledger.writer import RewardLedgerWriter
from .protocol.emission import plan_week
from .protocol.epoch_builder import (
    ALL_WEEKS,
    BuildRequest,
    ClaimEpochBuilder,
    EpochPublishedError,
    EpochVerificationError,
)
from .protocol.reconciliation import ClaimConfirmation, ClaimError, ClaimReconciler
from .protocol.weekly import DistributionRequest, WeeklyDistributor

logger = logging.getLogger("xessrewards.cli")

EXIT_FAILURE = 1
EXIT_RETRYABLE = 75


class JobContext:
    """Config plus lazily created store/observer for one invocation."""

    def __init__(self, config: RewardsConfig):
        self.config = config
        self._store = None
        self._observer = None

    @property
    def store(self) -> LedgerStore:
        if self._store is None:
            self._store = LedgerStore(
                self.config.database_url, lock_stale_minutes=self.config.stale_batch_minutes
            )
        return self._store

    @property
    def observer(self):
        if self._observer is None:
            from .blockchain.solana import SolanaRpcObserver
            self._observer = SolanaRpcObserver(self.config.rpc_url, timeout=self.config.rpc_timeout)
        return self._observer

    def builder(self) -> ClaimEpochBuilder:
        program_id = self.config.claim_program_id or None
        observer = self.observer if program_id else None
        return ClaimEpochBuilder(self.store, observer, program_id)


def emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def fail(message: str, code: int = EXIT_FAILURE, **details) -> None:
    emit({"ok": False, "error": message, **details})
    sys.exit(code)


@click.group()
@click.option("--database-url", envvar="XESS_DATABASE_URL", default=None,
              help="SQLAlchemy database URL (default from XESS_DATABASE_URL)")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, database_url: str, log_level: str):
    """Weekly rewards and merkle claim epochs."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = RewardsConfig.from_env()
    if database_url:
        config.database_url = database_url
    ctx.obj = JobContext(config)


@main.command("init-db")
@click.pass_obj
def init_db(job: JobContext):
    """Create missing ledger tables."""
    job.store.create_schema()
    emit({"ok": True})


@main.command()
@click.argument("week_index", type=int)
def emission(week_index: int):
    """Show the emission plan for a week index."""
    emit(plan_week(week_index).to_dict())


@main.command()
@click.option("--week-key", required=True, help="Monday date, YYYY-MM-DD")
@click.option("--week-index", type=int, default=None, help="Override the index derived from genesis")
@click.option("--force", is_flag=True, help="Re-run a week already marked done")
@click.pass_obj
def distribute(job: JobContext, week_key: str, week_index: int, force: bool):
    """Run the weekly distribution."""
    try:
        request = DistributionRequest(week_key=week_key, week_index=week_index, force=force)
        outcome = WeeklyDistributor(job.store, job.config).run(request)
    except ValueError as e:
        fail(str(e))
    except EpochPublishedError as e:
        fail(str(e), reason="epoch_published")
    emit({"ok": True, **outcome.to_dict()})


@main.command("build-epoch")
@click.option("--week-key", default=ALL_WEEKS, show_default=True,
              help=f"Monday date, or '{ALL_WEEKS}' for every outstanding week")
@click.option("--epoch", type=int, default=None, help="Explicit epoch number for a new epoch")
@click.option("--version", "version", type=int, default=2, show_default=True)
@click.pass_obj
def build_epoch(job: JobContext, week_key: str, epoch: int, version: int):
    """Build or rebuild a claim epoch."""
    try:
        request = BuildRequest(week_key=week_key, version=version, epoch=epoch)
        outcome = job.builder().build(request)
    except ValueError as e:
        fail(str(e))
    except EpochPublishedError as e:
        fail(str(e), reason="epoch_published")
    emit({"ok": True, **outcome.to_dict()})


@main.command("mark-published")
@click.argument("epoch", type=int)
@click.option("--tx-sig", default=None, help="Signature of the set-root transaction")
@click.option("--no-verify", is_flag=True, help="Skip the on-chain root check")
@click.pass_obj
def mark_published(job: JobContext, epoch: int, tx_sig: str, no_verify: bool):
    """Mark an epoch as published after its root is on-chain."""
    try:
        result = job.builder().mark_epoch_published(epoch, tx_sig=tx_sig, verify=not no_verify)
    except LookupError as e:
        fail(str(e))
    except EpochVerificationError as e:
        fail(str(e), reason="verification_failed")
    emit({"ok": True, **result})


@main.command()
@click.pass_obj
def unpublished(job: JobContext):
    """List epochs waiting for their root to be set on-chain."""
    emit({"ok": True, "epochs": job.builder().list_unpublished()})


@main.command()
@click.argument("epoch", type=int)
@click.argument("user_id")
@click.pass_obj
def proof(job: JobContext, epoch: int, user_id: str):
    """Show a user's claim proof."""
    claim = job.builder().get_claim_proof(epoch, user_id)
    if claim is None:
        fail(f"no leaf for {user_id} in epoch {epoch}", reason="claim_leaf_not_found")
    emit({"ok": True, **claim.to_dict()})


def _reconciler(job: JobContext) -> ClaimReconciler:
    config = job.config
    return ClaimReconciler(
        job.store, job.observer, config.claim_program_id, config.vault_ata, config.mint or None
    )


@main.command("confirm-claim")
@click.option("--epoch", type=int, required=True)
@click.option("--user-id", required=True)
@click.option("--wallet", required=True)
@click.option("--tx-sig", required=True)
@click.pass_obj
def confirm_claim(job: JobContext, epoch: int, user_id: str, wallet: str, tx_sig: str):
    """Reconcile an on-chain claim into the ledger."""
    try:
        confirmation = ClaimConfirmation(epoch=epoch, user_id=user_id, wallet=wallet, tx_sig=tx_sig)
        result = _reconciler(job).confirm(confirmation)
    except ValueError as e:
        fail(str(e))
    except ClaimError as e:
        emit({"ok": False, **e.to_dict()})
        sys.exit(EXIT_RETRYABLE if e.retryable else EXIT_FAILURE)
    emit({"ok": True, **result.to_dict()})


@main.command("repair-claims")
@click.option("--user-id", default=None)
@click.option("--apply", "apply_changes", is_flag=True, help="Write changes (default is a dry run)")
@click.pass_obj
def repair_claims(job: JobContext, user_id: str, apply_changes: bool):
    """Reset claims that have no on-chain receipt."""
    report = _reconciler(job).repair_false_claims(user_id=user_id, dry_run=not apply_changes)
    emit({"ok": True, **report.to_dict()})


@main.command("approve-provisional")
@click.argument("ref_ids", nargs=-1)
@click.option("--ref-type", default=None)
@click.option("--list", "list_only", is_flag=True, help="Only list pending rewards")
@click.pass_obj
def approve_provisional(job: JobContext, ref_ids, ref_type: str, list_only: bool):
    """Approve provisional (PENDING) rewards."""
    writer = RewardLedgerWriter(job.store, job.config.provisional_threshold_atomic)
    if list_only or not ref_ids:
        emit({"ok": True, "pending": [r.to_dict() for r in writer.list_provisional()]})
        return
    emit({"ok": True, "approved": writer.approve_provisional(list(ref_ids), ref_type)})


if __name__ == "__main__":
    main()
