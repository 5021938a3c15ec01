"""
xessrewards/config.py

Configuration constants and data classes for xessrewards.

Constants describe the reward economy (emission phases, pool weights, rank
ladder, referral levels) and the claim program's addressing scheme.
RewardsConfig carries the deployment-specific values and is loaded from
XESS_* environment variables by jobs and the CLI.
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("xessrewards.config")


# ============================================================================
# FIXED POINT
# ============================================================================

# Ledger amounts (reward_events.amount) use 6 decimals
LEDGER_DECIMALS = 6

# The on-chain token mint uses 9 decimals
MINT_DECIMALS = 9

# Basis points denominator (1 bps = 1/10000)
BPS_DENOMINATOR = 10_000


# ============================================================================
# EMISSION
# ============================================================================

# (first week index NOT covered, whole tokens per week), in order.
# The last phase has no upper bound.
EMISSION_PHASES: List[Tuple[Optional[int], int]] = [
    (12, 666_667),
    (39, 500_000),
    (78, 333_333),
    (None, 166_667),
]

# Week 0 starts on this Monday (UTC); week keys are Monday dates
GENESIS_WEEK_KEY = "2026-01-19"

# Content pools share the weekly emission
CONTENT_POOL_WEIGHTS: Dict[str, int] = {
    "xessex": 6_900,
    "embed": 3_100,
}

# Each content pool is split into reward categories
CATEGORY_WEIGHTS: Dict[str, int] = {
    "likes": 7_500,
    "mvm": 1_500,
    "comments": 500,
    "referrals": 500,
}


# ============================================================================
# RANK LADDER
# ============================================================================

# Ladder shares are expressed in tenths of a basis point so that
# ranks 11-50 (0.625% each) stay integral.
LADDER_DENOMINATOR = 100_000

LADDER_MAX_RANK = 50

# rank -> share of pool (units of 1/LADDER_DENOMINATOR)
LADDER_SHARES: Dict[int, int] = {
    1: 20_000,
    2: 12_000,
    3: 8_000,
    **{rank: 5_000 for rank in range(4, 11)},
    **{rank: 625 for rank in range(11, LADDER_MAX_RANK + 1)},
}


# ============================================================================
# REFERRALS
# ============================================================================

# Share of the referred user's earned amount, per level (bps)
REFERRAL_LEVEL_BPS: Dict[int, int] = {
    1: 1_000,
    2: 600,
    3: 400,
}

REFERRAL_MAX_DEPTH = 3

# Parts-per-million scale used when referral rewards exceed their budget
REFERRAL_SCALE_PPM = 1_000_000


# ============================================================================
# CLAIM PROGRAM
# ============================================================================

RECEIPT_SEED = b"receipt_v2"
EPOCH_ROOT_SEED = b"epoch_root"
CONFIG_SEED = b"config"
VAULT_AUTHORITY_SEED = b"vault_authority"

# Epoch root account layout: discriminator | u64 epoch | root
EPOCH_ROOT_DISCRIMINATOR_LEN = 8

# Stop scanning on-chain epoch roots after this many consecutive gaps
EPOCH_SCAN_MAX_GAPS = 10

# Advisory lock key shared by every epoch build
EPOCH_BUILD_LOCK_KEY = 9_100_000_000_000_001
EPOCH_BUILD_LOCK_NAME = "claim-epoch-build"

# tx_sig written by legacy on-chain sync jobs; such rows are repair candidates
SYNCED_FROM_CHAIN_SIG = "synced-from-onchain"

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"


# ============================================================================
# JOBS
# ============================================================================

# A RUNNING batch older than this is treated as crashed
STALE_BATCH_MINUTES = 30

# Timeout for each chain RPC request (seconds)
RPC_TIMEOUT_SECONDS = 10.0


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad values."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


@dataclass
class RewardsConfig:
    """Deployment settings for reward jobs."""
    database_url: str = "sqlite:///xessrewards.db"
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    rpc_timeout: float = RPC_TIMEOUT_SECONDS
    claim_program_id: str = ""
    mint: str = ""
    vault_ata: str = ""
    referral_level_bps: Dict[int, int] = field(
        default_factory=lambda: dict(REFERRAL_LEVEL_BPS)
    )
    # 0 disables provisional (PENDING) rewards
    provisional_threshold_atomic: int = 0
    stale_batch_minutes: int = STALE_BATCH_MINUTES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_env(cls) -> "RewardsConfig":
        """Build config from XESS_* environment variables."""
        defaults = cls()
        return cls(
            database_url=os.environ.get("XESS_DATABASE_URL", defaults.database_url),
            rpc_url=os.environ.get("XESS_RPC_URL", defaults.rpc_url),
            rpc_timeout=_env_float("XESS_RPC_TIMEOUT", defaults.rpc_timeout),
            claim_program_id=os.environ.get("XESS_CLAIM_PROGRAM_ID", ""),
            mint=os.environ.get("XESS_MINT", ""),
            vault_ata=os.environ.get("XESS_VAULT_ATA", ""),
            referral_level_bps={
                level: _env_int(f"XESS_REF_L{level}_BPS", bps)
                for level, bps in REFERRAL_LEVEL_BPS.items()
            },
            provisional_threshold_atomic=_env_int(
                "XESS_PROVISIONAL_THRESHOLD_ATOMIC", 0
            ),
            stale_batch_minutes=_env_int(
                "XESS_STALE_BATCH_MINUTES", STALE_BATCH_MINUTES
            ),
        )
