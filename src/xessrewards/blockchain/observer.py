"""
xessrewards/blockchain/observer.py

Read-only view of the chain used by epoch publication checks and claim
reconciliation. xessrewards never sends transactions; it only asks whether
accounts exist, fetches confirmed transactions and derives program
addresses.

Implementations:
- SolanaRpcObserver (xessrewards.blockchain.solana): JSON-RPC over HTTP
"""

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

from ..config import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    EPOCH_ROOT_DISCRIMINATOR_LEN,
    EPOCH_ROOT_SEED,
    RECEIPT_SEED,
    TOKEN_PROGRAM_ID,
)


class ChainObserverError(Exception):
    """Transport failure, timeout or RPC error while observing the chain."""
    pass


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class AccountInfo:
    """An on-chain account."""
    address: str
    owner: str
    data: bytes = b""
    lamports: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["data"] = self.data.hex()
        return data


@dataclass
class TokenTransfer:
    """One SPL token transfer instruction found in a transaction."""
    source: str
    destination: str
    amount: int
    authority: Optional[str] = None
    mint: Optional[str] = None


@dataclass
class ObservedTransaction:
    """The parts of a confirmed transaction reconciliation cares about."""
    signature: str
    failed: bool
    account_keys: List[str] = field(default_factory=list)
    program_ids: List[str] = field(default_factory=list)
    transfers: List[TokenTransfer] = field(default_factory=list)
    slot: Optional[int] = None

    def invokes(self, program_id: str) -> bool:
        return program_id in self.program_ids or program_id in self.account_keys

    def transferred(self, source: str, destination: Optional[str] = None) -> int:
        """Total amount moved out of `source` (optionally into `destination`)."""
        return sum(
            t.amount for t in self.transfers
            if t.source == source and (destination is None or t.destination == destination)
        )


@dataclass
class EpochRootAccount:
    epoch: int
    root: bytes

    @classmethod
    def parse(cls, data: bytes) -> "EpochRootAccount":
        """Decode discriminator | u64 epoch | root[32] (trailing bytes ignored)."""
        offset = EPOCH_ROOT_DISCRIMINATOR_LEN
        if len(data) < offset + 8 + 32:
            raise ValueError(f"epoch root account too short ({len(data)} bytes)")
        (epoch,) = struct.unpack_from("<Q", data, offset)
        root = bytes(data[offset + 8:offset + 40])
        return cls(epoch=epoch, root=root)


# ============================================================================
# OBSERVER INTERFACE
# ============================================================================

class ChainObserver(ABC):
    """Abstract read-only chain access."""

    @abstractmethod
    def get_account(self, address: str) -> Optional[AccountInfo]:
        """Account at `address`, or None if it does not exist."""
        pass

    @abstractmethod
    def get_transaction(self, signature: str) -> Optional[ObservedTransaction]:
        """Confirmed transaction by signature, or None if not (yet) found."""
        pass

    @abstractmethod
    def find_program_address(self, seeds: Sequence[bytes], program_id: str) -> str:
        """Deterministic program-derived address for `seeds`."""
        pass

    @abstractmethod
    def address_bytes(self, address: str) -> bytes:
        """Raw 32-byte public key of a base58 address."""
        pass

    def account_exists(self, address: str) -> bool:
        return self.get_account(address) is not None

    # ========================================================================
    # CLAIM PROGRAM ADDRESSING
    # ========================================================================

    def receipt_address(self, program_id: str, epoch: int, user_key: bytes) -> str:
        """Receipt account created by the program when a leaf is claimed."""
        return self.find_program_address(
            [RECEIPT_SEED, struct.pack("<Q", epoch), user_key], program_id
        )

    def epoch_root_address(self, program_id: str, epoch: int) -> str:
        return self.find_program_address(
            [EPOCH_ROOT_SEED, struct.pack("<Q", epoch)], program_id
        )

    def token_account_address(self, wallet: str, mint: str) -> str:
        """Associated token account of `wallet` for `mint`."""
        return self.find_program_address(
            [
                self.address_bytes(wallet),
                self.address_bytes(TOKEN_PROGRAM_ID),
                self.address_bytes(mint),
            ],
            ASSOCIATED_TOKEN_PROGRAM_ID,
        )
