"""
xessrewards/blockchain/

Merkle trees for claim epochs and read-only chain observation.
SolanaRpcObserver lives in xessrewards.blockchain.solana.
"""

from .merkle import (
    MerkleTree,
    MerkleError,
    keccak256,
    user_key_for,
    encode_leaf,
    leaf_hash,
    verify_proof,
    verify_proof_hex,
)
from .observer import (
    ChainObserver,
    ChainObserverError,
    AccountInfo,
    ObservedTransaction,
    TokenTransfer,
    EpochRootAccount,
)

__all__ = [
    "MerkleTree",
    "MerkleError",
    "keccak256",
    "user_key_for",
    "encode_leaf",
    "leaf_hash",
    "verify_proof",
    "verify_proof_hex",
    "ChainObserver",
    "ChainObserverError",
    "AccountInfo",
    "ObservedTransaction",
    "TokenTransfer",
    "EpochRootAccount",
]
