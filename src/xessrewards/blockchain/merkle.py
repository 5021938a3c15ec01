"""
xessrewards/blockchain/merkle.py

Keccak-256 merkle trees for claim epochs.

Leaf encoding (fixed width, little endian):

    leaf = keccak256(user_key[32] || u64(epoch) || u64(amount) || u32(index) || salt[32])

Tree rule: parent = keccak256(left || right). A layer with an odd number of
nodes pairs its last node with itself. A proof lists one sibling per layer
from the leaf upwards; the leaf index decides left/right at each layer.
A single-leaf tree has the leaf as root and an empty proof.
"""

import struct
from typing import List, Sequence

from Crypto.Hash import keccak

USER_KEY_LEN = 32
SALT_LEN = 32
HASH_LEN = 32

U64_MAX = 2 ** 64 - 1
U32_MAX = 2 ** 32 - 1


class MerkleError(ValueError):
    pass


def keccak256(data: bytes) -> bytes:
    """Keccak-256 (the pre-standard SHA-3 padding used on-chain)."""
    return keccak.new(digest_bits=256, data=data).digest()


def user_key_for(user_id: str) -> bytes:
    """Stable 32-byte key committed in a user's leaf."""
    return keccak256(user_id.encode("utf-8"))


def encode_leaf(user_key: bytes, epoch: int, amount: int, index: int, salt: bytes) -> bytes:
    """Fixed-field leaf preimage (108 bytes)."""
    if len(user_key) != USER_KEY_LEN:
        raise MerkleError(f"user key must be {USER_KEY_LEN} bytes")
    if len(salt) != SALT_LEN:
        raise MerkleError(f"salt must be {SALT_LEN} bytes")
    if not 0 <= epoch <= U64_MAX or not 0 <= amount <= U64_MAX:
        raise MerkleError("epoch and amount must fit in u64")
    if not 0 <= index <= U32_MAX:
        raise MerkleError("index must fit in u32")
    return user_key + struct.pack("<QQI", epoch, amount, index) + salt


def leaf_hash(user_key: bytes, epoch: int, amount: int, index: int, salt: bytes) -> bytes:
    return keccak256(encode_leaf(user_key, epoch, amount, index, salt))


def hash_pair(left: bytes, right: bytes) -> bytes:
    return keccak256(left + right)


class MerkleTree:
    """
    Build a merkle tree over leaf hashes and produce proofs.

    Args:
        leaves: Leaf hashes (32 bytes each) in tree order
    """

    def __init__(self, leaves: Sequence[bytes]):
        if not leaves:
            raise MerkleError("a merkle tree needs at least one leaf")
        for leaf in leaves:
            if len(leaf) != HASH_LEN:
                raise MerkleError("leaf hashes must be 32 bytes")
        self.layers: List[List[bytes]] = [list(leaves)]
        self._build()

    def _build(self) -> None:
        current = self.layers[0]
        while len(current) > 1:
            next_level = []
            for i in range(0, len(current), 2):
                left = current[i]
                # Odd layer: last node pairs with itself
                right = current[i + 1] if i + 1 < len(current) else left
                next_level.append(hash_pair(left, right))
            self.layers.append(next_level)
            current = next_level

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    def __len__(self) -> int:
        return len(self.layers[0])

    def get_proof(self, index: int) -> List[bytes]:
        """Sibling hashes from leaf layer to just below the root."""
        if not 0 <= index < len(self):
            raise MerkleError(f"leaf index {index} out of range")
        proof = []
        idx = index
        for layer in self.layers[:-1]:
            sibling = idx + 1 if idx % 2 == 0 else idx - 1
            proof.append(layer[sibling] if sibling < len(layer) else layer[idx])
            idx //= 2
        return proof

    def get_proof_hex(self, index: int) -> List[str]:
        return [node.hex() for node in self.get_proof(index)]


def verify_proof(leaf: bytes, index: int, proof: Sequence[bytes], root: bytes) -> bool:
    """Walk `proof` from `leaf` at position `index` and compare with `root`."""
    current = leaf
    idx = index
    for sibling in proof:
        if len(sibling) != HASH_LEN:
            return False
        if idx % 2 == 0:
            current = hash_pair(current, sibling)
        else:
            current = hash_pair(sibling, current)
        idx //= 2
    return idx == 0 and current == root


def verify_proof_hex(leaf_hex: str, index: int, proof_hex: Sequence[str], root_hex: str) -> bool:
    try:
        return verify_proof(
            bytes.fromhex(leaf_hex),
            index,
            [bytes.fromhex(p) for p in proof_hex],
            bytes.fromhex(root_hex),
        )
    except ValueError:
        return False
