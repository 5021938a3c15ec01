"""
xessrewards/amounts.py

Fixed-point token amounts.

Every monetary value is an integer count of atomic units tagged with its
decimal scale. Ledger rows use 6 decimals, the on-chain mint uses 9; moving
between the two is an explicit, exact operation.

Usage:
    from xessrewards.amounts import FixedAmount

    pool = FixedAmount.from_tokens(666_667).mul_bps(7_500)
    str(pool)                    # "500000.250000"
    pool.rescale(9).atomic       # 500000250000000
"""

from dataclasses import dataclass
from functools import total_ordering
from typing import Union

from .config import BPS_DENOMINATOR, LEDGER_DECIMALS, MINT_DECIMALS


class ScaleError(ValueError):
    """Raised when amounts of different scales are mixed or precision would be lost."""
    pass


@total_ordering
@dataclass(frozen=True)
class FixedAmount:
    """An integer amount of atomic units at a fixed decimal scale."""
    atomic: int
    decimals: int = LEDGER_DECIMALS

    def __post_init__(self):
        if not isinstance(self.atomic, int) or isinstance(self.atomic, bool):
            raise TypeError(f"atomic must be int, got {type(self.atomic).__name__}")
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")

    @classmethod
    def from_tokens(cls, tokens: int, decimals: int = LEDGER_DECIMALS) -> "FixedAmount":
        """Create from a whole number of tokens."""
        return cls(int(tokens) * 10 ** decimals, decimals)

    @classmethod
    def zero(cls, decimals: int = LEDGER_DECIMALS) -> "FixedAmount":
        return cls(0, decimals)

    def rescale(self, decimals: int) -> "FixedAmount":
        """
        Convert to another decimal scale.

        Scaling up is always exact. Scaling down raises ScaleError unless
        the dropped digits are zero.
        """
        if decimals == self.decimals:
            return self
        if decimals > self.decimals:
            return FixedAmount(self.atomic * 10 ** (decimals - self.decimals), decimals)
        factor = 10 ** (self.decimals - decimals)
        if self.atomic % factor:
            raise ScaleError(
                f"{self} cannot be represented with {decimals} decimals"
            )
        return FixedAmount(self.atomic // factor, decimals)

    def to_mint(self) -> "FixedAmount":
        """Ledger (6 dp) -> on-chain mint (9 dp)."""
        return self.rescale(MINT_DECIMALS)

    def mul_ratio(self, numerator: int, denominator: int) -> "FixedAmount":
        """floor(self * numerator / denominator), same scale."""
        if denominator <= 0:
            raise ValueError("denominator must be positive")
        return FixedAmount(self.atomic * numerator // denominator, self.decimals)

    def mul_bps(self, bps: int) -> "FixedAmount":
        return self.mul_ratio(bps, BPS_DENOMINATOR)

    def _check(self, other: "FixedAmount") -> None:
        if not isinstance(other, FixedAmount):
            raise TypeError(f"cannot combine FixedAmount with {type(other).__name__}")
        if other.decimals != self.decimals:
            raise ScaleError(
                f"scale mismatch: {self.decimals} vs {other.decimals} decimals"
            )

    def __add__(self, other: "FixedAmount") -> "FixedAmount":
        self._check(other)
        return FixedAmount(self.atomic + other.atomic, self.decimals)

    def __sub__(self, other: "FixedAmount") -> "FixedAmount":
        self._check(other)
        return FixedAmount(self.atomic - other.atomic, self.decimals)

    def __lt__(self, other: "FixedAmount") -> bool:
        self._check(other)
        return self.atomic < other.atomic

    def __bool__(self) -> bool:
        return self.atomic != 0

    def __str__(self) -> str:
        if self.decimals == 0:
            return str(self.atomic)
        sign = "-" if self.atomic < 0 else ""
        whole, frac = divmod(abs(self.atomic), 10 ** self.decimals)
        return f"{sign}{whole}.{frac:0{self.decimals}d}"


def to_fixed(value: Union[int, FixedAmount], decimals: int = LEDGER_DECIMALS) -> FixedAmount:
    """Wrap a raw atomic int (assumed to be at `decimals`) or pass through."""
    if isinstance(value, FixedAmount):
        return value.rescale(decimals)
    return FixedAmount(value, decimals)
