"""Trial Assignment Resolver.

Per trial: two raw bytes (subject, decoy) and one freshly shuffled layout of
the symbol alphabet give two display indices::

    symbol = ALPHABET[byte % K]
    index  = layout.index(symbol)

The resolver is pure. It never sees participant input, so every logged trial
can be re-derived from the revealed tape and the logged layout order.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .errors import SEP_E_BAD_REQUEST, sep_error

ALPHABET: Tuple[str, ...] = ("circle", "plus", "waves", "square", "star")

_TWO_32 = 1 << 32


def rand_int(n: int, rand32: Optional[Callable[[], int]] = None) -> int:
    """Uniform integer in ``[0, n)`` by rejection sampling over 32-bit draws.

    Draws at or above the largest multiple of ``n`` below 2**32 are rejected,
    which removes modulo bias.
    """
    if n < 1:
        raise sep_error(SEP_E_BAD_REQUEST, "rand_int bound must be >= 1", n=n)
    draw = rand32 or (lambda: secrets.randbits(32))
    limit = (_TWO_32 // n) * n
    while True:
        x = draw()
        if not 0 <= x < _TWO_32:
            raise sep_error(SEP_E_BAD_REQUEST, "rand32 must return a 32-bit value", value=x)
        if x < limit:
            return x % n


@dataclass(frozen=True)
class SymbolLayout:
    """One on-screen order of the alphabet, used for exactly one trial."""

    symbols: Tuple[str, ...]

    def __post_init__(self) -> None:
        if len(set(self.symbols)) != len(self.symbols):
            raise sep_error(SEP_E_BAD_REQUEST, "layout symbols must be distinct", symbols=list(self.symbols))

    def index(self, symbol: str) -> int:
        try:
            return self.symbols.index(symbol)
        except ValueError:
            raise sep_error(SEP_E_BAD_REQUEST, f"symbol not in layout: {symbol}", symbols=list(self.symbols)) from None

    def __len__(self) -> int:
        return len(self.symbols)

    def to_list(self):
        return list(self.symbols)


def shuffle_layout(
    alphabet: Sequence[str] = ALPHABET,
    rand32: Optional[Callable[[], int]] = None,
) -> SymbolLayout:
    """Fisher-Yates over a copy of ``alphabet`` with unbiased ``rand_int``."""
    arr = list(alphabet)
    for i in range(len(arr) - 1, 0, -1):
        j = rand_int(i + 1, rand32)
        arr[i], arr[j] = arr[j], arr[i]
    return SymbolLayout(tuple(arr))


def identity_layout(alphabet: Sequence[str] = ALPHABET) -> SymbolLayout:
    return SymbolLayout(tuple(alphabet))


def symbol_for_byte(byte: int, alphabet: Sequence[str] = ALPHABET) -> str:
    if isinstance(byte, bool) or not isinstance(byte, int) or not 0 <= byte <= 255:
        raise sep_error(SEP_E_BAD_REQUEST, "raw byte must be an integer in 0..255", value=repr(byte))
    return alphabet[byte % len(alphabet)]


@dataclass(frozen=True)
class TrialAssignment:
    subject_byte: int
    decoy_byte: int
    subject_symbol: str
    decoy_symbol: str
    subject_index: int
    decoy_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_byte": self.subject_byte,
            "ghost_raw_byte": self.decoy_byte,
            "primary_symbol_id": self.subject_symbol,
            "ghost_symbol_id": self.decoy_symbol,
            "target_index_0based": self.subject_index,
            "ghost_index_0based": self.decoy_index,
        }


def resolve(
    subject_byte: int,
    decoy_byte: int,
    layout: SymbolLayout,
    alphabet: Sequence[str] = ALPHABET,
) -> TrialAssignment:
    """Map both bytes through the same layout instance.

    Equal bytes resolve to the same symbol and index; that is a valid trial.
    """
    if len(layout) != len(alphabet):
        raise sep_error(SEP_E_BAD_REQUEST, "layout size does not match alphabet", layout=len(layout), alphabet=len(alphabet))
    subject_symbol = symbol_for_byte(subject_byte, alphabet)
    decoy_symbol = symbol_for_byte(decoy_byte, alphabet)
    return TrialAssignment(
        subject_byte=subject_byte,
        decoy_byte=decoy_byte,
        subject_symbol=subject_symbol,
        decoy_symbol=decoy_symbol,
        subject_index=layout.index(subject_symbol),
        decoy_index=layout.index(decoy_symbol),
    )
