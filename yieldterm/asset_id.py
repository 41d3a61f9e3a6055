"""
asset_id.py - Term Asset Identifiers

Term shares live in the ShareLedger under flat integer ids. Inside the engine
they are handled as a tagged union so that the family of a share (unlocked,
locked to a maturity, or the yield variant used by collaborators) is explicit
and never re-derived from bit arithmetic scattered through the code.

Encoding (256-bit ids):
    Unlocked          -> 1 << 255
    Locked(m)         -> m                            (0 < m < 2**128)
    Yield(s, m)       -> 1 << 255 | s << 128 | m      (s > 0 or m > 0)

Id 0 is the underlying asset; any other integer is not a term id.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from .core import InvalidTerm, UNDERLYING_ID


YIELD_FLAG = 1 << 255
UNLOCKED_ID = YIELD_FLAG
TIME_BITS = 128
TIME_LIMIT = 1 << TIME_BITS
_TIME_MASK = TIME_LIMIT - 1
YIELD_START_LIMIT = 1 << (255 - TIME_BITS)


@dataclass(frozen=True, slots=True)
class Unlocked:
    """The continuously liquid share family."""

    def __repr__(self) -> str:
        return "Unlocked()"


@dataclass(frozen=True, slots=True)
class Locked:
    """A par-value share family backed by the vault shares of one maturity."""
    maturity: int

    def __post_init__(self):
        _check_time("maturity", self.maturity)
        if self.maturity == 0:
            raise InvalidTerm("Locked maturity must be positive")


@dataclass(frozen=True, slots=True)
class Yield:
    """Yield share for interest accrued on Locked(maturity) since start."""
    start: int
    maturity: int

    def __post_init__(self):
        _check_time("start", self.start)
        _check_time("maturity", self.maturity)
        # start shares the top word with the yield flag
        if self.start >= YIELD_START_LIMIT:
            raise InvalidTerm(f"start {self.start} overlaps the yield flag")
        if self.start == 0 and self.maturity == 0:
            raise InvalidTerm("Yield(0, 0) is the unlocked id")


AssetId = Union[Unlocked, Locked, Yield]


def _check_time(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidTerm(f"{name} must be an int timestamp, got {value!r}")
    if not 0 <= value < TIME_LIMIT:
        raise InvalidTerm(f"{name} {value} does not fit in {TIME_BITS} bits")


def encode_asset_id(asset: AssetId) -> int:
    """Pack a term asset into its flat ledger id."""
    if isinstance(asset, Unlocked):
        return UNLOCKED_ID
    if isinstance(asset, Locked):
        return asset.maturity
    if isinstance(asset, Yield):
        return YIELD_FLAG | (asset.start << TIME_BITS) | asset.maturity
    raise TypeError(f"not a term asset: {asset!r}")


def decode_asset_id(token_id: int) -> AssetId:
    """
    Unpack a flat ledger id into a term asset.

    Raises:
        InvalidTerm: for the underlying id, ids with bits outside the yield
            layout (such as a vault share id), and negative values.
    """
    if isinstance(token_id, bool) or not isinstance(token_id, int):
        raise InvalidTerm(f"asset id must be an int, got {token_id!r}")
    if token_id == UNDERLYING_ID:
        raise InvalidTerm("asset id 0 is the underlying, not a term share")
    if token_id < 0 or token_id >= (1 << 256):
        raise InvalidTerm(f"asset id {token_id} out of range")
    if token_id == UNLOCKED_ID:
        return Unlocked()
    if token_id & YIELD_FLAG:
        rest = token_id ^ YIELD_FLAG
        return Yield(rest >> TIME_BITS, rest & _TIME_MASK)
    if token_id >= TIME_LIMIT:
        raise InvalidTerm(f"asset id {token_id:#x} is not a term share")
    return Locked(token_id)


def is_term_id(token_id: int) -> bool:
    """True if the id decodes to a term asset."""
    try:
        decode_asset_id(token_id)
    except InvalidTerm:
        return False
    return True


def _format_time(value: int) -> str:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y%m%d")
    except (OverflowError, ValueError, OSError):
        return str(value)


def asset_symbol(asset: AssetId) -> str:
    """
    Short display symbol for a term asset.

    >>> asset_symbol(Locked(1735689600))
    'PT-20250101'
    """
    if isinstance(asset, Unlocked):
        return "UT"
    if isinstance(asset, Locked):
        return f"PT-{_format_time(asset.maturity)}"
    if isinstance(asset, Yield):
        return f"YT-{_format_time(asset.start)}-{_format_time(asset.maturity)}"
    raise TypeError(f"not a term asset: {asset!r}")


def asset_name(asset: AssetId) -> str:
    """Human-readable name for a term asset."""
    if isinstance(asset, Unlocked):
        return "Unlocked Term Share"
    if isinstance(asset, Locked):
        return f"Locked Term Share maturing {_format_time(asset.maturity)}"
    return f"Yield Share {_format_time(asset.start)} to {_format_time(asset.maturity)}"
