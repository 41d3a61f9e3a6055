"""
reserve.py - Reserve State and Share Pricing

Pure functions and immutable state for the pooled (Unlocked) reserve and the
share-pricing rules shared by deposits, withdrawals and conversions.

Rounding policy: every amount computed here rounds DOWN, so the pool never
pays out or issues more than it holds. The single exception lives in the
vault's reverse quote (preview_withdraw), which rounds up so a shortfall is
always covered.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Tuple

from .core import (
    InsufficientReserve, ZERO,
    mul_div_down, to_amount,
)


@dataclass(frozen=True, slots=True)
class ReserveBand:
    """
    Rebalancing band for the idle reserve.

    Once a deposit lifts the reserve above maximum, everything above target is
    swept into the vault.
    """
    target: Decimal
    maximum: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'target', to_amount(self.target))
        object.__setattr__(self, 'maximum', to_amount(self.maximum))
        if self.target < 0:
            raise ValueError(f"target_reserve must be non-negative, got {self.target}")
        if self.target > self.maximum:
            raise ValueError(
                f"target_reserve {self.target} exceeds max_reserve {self.maximum}"
            )

    @classmethod
    def from_max(cls, maximum) -> ReserveBand:
        """Band whose target is half the ceiling."""
        maximum = to_amount(maximum)
        return cls(target=maximum / 2, maximum=maximum)


@dataclass(frozen=True, slots=True)
class ReserveState:
    """Backing of the Unlocked family: idle underlying plus vault shares."""
    underlying_reserve: Decimal = ZERO
    vault_share_reserve: Decimal = ZERO

    def adjust(self, underlying: Decimal = ZERO, vault_shares: Decimal = ZERO) -> ReserveState:
        """Return a new state with the deltas applied. Neither side may go negative."""
        new_underlying = self.underlying_reserve + underlying
        new_shares = self.vault_share_reserve + vault_shares
        if new_underlying < 0 or new_shares < 0:
            raise InsufficientReserve(
                f"reserve cannot go negative: underlying {new_underlying}, vault shares {new_shares}"
            )
        return replace(self, underlying_reserve=new_underlying, vault_share_reserve=new_shares)


def shares_for_value(value_in: Decimal, supply: Decimal, total_value: Decimal) -> Decimal:
    """
    Shares of a pooled family issued for value_in of underlying.

    Args:
        value_in: Underlying value entering the family
        supply: Family supply before the deposit
        total_value: Family value before the deposit

    Returns:
        value_in when the family is empty, else value_in * supply / total_value

    Raises:
        InsufficientReserve: If shares are outstanding but back nothing
    """
    if supply == 0:
        return value_in
    if total_value == 0:
        raise InsufficientReserve(
            f"{supply} shares outstanding against zero value; cannot price a deposit"
        )
    return mul_div_down(value_in, supply, total_value)


def value_of_shares(amount: Decimal, supply: Decimal, total_value: Decimal) -> Decimal:
    """
    Underlying value of amount shares of a pooled family.

    Raises:
        InsufficientReserve: If the family has no supply, or amount exceeds it
    """
    if supply == 0:
        raise InsufficientReserve("family has no outstanding shares")
    value = mul_div_down(amount, total_value, supply)
    if value > total_value:
        raise InsufficientReserve(
            f"{amount} shares are worth {value}, family holds only {total_value}"
        )
    return value


def attributed_slice(amount: Decimal, attributed: Decimal, supply: Decimal) -> Decimal:
    """
    Vault shares backing amount shares of a Locked family: amount * attributed / supply.

    Callers decide which error an empty or overdrawn attribution maps to, so
    this returns the raw slice and lets them compare it with attributed.
    """
    if supply == 0:
        return ZERO
    return mul_div_down(amount, attributed, supply)


def split_payment(due: Decimal, underlying_reserve: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Split an amount due into (paid from reserve, shortfall to redeem from the vault).

    >>> split_payment(Decimal("30"), Decimal("25"))
    (Decimal('25'), Decimal('5'))
    """
    from_reserve = min(due, underlying_reserve)
    return from_reserve, due - from_reserve


def sweep_excess(state: ReserveState, band: ReserveBand) -> Decimal:
    """
    Underlying to move into the vault after a deposit.

    Zero unless the reserve is strictly above the band maximum, in which case
    the reserve is brought back down to the target.
    """
    if state.underlying_reserve > band.maximum:
        return state.underlying_reserve - band.target
    return ZERO
