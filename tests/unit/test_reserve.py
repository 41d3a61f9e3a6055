"""
test_reserve.py - Unit tests for reserve state and pricing functions
"""

import pytest
from decimal import Decimal

from yieldterm import ReserveBand, ReserveState, InsufficientReserve
from yieldterm.reserve import (
    shares_for_value, value_of_shares, attributed_slice, split_payment, sweep_excess,
)


class TestReserveBand:

    def test_from_max_halves(self):
        band = ReserveBand.from_max(Decimal("50000"))
        assert band.target == Decimal("25000")
        assert band.maximum == Decimal("50000")

    def test_target_above_max(self):
        with pytest.raises(ValueError, match="exceeds"):
            ReserveBand(Decimal("2"), Decimal("1"))

    def test_negative_target(self):
        with pytest.raises(ValueError):
            ReserveBand(Decimal("-1"), Decimal("1"))

    def test_coerces_to_decimal(self):
        band = ReserveBand(10, 20)
        assert band.target == Decimal("10")


class TestReserveState:

    def test_starts_empty(self):
        state = ReserveState()
        assert state.underlying_reserve == 0
        assert state.vault_share_reserve == 0

    def test_adjust_returns_new_state(self):
        state = ReserveState()
        new = state.adjust(Decimal("5"), Decimal("3"))
        assert new == ReserveState(Decimal("5"), Decimal("3"))
        assert state == ReserveState()

    def test_cannot_go_negative(self):
        with pytest.raises(InsufficientReserve):
            ReserveState().adjust(vault_shares=Decimal("-1"))


class TestPricing:

    def test_empty_family_mints_one_to_one(self):
        assert shares_for_value(Decimal("10"), Decimal("0"), Decimal("0")) == Decimal("10")

    def test_proportional_mint(self):
        assert shares_for_value(Decimal("10750"), Decimal("100000"), Decimal("107500")) == Decimal("10000")

    def test_mint_rounds_down(self):
        assert shares_for_value(Decimal("1"), Decimal("1"), Decimal("3")) == Decimal("0.333333333333333333")

    def test_worthless_family_cannot_price(self):
        with pytest.raises(InsufficientReserve):
            shares_for_value(Decimal("1"), Decimal("5"), Decimal("0"))

    def test_value_of_shares(self):
        assert value_of_shares(Decimal("30000"), Decimal("100000"), Decimal("100000")) == Decimal("30000")

    def test_value_over_total(self):
        with pytest.raises(InsufficientReserve):
            value_of_shares(Decimal("11"), Decimal("10"), Decimal("10"))

    def test_value_of_empty_family(self):
        with pytest.raises(InsufficientReserve):
            value_of_shares(Decimal("1"), Decimal("0"), Decimal("0"))

    def test_attributed_slice(self):
        assert attributed_slice(Decimal("500"), Decimal("900"), Decimal("1000")) == Decimal("450")
        assert attributed_slice(Decimal("500"), Decimal("900"), Decimal("0")) == Decimal("0")


class TestRebalancing:

    def test_split_within_reserve(self):
        assert split_payment(Decimal("10"), Decimal("25")) == (Decimal("10"), Decimal("0"))

    def test_split_with_shortfall(self):
        assert split_payment(Decimal("30"), Decimal("25")) == (Decimal("25"), Decimal("5"))

    def test_sweep_only_above_max(self):
        band = ReserveBand(Decimal("25000"), Decimal("50000"))
        assert sweep_excess(ReserveState(Decimal("50000")), band) == Decimal("0")
        assert sweep_excess(ReserveState(Decimal("100000")), band) == Decimal("75000")
