"""
Round Trip Conformance Tests

INVARIANT: Depositing x and immediately withdrawing everything it bought
returns at most x, and at most rounding dust less than x.

    x - DUST <= paid <= x

holds whether the shares were held Unlocked, Locked, or converted between
families on the way.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from yieldterm import UNDERLYING_ID, UNLOCKED_ID, VaultError, check_engine_books

from tests.pool import NOW, MATURITY, LATER_MATURITY, USER_BALANCE, build_pool


DUST = Decimal("1e-12")

deposits = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("500000"),
    places=6,
    allow_nan=False,
    allow_infinity=False,
)


def assert_close_below(paid, deposit):
    assert paid <= deposit
    assert deposit - paid < DUST


class TestRoundTripProperties:

    @given(deposits)
    @settings(max_examples=50, deadline=None)
    def test_unlocked(self, deposit):
        pool = build_pool()
        minted = pool.engine.lock("alice", [], [], deposit, "alice", 0, 0)
        paid = pool.engine.unlock("alice", "alice", [UNLOCKED_ID], [minted])
        assert_close_below(paid, deposit)
        assert check_engine_books(pool.engine)['valid']

    @given(deposits, st.sampled_from([MATURITY, LATER_MATURITY]))
    @settings(max_examples=50, deadline=None)
    def test_locked(self, deposit, maturity):
        pool = build_pool()
        minted = pool.engine.lock("alice", [], [], deposit, "alice", NOW, maturity)
        assert minted == deposit
        paid = pool.engine.unlock("alice", "alice", [maturity], [minted])
        assert_close_below(paid, deposit)

    @given(deposits)
    @settings(max_examples=30, deadline=None)
    def test_through_conversions(self, deposit):
        pool = build_pool()
        engine = pool.engine
        unlocked = engine.lock("alice", [], [], deposit, "alice", 0, 0)
        locked = engine.lock("alice", [UNLOCKED_ID], [unlocked], 0, "alice", NOW, MATURITY)
        rolled = engine.lock("alice", [MATURITY], [locked], 0, "alice", NOW, LATER_MATURITY)
        back = engine.lock("alice", [LATER_MATURITY], [rolled], 0, "alice", 0, 0)
        paid = engine.unlock("alice", "alice", [UNLOCKED_ID], [back])
        assert_close_below(paid, deposit)
        assert pool.ledger.balance_of(UNDERLYING_ID, "alice") <= USER_BALANCE
        assert check_engine_books(engine)['valid']

    @given(deposits, deposits)
    @settings(max_examples=30, deadline=None)
    def test_second_holder_not_diluted(self, first, second):
        """A later depositor can neither gain nor take value from an earlier one."""
        pool = build_pool()
        engine = pool.engine
        engine.lock("alice", [], [], first, "alice", 0, 0)
        minted = engine.lock("bob", [], [], second, "bob", 0, 0)
        paid = engine.unlock("bob", "bob", [UNLOCKED_ID], [minted])
        assert_close_below(paid, second)
        assert engine.underlying_value(UNLOCKED_ID) >= first - DUST


class TestRoundTripExamples:

    def test_exact_at_par_amounts(self, pool):
        minted = pool.engine.lock("alice", [], [], Decimal("100000"), "alice", 0, 0)
        assert pool.engine.unlock("alice", "alice", [UNLOCKED_ID], [minted]) == Decimal("100000")

    def test_dust_deposit_into_locked(self, pool):
        # 1e-18 buys no vault shares, so the deposit is refused outright
        with pytest.raises(VaultError, match="zero shares"):
            pool.engine.lock("alice", [], [], Decimal("1e-18"), "alice", NOW, MATURITY)
        assert pool.ledger.balance_of(UNDERLYING_ID, "alice") == USER_BALANCE
