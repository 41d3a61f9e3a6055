"""
Atomicity Conformance Tests

INVARIANT: Every engine call is all-or-nothing.

A call that raises leaves balances, allowances, units, the transaction log,
the reserve and every per-maturity attribution exactly as they were, even
when the vault already executed deposits or redemptions on its behalf.
A call made while another is in progress is rejected.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from yieldterm import (
    ERC4626Adapter, UNDERLYING_ID, UNLOCKED_ID,
    InsufficientAllowance, InsufficientBalance, InsufficientReserve, ReentrantCall, VaultError,
)

from tests.pool import NOW, MATURITY, LATER_MATURITY, build_pool, pool_state


class HostileAdapter(ERC4626Adapter):
    """Calls back into the engine from inside a vault deposit or redeem."""

    engine = None
    armed = True

    def _reenter(self):
        if self.armed and self.engine is not None:
            self.engine.lock("bob", [], [], Decimal("1"), "bob", 0, 0)

    def deposit(self, assets):
        self._reenter()
        return super().deposit(assets)

    def redeem(self, shares):
        self._reenter()
        return super().redeem(shares)


class FailingRedeemAdapter(ERC4626Adapter):
    """Redeems, then fails, as a vault reverting after moving funds would."""

    fail = True

    def redeem(self, shares):
        assets = super().redeem(shares)
        if self.fail:
            raise VaultError("redeem reverted")
        return assets


def hostile_pool():
    pool = build_pool(adapter_cls=HostileAdapter)
    pool.engine.vault.armed = False
    pool.engine.lock("alice", [], [], Decimal("100000"), "alice", 0, 0)
    pool.engine.lock("alice", [], [], Decimal("5000"), "alice", NOW, MATURITY)
    pool.engine.vault.engine = pool.engine
    pool.engine.vault.armed = True
    return pool


class TestAtomicityProperties:

    @given(st.decimals(min_value=Decimal("100000.01"), max_value=Decimal("10000000"), places=2))
    @settings(max_examples=30, deadline=None)
    def test_failed_unlock_leaves_no_trace(self, amount):
        pool = build_pool()
        pool.engine.lock("alice", [], [], Decimal("100000"), "alice", 0, 0)
        before = pool_state(pool)
        with pytest.raises(InsufficientReserve):
            pool.engine.unlock("alice", "alice", [UNLOCKED_ID], [amount])
        assert pool_state(pool) == before

    @given(st.lists(st.decimals(min_value=Decimal("1"), max_value=Decimal("40000"), places=2),
                    min_size=1, max_size=2),
           st.sampled_from([0, MATURITY, LATER_MATURITY]))
    @settings(max_examples=30, deadline=None)
    def test_failure_after_vault_calls_rolls_back(self, amounts, target):
        """Bob converts shares he does not hold; the vault work done first is undone."""
        pool = build_pool()
        pool.engine.lock("alice", [], [], Decimal("100000"), "alice", NOW, MATURITY)
        sources = [UNLOCKED_ID if target != 0 else MATURITY] * len(amounts)
        pool.engine.lock("alice", [], [], Decimal("100000"), "alice", 0, 0)
        before = pool_state(pool)
        with pytest.raises(InsufficientBalance):
            pool.engine.lock("bob", sources, amounts, Decimal("1000"), "bob", NOW, target)
        assert pool_state(pool) == before


class TestReentrancy:

    def test_reentry_from_deposit(self):
        pool = hostile_pool()
        before = pool_state(pool)
        with pytest.raises(ReentrantCall):
            pool.engine.lock("alice", [], [], Decimal("1000"), "alice", NOW, MATURITY)
        assert pool_state(pool) == before

    def test_reentry_from_redeem(self):
        pool = hostile_pool()
        before = pool_state(pool)
        with pytest.raises(ReentrantCall):
            pool.engine.unlock("alice", "alice", [MATURITY], [Decimal("5000")])
        assert pool_state(pool) == before

    def test_engine_usable_after_reentry(self):
        pool = hostile_pool()
        with pytest.raises(ReentrantCall):
            pool.engine.lock("alice", [], [], Decimal("1000"), "alice", NOW, MATURITY)
        pool.engine.vault.armed = False
        assert pool.engine.lock("alice", [], [], Decimal("1000"), "alice", NOW, MATURITY) \
            == Decimal("1000")
        assert pool.engine.unlock("alice", "alice", [MATURITY], [Decimal("6000")]) \
            == Decimal("6000")

    def test_calls_without_vault_work_are_unaffected(self):
        pool = hostile_pool()
        # paid entirely from the idle reserve, so the adapter is never called
        assert pool.engine.unlock("alice", "alice", [UNLOCKED_ID], [Decimal("100")]) \
            == Decimal("100")


class TestAtomicityExamples:

    def test_failing_redeem_rolls_back(self):
        pool = build_pool(adapter_cls=FailingRedeemAdapter)
        pool.engine.lock("alice", [], [], Decimal("1000"), "alice", NOW, MATURITY)
        before = pool_state(pool)
        vault_assets = pool.vault.total_assets()

        with pytest.raises(VaultError, match="reverted"):
            pool.engine.unlock("alice", "alice", [MATURITY], [Decimal("1000")])

        assert pool_state(pool) == before
        assert pool.vault.total_assets() == vault_assets
        pool.engine.vault.fail = False
        assert pool.engine.unlock("alice", "alice", [MATURITY], [Decimal("1000")]) \
            == Decimal("1000")

    def test_missing_allowance_rolls_back(self):
        pool = build_pool()
        pool.ledger.register_wallet("carol")
        pool.ledger.mint(UNDERLYING_ID, "carol", Decimal("60000"))
        before = pool_state(pool)
        with pytest.raises(InsufficientAllowance):
            pool.engine.lock("carol", [], [], Decimal("60000"), "carol", 0, 0)
        assert pool_state(pool) == before

    def test_rollback_reported_when_verbose(self, capsys):
        pool = build_pool()
        pool.engine.verbose = True
        with pytest.raises(InsufficientReserve):
            pool.engine.unlock("alice", "alice", [UNLOCKED_ID], [Decimal("1")])
        assert "ROLLBACK UNLOCK" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
