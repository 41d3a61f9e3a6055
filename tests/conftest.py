"""
conftest.py - Shared pytest fixtures for term pool tests

Provides common fixtures used across unit, functional and conformance tests:
- Basic ledgers (empty, with the underlying registered, funded)
- A vault priced at 0.9 shares per unit of underlying
- A term engine with a 25,000 / 50,000 reserve band over that vault
"""

import pytest
from decimal import Decimal

from yieldterm import ShareLedger, underlying, UNDERLYING_ID

from tests.pool import START_TIME, build_pool, priced_vault


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return ShareLedger("test", START_TIME, verbose=False, test_mode=True)


@pytest.fixture
def basic_ledger():
    """Ledger with the underlying and two wallets."""
    ledger = ShareLedger("test", START_TIME, verbose=False, test_mode=True)
    ledger.register_unit(underlying("UND", "Underlying"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger(basic_ledger):
    """Basic ledger with alice holding 10,000 underlying."""
    basic_ledger.mint(UNDERLYING_ID, "alice", Decimal("10000"))
    return basic_ledger


# =============================================================================
# TERM POOL FIXTURES
# =============================================================================

@pytest.fixture
def vault(basic_ledger):
    """Vault over basic_ledger quoting 0.9 shares per underlying."""
    return priced_vault(basic_ledger)


@pytest.fixture
def pool():
    """Ledger, 0.9-priced vault and engine; alice and bob hold 1,000,000 each."""
    return build_pool()


@pytest.fixture
def engine(pool):
    return pool.engine


@pytest.fixture
def ledger(pool):
    return pool.ledger
