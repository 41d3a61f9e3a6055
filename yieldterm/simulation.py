"""
simulation.py - Randomized Term Pool Simulation

Drives a TermEngine through a seeded sequence of deposits, withdrawals,
conversions and interest accruals, and checks after every step that the
books still balance.

    result = run_simulation(steps=200, seed=7, mean_rate=0.0005)
    assert result.report['valid']
    prices = result.series('unlocked_price')

Randomness comes from a numpy Generator, so a seed fully determines a run.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .asset_id import UNLOCKED_ID
from .core import (
    LedgerError, UNDERLYING_ID, ZERO,
    quantize_amount, to_timestamp, underlying,
)
from .engine import TermEngine
from .share_ledger import INFINITE_ALLOWANCE, ShareLedger
from .vault import ERC4626Adapter, Vault


ACTIONS = ("lock_unlocked", "lock_locked", "unlock", "convert", "rollover")
SECONDS_PER_DAY = 86_400


def generate_interest_path(
    steps: int,
    mean_rate: float = 0.0,
    volatility: float = 0.0,
    seed: Optional[int] = None,
    allow_losses: bool = False,
) -> np.ndarray:
    """
    Per-step vault interest rates.

    Rates are drawn from a normal distribution and clipped at zero unless
    allow_losses is set, in which case they are clipped at -100%.

    Args:
        steps: Number of steps
        mean_rate: Mean rate per step (0.0005 is roughly 20% a year on daily steps)
        volatility: Standard deviation per step
        seed: Seed for numpy.random.default_rng
        allow_losses: Keep negative draws

    Returns:
        Array of shape (steps,)
    """
    if steps < 0:
        raise ValueError(f"steps must be non-negative, got {steps}")
    if volatility < 0:
        raise ValueError(f"volatility must be non-negative, got {volatility}")
    rng = np.random.default_rng(seed)
    rates = rng.normal(mean_rate, volatility, size=steps) if volatility > 0 \
        else np.full(steps, float(mean_rate))
    return np.clip(rates, -1.0 if allow_losses else 0.0, None)


@dataclass(frozen=True, slots=True)
class StepSnapshot:
    """Engine state after one simulation step."""
    step: int
    action: str
    actor: str
    amount: Decimal
    applied: bool
    unlocked_price: Decimal
    total_value: Decimal
    underlying_reserve: Decimal
    vault_share_reserve: Decimal
    vault_price: Decimal


@dataclass
class SimulationResult:
    snapshots: List[StepSnapshot] = field(default_factory=list)
    report: Dict[str, Any] = field(default_factory=dict)

    def series(self, name: str) -> np.ndarray:
        """One StepSnapshot field across all steps, as floats."""
        return np.array([float(getattr(s, name)) for s in self.snapshots], dtype=float)


def check_engine_books(engine: TermEngine) -> Dict[str, Any]:
    """
    Compare the engine's own accounting with what the ledger says it holds.

    Returns:
        Dict with 'valid' and the individual comparisons
    """
    ledger = engine.ledger
    reserve = engine.reserve_details()
    held_underlying = ledger.balance_of(UNDERLYING_ID, engine.wallet)
    held_shares = ledger.balance_of(engine.vault.share_id, engine.wallet)
    attributed = reserve.vault_share_reserve + sum(
        (engine.vault_shares_for(m) for m in engine.maturities()), ZERO
    )
    double_entry = ledger.verify_double_entry()
    return {
        'valid': (held_underlying == reserve.underlying_reserve
                  and held_shares == attributed
                  and double_entry['valid']),
        'underlying_held': held_underlying,
        'underlying_reserve': reserve.underlying_reserve,
        'vault_shares_held': held_shares,
        'vault_shares_attributed': attributed,
        'double_entry': double_entry,
    }


def _draw_amount(rng: np.random.Generator, upper: Decimal) -> Decimal:
    if upper <= 0:
        return ZERO
    fraction = Decimal(str(round(float(rng.uniform(0.05, 1.0)), 6)))
    return quantize_amount(upper * fraction)


def run_simulation(
    steps: int = 100,
    seed: int = 0,
    users: Sequence[str] = ("alice", "bob", "carol"),
    initial_balance: Decimal = Decimal("1000000"),
    max_reserve: Decimal = Decimal("50000"),
    target_reserve: Optional[Decimal] = None,
    vault_price: Decimal = Decimal("0.9"),
    mean_rate: float = 0.0,
    volatility: float = 0.0,
    maturity_days: Sequence[int] = (30, 90, 180),
    verbose: bool = False,
) -> SimulationResult:
    """
    Run a seeded random workload against a fresh ledger, vault and engine.

    vault_price is the number of vault shares a unit of underlying buys when
    the run starts. The report carries deposited and withdrawn totals, the
    interest credited to the vault and the final book check.
    """
    vault_price = Decimal(str(vault_price))
    if not 0 < vault_price <= 1:
        raise ValueError(f"vault_price must be in (0, 1], got {vault_price}")
    rng = np.random.default_rng(seed)
    rates = generate_interest_path(steps, mean_rate, volatility, seed=seed)

    start_time = datetime(2024, 1, 1)
    ledger = ShareLedger("simulation", initial_time=start_time, verbose=False)
    ledger.register_unit(underlying("UND", "Underlying"))
    vault = Vault(ledger)
    ledger.register_wallet("seed")
    ledger.mint(UNDERLYING_ID, "seed", Decimal("10000"))
    vault.deposit(Decimal("10000") * vault_price, "seed")
    vault.accrue(Decimal("10000") * (1 - vault_price))

    engine = TermEngine(
        ledger, ERC4626Adapter(vault, "term"),
        target_reserve=target_reserve, max_reserve=max_reserve,
        wallet="term", verbose=verbose,
    )
    for user in users:
        ledger.register_wallet(user)
        ledger.mint(UNDERLYING_ID, user, initial_balance)
        ledger.approve(user, engine.wallet, UNDERLYING_ID, INFINITE_ALLOWANCE)

    result = SimulationResult()
    deposited = ZERO
    withdrawn = ZERO
    interest = ZERO
    rejected = 0

    for step in range(steps):
        ledger.advance_time(start_time + timedelta(days=step))
        now = to_timestamp(ledger.current_time)
        actor = str(rng.choice(list(users)))
        action = str(rng.choice(ACTIONS))
        held = {m: ledger.balance_of(m, actor) for m in engine.maturities()}
        held[UNLOCKED_ID] = ledger.balance_of(UNLOCKED_ID, actor)
        owned = [token_id for token_id, amount in held.items() if amount > 0]
        maturity = now + SECONDS_PER_DAY * int(rng.choice(list(maturity_days)))

        amount = ZERO
        applied = True
        try:
            if action in ("lock_unlocked", "lock_locked"):
                amount = _draw_amount(rng, ledger.balance_of(UNDERLYING_ID, actor) / 10)
                target = 0 if action == "lock_unlocked" else maturity
                engine.lock(actor, [], [], amount, actor, now, target)
                deposited += amount
            elif action == "unlock" and owned:
                token_id = owned[int(rng.integers(len(owned)))]
                amount = _draw_amount(rng, held[token_id])
                withdrawn += engine.unlock(actor, actor, [token_id], [amount])
            elif action in ("convert", "rollover") and owned:
                token_id = owned[int(rng.integers(len(owned)))]
                amount = _draw_amount(rng, held[token_id])
                if action == "convert" and token_id != UNLOCKED_ID:
                    target = 0
                else:
                    target = maturity
                if target != token_id:
                    engine.lock(actor, [token_id], [amount], ZERO, actor, now, target)
        except LedgerError as exc:
            # the engine has already rolled the call back
            applied = False
            rejected += 1
            if verbose:
                print(f"✗ step {step} {action}: {exc}")

        rate = Decimal(str(float(rates[step])))
        if rate != 0:
            credit = quantize_amount(vault.total_assets() * rate)
            if credit > 0:
                vault.accrue(credit)
                interest += credit

        reserve = engine.reserve_details()
        result.snapshots.append(StepSnapshot(
            step=step,
            action=action,
            actor=actor,
            amount=amount,
            applied=applied,
            unlocked_price=engine.unlocked_share_price(),
            total_value=engine.total_value(),
            underlying_reserve=reserve.underlying_reserve,
            vault_share_reserve=reserve.vault_share_reserve,
            vault_price=vault.price_per_share(),
        ))

    books = check_engine_books(engine)
    result.report = {
        'valid': books['valid'],
        'steps': steps,
        'rejected': rejected,
        'deposited': deposited,
        'withdrawn': withdrawn,
        'interest': interest,
        'total_value': engine.total_value(),
        'value_drift': engine.total_value() - (deposited - withdrawn),
        'books': books,
    }
    return result
