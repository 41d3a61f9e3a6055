"""
share_ledger.py - Multi-Asset Share Ledger

The ShareLedger is the only module that mutates balances. It holds the
underlying asset, vault shares and every term share family under flat integer
asset ids, and moves them with double-entry bookkeeping: minting is a move out
of SYSTEM_WALLET and burning is a move back into it.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Tracks per-id allowances and operator approvals (transfer_from)
    - Registers share families lazily inside the transaction that first mints them
    - Snapshots and restores its full state so callers can roll back multi-step work
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any, FrozenSet
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    build_transaction, to_amount, to_timestamp,
    # Constants
    SYSTEM_WALLET, UNIT_TYPE_UNDERLYING, ZERO,
    # Exceptions
    LedgerError, InsufficientFunds, InsufficientAllowance, InsufficientBalance,
    BalanceConstraintViolation, UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


INFINITE_ALLOWANCE = Decimal("Infinity")


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Complete copy of a ledger's mutable state, taken by ShareLedger.snapshot()."""
    balances: Dict[str, Dict[int, Decimal]]
    units: Dict[int, Unit]
    registered_wallets: FrozenSet[str]
    allowances: Dict[Tuple[str, str, int], Decimal]
    operators: FrozenSet[Tuple[str, str]]
    log_length: int
    next_sequence: int
    current_time: datetime


class ShareLedger:
    """
    Double-entry multi-asset ledger with allowances and an audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods.

    Thread Safety:
        Not thread-safe. Callers serialize access.

    Example:
        ledger = ShareLedger("main")
        ledger.register_unit(underlying("DAI", "Dai Stablecoin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        ledger.mint(UNDERLYING_ID, "alice", Decimal("100"))
        ledger.transfer(UNDERLYING_ID, "alice", "bob", Decimal("40"))
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Enable debug output (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[int, Decimal]] = {}
        self.units: Dict[int, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self.allowances: Dict[Tuple[str, str, int], Decimal] = {}
        self.operators: Set[Tuple[str, str]] = set()
        self.last_rejection: Optional[LedgerError] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index mapping token_id -> {wallet -> quantity}
        self._positions_by_unit: Dict[int, Dict[str, Decimal]] = defaultdict(dict)

        # Auto-register the system wallet (used for issuance/redemption)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: ZERO)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def balance_of(self, token_id: int, owner: str) -> Decimal:
        """
        Balance of an asset held by a wallet.

        Share families that have never been minted read as zero.

        Raises:
            WalletNotRegistered: If the wallet is not registered
        """
        if owner not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {owner} not registered")
        return self.balances[owner].get(token_id, ZERO)

    def total_supply(self, token_id: int) -> Decimal:
        """
        Outstanding supply of an asset: everything issued out of SYSTEM_WALLET.

        Wallets are sorted before summation for a deterministic accumulation order.
        """
        if token_id not in self.units:
            return ZERO
        return sum(
            (self.balances[w].get(token_id, ZERO)
             for w in sorted(self.registered_wallets) if w != SYSTEM_WALLET),
            ZERO,
        )

    def get_unit_state(self, token_id: int) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if token_id not in self.units:
            raise UnitNotRegistered(f"Unit #{token_id} not registered")
        unit_obj = self.units[token_id]
        return copy.deepcopy(unit_obj.state) if unit_obj.state else {}

    def get_positions(self, token_id: int) -> Positions:
        """All non-zero positions for an asset, excluding SYSTEM_WALLET."""
        return {
            w: q for w, q in self._positions_by_unit.get(token_id, {}).items()
            if w != SYSTEM_WALLET
        }

    def has_unit(self, token_id: int) -> bool:
        return token_id in self.units

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[int]:
        """List all registered asset ids."""
        return sorted(self.units.keys())

    def get_unit(self, token_id: int) -> Unit:
        """Return the Unit registered under an asset id."""
        if token_id not in self.units:
            raise UnitNotRegistered(f"Unit #{token_id} not registered")
        return self.units[token_id]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    def verify_double_entry(
        self,
        expected_supplies: Dict[int, Decimal] = None,
        tolerance: Decimal = Decimal("0")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        For every unit the balances of all wallets, SYSTEM_WALLET included,
        must sum to zero: whatever was issued is held by someone. When
        expected_supplies is given, the outstanding supply of each listed id
        must also match.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[int, Decimal] - Current total supply for each unit
            - 'discrepancies': List[Dict] - Details of any violations
        """
        supplies = {}
        discrepancies = []

        for token_id in self.units:
            issued = -self.balances[SYSTEM_WALLET].get(token_id, ZERO)
            current_supply = self.total_supply(token_id)
            supplies[token_id] = current_supply

            if abs(current_supply - issued) > tolerance:
                discrepancies.append({
                    'unit': token_id,
                    'expected': issued,
                    'actual': current_supply,
                    'difference': abs(current_supply - issued),
                    'error': 'balances do not net to zero',
                })

            if expected_supplies and token_id in expected_supplies:
                expected = expected_supplies[token_id]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': token_id,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for token_id, expected in expected_supplies.items():
                if token_id not in supplies and expected != 0:
                    discrepancies.append({
                        'unit': token_id,
                        'expected': expected,
                        'actual': ZERO,
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If the wallet is already registered or the id is empty
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: ZERO)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit under its asset id.

        Raises:
            ValueError: If the id is already registered
        """
        if unit.token_id in self.units:
            raise ValueError(f"Unit #{unit.token_id} already registered")
        self.units[unit.token_id] = unit
        if self.verbose:
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, token_id: int, quantity: Decimal) -> None:
        """
        Set a wallet's balance directly, offsetting SYSTEM_WALLET so the
        books still balance.

        Only available in test mode; production code goes through execute().

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use mint() or execute() to modify balances. "
                "Set test_mode=True when creating ShareLedger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if token_id not in self.units:
            raise UnitNotRegistered(f"Unit #{token_id} not registered")
        quantity = to_amount(quantity)
        delta = quantity - self.balances[wallet_id][token_id]
        self.balances[wallet_id][token_id] = quantity
        self._update_position_index(wallet_id, token_id, quantity)
        system_balance = self.balances[SYSTEM_WALLET][token_id] - delta
        self.balances[SYSTEM_WALLET][token_id] = system_balance
        self._update_position_index(SYSTEM_WALLET, token_id, system_balance)

    def update_unit_state(self, token_id: int, state_updates: UnitState) -> None:
        """
        Merge state_updates into a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if token_id not in self.units:
            raise UnitNotRegistered(f"Unit #{token_id} not registered")
        old_unit = self.units[token_id]
        new_state = {**old_unit.state, **state_updates}
        self.units[token_id] = replace(old_unit, _frozen_state=_freeze_state(new_state))

    # ========================================================================
    # APPROVALS (Mutating)
    # ========================================================================

    def approve(self, owner: str, spender: str, token_id: int, amount: Decimal) -> None:
        """
        Set the amount of token_id that spender may move out of owner's wallet.

        Pass INFINITE_ALLOWANCE for an allowance that is never decremented.
        """
        for wallet in (owner, spender):
            if wallet not in self.registered_wallets:
                raise WalletNotRegistered(f"Wallet {wallet} not registered")
        amount = to_amount(amount) if amount != INFINITE_ALLOWANCE else INFINITE_ALLOWANCE
        if amount < 0:
            raise ValueError(f"Allowance must be non-negative, got {amount}")
        self.allowances[(owner, spender, token_id)] = amount
        if self.verbose:
            print(f"🔑 Approve: {owner} → {spender} #{token_id}: {amount}")

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        """Grant or revoke operator rights over every asset id in owner's wallet."""
        for wallet in (owner, operator):
            if wallet not in self.registered_wallets:
                raise WalletNotRegistered(f"Wallet {wallet} not registered")
        if approved:
            self.operators.add((owner, operator))
        else:
            self.operators.discard((owner, operator))

    def allowance(self, owner: str, spender: str, token_id: int) -> Decimal:
        return self.allowances.get((owner, spender, token_id), ZERO)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return (owner, operator) in self.operators

    # ========================================================================
    # TRANSFERS (Mutating)
    # ========================================================================

    def transfer(
        self,
        token_id: int,
        source: str,
        dest: str,
        amount: Decimal,
        origin: Optional[TransactionOrigin] = None,
    ) -> None:
        """Move amount of token_id from source to dest. Zero is a no-op."""
        amount = to_amount(amount)
        if amount == 0:
            return
        move = Move(amount, token_id, source, dest, "transfer")
        self.execute_or_raise(build_transaction(self, [move], origin=origin))

    def transfer_from(
        self,
        spender: str,
        source: str,
        dest: str,
        token_id: int,
        amount: Decimal,
        origin: Optional[TransactionOrigin] = None,
    ) -> None:
        """
        Move amount of token_id out of source on spender's authority.

        The spender needs to be the owner, an approved operator, or hold an
        allowance of at least amount; the allowance is reduced only once the
        move is applied.

        Raises:
            InsufficientAllowance: If the spender is not authorised for amount
            InsufficientFunds / InsufficientBalance: If source lacks the balance
        """
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError(f"Transfer amount must be non-negative, got {amount}")
        authorised_by_allowance = False
        if spender != source and not self.is_approved_for_all(source, spender):
            current = self.allowance(source, spender, token_id)
            if current < amount:
                raise InsufficientAllowance(
                    f"{spender} may move {current} of #{token_id} from {source}, needs {amount}"
                )
            authorised_by_allowance = True
        if amount == 0:
            return
        move = Move(amount, token_id, source, dest, "transfer_from")
        self.execute_or_raise(build_transaction(self, [move], origin=origin))
        if authorised_by_allowance:
            key = (source, spender, token_id)
            if self.allowances[key] != INFINITE_ALLOWANCE:
                self.allowances[key] -= amount

    def mint(
        self,
        token_id: int,
        to: str,
        amount: Decimal,
        origin: Optional[TransactionOrigin] = None,
        unit: Optional[Unit] = None,
    ) -> None:
        """
        Issue amount of token_id to a wallet.

        If unit is given and token_id is not yet registered, the unit is
        registered by the same transaction.
        """
        amount = to_amount(amount)
        if amount == 0:
            return
        if origin is None:
            origin = TransactionOrigin(OriginType.SYSTEM, self.name, "MINT")
        units = (unit,) if unit is not None and token_id not in self.units else ()
        move = Move(amount, token_id, SYSTEM_WALLET, to, "mint")
        self.execute_or_raise(
            build_transaction(self, [move], origin=origin, units_to_create=units)
        )

    def burn(
        self,
        token_id: int,
        owner: str,
        amount: Decimal,
        origin: Optional[TransactionOrigin] = None,
    ) -> None:
        """Retire amount of token_id from a wallet."""
        amount = to_amount(amount)
        if amount == 0:
            return
        if origin is None:
            origin = TransactionOrigin(OriginType.SYSTEM, self.name, "BURN")
        move = Move(amount, token_id, owner, SYSTEM_WALLET, "burn")
        self.execute_or_raise(build_transaction(self, [move], origin=origin))

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = to_timestamp(self._current_time) * 1_000_000
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. Units listed in
        units_to_create are registered first and unregistered again if the
        transaction is rejected. The error behind a rejection is kept in
        last_rejection.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.REJECTED if validation failed
        """
        self.last_rejection = None
        if pending.is_empty():
            return ExecuteResult.APPLIED

        newly_registered_units: List[int] = []
        for unit in pending.units_to_create:
            if unit.token_id not in self.units:
                self.register_unit(unit)
                newly_registered_units.append(unit.token_id)

        error = self._validate_pending(pending)
        if error is not None:
            for token_id in newly_registered_units:
                del self.units[token_id]
            self.last_rejection = error
            if self.verbose:
                print(f"✗ REJECTED: {error}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        # Unit is frozen, so state changes swap in a new Unit instance
        for sc in tx.state_changes:
            old_unit = self.units[sc.token_id]
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.token_id] = replace(old_unit, _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return ExecuteResult.APPLIED

    def execute_or_raise(self, pending: PendingTransaction) -> None:
        """Execute a transaction, raising the typed rejection error instead of returning REJECTED."""
        if self.execute(pending) is ExecuteResult.REJECTED:
            raise self.last_rejection

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print transaction details with a result line replacing the closing border."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w
        lines[-1] = f"├{bar}┤"
        text = ' ' + icon + ' ' + result
        lines.append(f"│{text + ' ' * (w - len(text))}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration, state changes on known units
        3. Balance constraints on the net effect of all moves

        Returns:
            None if valid, otherwise the error describing the first failure
        """
        if pending.timestamp > self._current_time:
            return LedgerError("future timestamp")

        for move in pending.moves:
            if move.token_id not in self.units:
                return UnitNotRegistered(f"unit not registered: #{move.token_id}")
            if not self.is_registered(move.source):
                return WalletNotRegistered(f"wallet not registered: {move.source}")
            if not self.is_registered(move.dest):
                return WalletNotRegistered(f"wallet not registered: {move.dest}")
        for sc in pending.state_changes:
            if sc.token_id not in self.units:
                return UnitNotRegistered(f"unit not registered: #{sc.token_id}")

        net: Dict[Tuple[str, int], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.token_id]
            key_src = (move.source, move.token_id)
            key_dst = (move.dest, move.token_id)
            net[key_src] = unit.round(net.get(key_src, ZERO) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, ZERO) + move.quantity)

        # SYSTEM_WALLET is exempt: it goes negative by the issued supply
        for (wallet, token_id), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet][token_id]
            unit = self.units[token_id]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                message = f"{wallet} {unit.symbol}: {proposed} < min {unit.min_balance}"
                if unit.unit_type == UNIT_TYPE_UNDERLYING:
                    return InsufficientFunds(message)
                return InsufficientBalance(message)
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(
                    f"{wallet} {unit.symbol}: {proposed} > max {unit.max_balance}"
                )

        return None

    def _update_position_index(self, wallet_id: str, token_id: int, quantity: Decimal) -> None:
        """Keep the inverted position index in step with a balance change."""
        if quantity != 0:
            self._positions_by_unit[token_id][wallet_id] = quantity
        else:
            self._positions_by_unit[token_id].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to wallet balances and update the position index."""
        for move in moves:
            unit = self.units[move.token_id]
            new_src_balance = unit.round(
                self.balances[move.source][move.token_id] - move.quantity
            )
            self.balances[move.source][move.token_id] = new_src_balance
            self._update_position_index(move.source, move.token_id, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.token_id] + move.quantity
            )
            self.balances[move.dest][move.token_id] = new_dst_balance
            self._update_position_index(move.dest, move.token_id, new_dst_balance)

    # ========================================================================
    # SNAPSHOT / RESTORE
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        """
        Capture the ledger's mutable state.

        Units are immutable and can be shared; balances are copied per wallet.
        The transaction log is append-only, so only its length is recorded.
        """
        return LedgerSnapshot(
            balances={w: dict(b) for w, b in self.balances.items()},
            units=dict(self.units),
            registered_wallets=frozenset(self.registered_wallets),
            allowances=dict(self.allowances),
            operators=frozenset(self.operators),
            log_length=len(self.transaction_log),
            next_sequence=self._next_sequence,
            current_time=self._current_time,
        )

    def restore(self, snap: LedgerSnapshot) -> None:
        """Return the ledger to a state captured by snapshot()."""
        self.balances = {
            w: defaultdict(lambda: ZERO, b) for w, b in snap.balances.items()
        }
        self.units = dict(snap.units)
        self.registered_wallets = set(snap.registered_wallets)
        self.allowances = dict(snap.allowances)
        self.operators = set(snap.operators)
        del self.transaction_log[snap.log_length:]
        self._next_sequence = snap.next_sequence
        self._current_time = snap.current_time
        self._positions_by_unit = defaultdict(dict)
        for wallet, bals in self.balances.items():
            for token_id, quantity in bals.items():
                if quantity != 0:
                    self._positions_by_unit[token_id][wallet] = quantity
        if self.verbose:
            print(f"↺ Restored {self.name} to sequence {snap.next_sequence}")
