"""
Core types and pure functions for the term share system.

This module provides the foundational data structures shared by the ledger,
the vault and the term engine:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the term-specific error taxonomy
4. Type aliases: Positions, BalanceMap, UnitState
5. Amount helpers: quantization and timestamp conversion
6. Unit factories: functions to create the standard unit types

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Share accounting requires deterministic Decimal arithmetic.
# The global context is configured at module load time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
#   - prec=50: enough for 18-place amounts up to ~1e32 with exact products
#   - rounding=ROUND_HALF_EVEN: only used for intermediate arithmetic;
#     every stored amount is quantized explicitly (see quantize_amount)
#
_TERM_DECIMAL_CONTEXT = getcontext()
_TERM_DECIMAL_CONTEXT.prec = 50
_TERM_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption (mint = system -> holder,
# burn = holder -> system). Exempt from balance validation.
SYSTEM_WALLET = "system"

# Unit type constants.
UNIT_TYPE_UNDERLYING = "UNDERLYING"
UNIT_TYPE_VAULT_SHARE = "VAULT_SHARE"
UNIT_TYPE_UNLOCKED = "UNLOCKED"
UNIT_TYPE_LOCKED = "LOCKED"

# Asset id of the base asset held in the ledger.
UNDERLYING_ID = 0

# Every amount (underlying, vault shares, term shares) uses 18 decimal places.
AMOUNT_DECIMALS = 18
AMOUNT_QUANTUM = Decimal(10) ** -AMOUNT_DECIMALS

ZERO = Decimal("0")

# The epoch used for timestamp conversion; naive datetimes are read as UTC.
EPOCH = datetime(1970, 1, 1)


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific asset.
Positions = Dict[str, Decimal]

# Mapping from asset id to quantity held in a single wallet.
BalanceMap = Dict[int, Decimal]

# Internal state for a unit (term metadata, etc.).
UnitState = Dict[str, Any]

# Unix timestamp in seconds.
Timestamp = int


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Functions accepting a LedgerView parameter declare their read-only intent.
    The ShareLedger class implements this protocol but also provides mutation
    methods.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def balance_of(self, token_id: int, owner: str) -> Decimal:
        """Return the balance of an asset held by a wallet (0 if none)."""
        ...

    def total_supply(self, token_id: int) -> Decimal:
        """Return the outstanding supply of an asset (0 if never minted)."""
        ...

    def get_unit_state(self, token_id: int) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, token_id: int) -> Positions:
        """Return all non-zero positions for an asset across all wallets."""
        ...

    def has_unit(self, token_id: int) -> bool:
        """Return True if a unit is registered under this id."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    REJECTED: Transaction failed validation (balance, allowance, registration).
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for the audit trail kept in ShareLedger.transaction_log.
    """
    USER_ACTION = "user_action"           # Direct transfer/approval by a holder
    ENGINE = "engine"                     # Term engine lock/unlock/convert
    VAULT = "vault"                       # Vault deposit/redeem/accrual
    SYSTEM = "system"                     # Issuance and initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a wallet lacks the base asset (or allowance) to fund a transfer."""
    pass


class InsufficientAllowance(InsufficientFunds):
    """Raised when a spender's allowance does not cover a transfer_from."""
    pass


class InsufficientBalance(LedgerError):
    """Raised when a wallet lacks the shares being burned or transferred."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would push a wallet above the unit's maximum balance."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on an asset id that has no registered unit."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class TermError(LedgerError):
    """Base exception for term engine failures."""
    pass


class InvalidTerm(TermError):
    """Raised for bad start/maturity ordering, past maturities or non-term asset ids."""
    pass


class InsufficientReserve(TermError):
    """
    Raised when a withdrawal asks for more backing than a family holds.

    Never expected in correct operation: it signals that share supply and
    backing have diverged, or that a caller asked for more than exists.
    """
    pass


class InsufficientVaultShares(TermError):
    """Raised when a conversion would overdraw a family's vault-share backing."""
    pass


class ReentrantCall(TermError):
    """Raised when the engine is re-entered while a call is in progress."""
    pass


class VaultError(LedgerError):
    """Raised for vault-side failures (zero-share deposits, empty vault quotes)."""
    pass


# ============================================================================
# AMOUNT HELPERS
# ============================================================================

def to_amount(value: Any) -> Decimal:
    """
    Convert a user-supplied amount to Decimal.

    Floats go through str() so 0.1 stays 0.1. NaN and infinities are rejected.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"amount must be finite, got {value}")
    return value


def quantize_amount(value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    """Quantize an amount to AMOUNT_DECIMALS places (rounding down by default)."""
    return value.quantize(AMOUNT_QUANTUM, rounding=rounding)


def mul_div_down(a: Decimal, b: Decimal, c: Decimal) -> Decimal:
    """Compute a * b / c rounded down to the amount quantum."""
    return quantize_amount(a * b / c, ROUND_DOWN)


def mul_div_up(a: Decimal, b: Decimal, c: Decimal) -> Decimal:
    """Compute a * b / c rounded up to the amount quantum."""
    return quantize_amount(a * b / c, ROUND_UP)


def to_timestamp(moment: datetime) -> Timestamp:
    """Convert a datetime to unix seconds. Naive datetimes are read as UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return int((moment - EPOCH).total_seconds())


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source (ENGINE, VAULT, ...)
        source_id: Identifier of the specific source (engine wallet, vault wallet, holder)
        event_type: Specific event within the source (e.g., "LOCK", "UNLOCK", "CONVERT")
    """
    origin_type: OriginType
    source_id: str
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change, with full before/after snapshots.

    Attributes:
        token_id: Asset id of the unit whose state changed
        old_state: Complete state before the change (dict or None)
        new_state: Complete state after the change (dict)
    """
    token_id: int
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old, new)} for every field that differs."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of an asset between two wallets.

    Minting is a move out of SYSTEM_WALLET and burning is a move into it, so
    every supply change is recorded the same way as a transfer.

    Attributes:
        quantity: The amount to transfer (must be finite and positive).
        token_id: The asset id being transferred.
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        reference: Short label of the operation that produced this move.
    """
    quantity: Decimal
    token_id: int
    source: str
    dest: str
    reference: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.reference or not self.reference.strip():
            raise ValueError("Move reference cannot be empty")
        if not isinstance(self.token_id, int) or self.token_id < 0:
            raise ValueError(f"Move token_id must be a non-negative int, got {self.token_id!r}")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} #{self.token_id}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Attributes:
        moves: Tuple of asset transfers between wallets
        state_changes: Tuple of unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        units_to_create: Units to register before executing moves (lazy families)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()

    def is_empty(self) -> bool:
        """Return True if there are no moves, no state changes and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state changes.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: Moves to include in the transaction
        state_changes: Optional unit state changes
        origin: Transaction origin (defaults to a USER_ACTION origin)
        units_to_create: Units to register before executing moves

    Returns:
        A PendingTransaction ready for execution
    """
    import copy

    if origin is None:
        origin = TransactionOrigin(OriginType.USER_ACTION, "user")

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                token_id=sc.token_id,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of asset transfers between wallets
        state_changes: Tuple of unit state changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger
        units_to_create: Units registered by this transaction
        references: Set of move references (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    references: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.references is None:
            object.__setattr__(
                self, 'references',
                frozenset(m.reference for m in self.moves)
            )

    def __repr__(self) -> str:
        lines = [f"Transaction: {self.exec_id} (seq {self.sequence_number}, {self.origin})"]
        for unit in self.units_to_create:
            lines.append(f"  + {unit.symbol} ({unit.name})")
        for move in self.moves:
            lines.append(
                f"  {move.source} → {move.dest}: {move.quantity} {_format_token(move.token_id)}"
            )
        for sc in self.state_changes:
            for field_name, (old_val, new_val) in sc.changed_fields().items():
                lines.append(
                    f"  {_format_token(sc.token_id)}.{field_name}: {old_val!r} → {new_val!r}"
                )
        return "\n".join(lines)


def _format_token(token_id: int) -> str:
    # flagged ids are 256-bit; hex keeps them readable
    return f"#{token_id:#x}" if token_id >= 1 << 128 else f"#{token_id}"


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of an asset held in the ledger.

    Attributes:
        token_id: Integer asset id (the flat ledger key).
        symbol: Short display identifier (e.g., "DAI", "PT-1735689600").
        name: Human-readable name.
        unit_type: Category of the unit (UNDERLYING, VAULT_SHARE, UNLOCKED, LOCKED).
        min_balance: Minimum allowed balance in any wallet except SYSTEM_WALLET.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places balances are rounded to.
        _frozen_state: Internal frozen state representation.
    """
    token_id: int
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = AMOUNT_DECIMALS
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a fresh dict."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Round a balance to this unit's precision (ROUND_DOWN)."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        return value.quantize(Decimal(10) ** -self.decimal_places, rounding=ROUND_DOWN)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def underlying(symbol: str, name: str, token_id: int = UNDERLYING_ID) -> Unit:
    """
    Create the base asset unit.

    Args:
        symbol: Token symbol (e.g., "DAI").
        name: Full token name.
        token_id: Ledger id of the base asset (default: UNDERLYING_ID).

    Returns:
        A Unit that cannot go negative outside the system wallet.
    """
    return Unit(
        token_id=token_id,
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_UNDERLYING,
    )


def vault_share(token_id: int, symbol: str, name: str, asset_id: int) -> Unit:
    """Create the unit representing a vault's shares, remembering which asset backs it."""
    return Unit(
        token_id=token_id,
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_VAULT_SHARE,
        _frozen_state=_freeze_state({'asset_id': asset_id}),
    )
