"""
yieldterm - Term Share Pool

Accepts a base asset, routes idle balance into a yield vault, and issues
Unlocked (pooled, liquid) and Locked(maturity) (par-value, per-maturity)
shares against it.

Usage:
    from yieldterm import (
        ShareLedger, Vault, ERC4626Adapter, TermEngine,
        underlying, UNDERLYING_ID, INFINITE_ALLOWANCE,
    )

    ledger = ShareLedger("main", verbose=False)
    ledger.register_unit(underlying("DAI", "Dai Stablecoin"))
    ledger.register_wallet("alice")
    ledger.mint(UNDERLYING_ID, "alice", Decimal("1000"))

    vault = Vault(ledger)
    engine = TermEngine(ledger, ERC4626Adapter(vault, "term"),
                        target_reserve=None, max_reserve=Decimal("50000"))

    ledger.approve("alice", "term", UNDERLYING_ID, INFINITE_ALLOWANCE)
    engine.lock("alice", [], [], Decimal("1000"), "alice", start=0, maturity=0)
    engine.unlock("alice", "alice", [UNLOCKED_ID], [Decimal("1000")])
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    Positions,
    BalanceMap,
    UnitState,
    SYSTEM_WALLET,
    UNDERLYING_ID,
    AMOUNT_DECIMALS,
    UNIT_TYPE_UNDERLYING,
    UNIT_TYPE_VAULT_SHARE,
    UNIT_TYPE_UNLOCKED,
    UNIT_TYPE_LOCKED,
    LedgerError,
    InsufficientFunds,
    InsufficientAllowance,
    InsufficientBalance,
    BalanceConstraintViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    TermError,
    InvalidTerm,
    InsufficientReserve,
    InsufficientVaultShares,
    ReentrantCall,
    VaultError,
    quantize_amount,
    to_amount,
    to_timestamp,
    underlying,
    vault_share,
)

# Asset ids
from .asset_id import (
    AssetId,
    Unlocked,
    Locked,
    Yield,
    UNLOCKED_ID,
    YIELD_FLAG,
    encode_asset_id,
    decode_asset_id,
    is_term_id,
    asset_symbol,
)

# Ledger
from .share_ledger import ShareLedger, LedgerSnapshot, INFINITE_ALLOWANCE

# Vault
from .vault import Vault, VaultAdapter, ERC4626Adapter, VAULT_SHARE_ID

# Engine
from .reserve import ReserveBand, ReserveState
from .engine import TermEngine, term_unit

# Simulation
from .simulation import (
    generate_interest_path,
    run_simulation,
    check_engine_books,
    SimulationResult,
    StepSnapshot,
)


__all__ = [
    # Core
    'LedgerView',
    'Move',
    'Transaction',
    'PendingTransaction',
    'TransactionOrigin',
    'OriginType',
    'build_transaction',
    'Unit',
    'UnitStateChange',
    'ExecuteResult',
    'Positions',
    'BalanceMap',
    'UnitState',
    'SYSTEM_WALLET',
    'UNDERLYING_ID',
    'AMOUNT_DECIMALS',
    'UNIT_TYPE_UNDERLYING',
    'UNIT_TYPE_VAULT_SHARE',
    'UNIT_TYPE_UNLOCKED',
    'UNIT_TYPE_LOCKED',
    'quantize_amount',
    'to_amount',
    'to_timestamp',
    'underlying',
    'vault_share',
    # Exceptions
    'LedgerError',
    'InsufficientFunds',
    'InsufficientAllowance',
    'InsufficientBalance',
    'BalanceConstraintViolation',
    'UnitNotRegistered',
    'WalletNotRegistered',
    'TermError',
    'InvalidTerm',
    'InsufficientReserve',
    'InsufficientVaultShares',
    'ReentrantCall',
    'VaultError',
    # Asset ids
    'AssetId',
    'Unlocked',
    'Locked',
    'Yield',
    'UNLOCKED_ID',
    'YIELD_FLAG',
    'encode_asset_id',
    'decode_asset_id',
    'is_term_id',
    'asset_symbol',
    # Ledger
    'ShareLedger',
    'LedgerSnapshot',
    'INFINITE_ALLOWANCE',
    # Vault
    'Vault',
    'VaultAdapter',
    'ERC4626Adapter',
    'VAULT_SHARE_ID',
    # Engine
    'ReserveBand',
    'ReserveState',
    'TermEngine',
    'term_unit',
    # Simulation
    'generate_interest_path',
    'run_simulation',
    'check_engine_books',
    'SimulationResult',
    'StepSnapshot',
]

__version__ = '0.1.0'
