"""
vault.py - Yield-Bearing Vault and Adapter

A Vault holds the underlying asset in its own ledger wallet and issues vault
shares against it, ERC-4626 style. Interest is modelled as underlying minted
straight into the vault wallet (accrue), which raises the value of every share;
realize_loss does the opposite.

Quoting (all amounts rounded down unless stated):
    convert_to_shares(a)  = a * S / A        (1:1 while S == 0)
    convert_to_assets(s)  = s * A / S        (1:1 while S == 0)
    preview_withdraw(a)   = a * S / A        rounded UP

The TermEngine never touches a Vault directly; it talks to a VaultAdapter,
and ERC4626Adapter binds a Vault to the engine's wallet.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Optional, Protocol, runtime_checkable

from .core import (
    Move, TransactionOrigin, OriginType, build_transaction,
    SYSTEM_WALLET, UNDERLYING_ID, UNIT_TYPE_VAULT_SHARE, ZERO,
    VaultError, InsufficientBalance, UnitNotRegistered,
    mul_div_down, mul_div_up, quantize_amount, to_amount, vault_share,
)
from .share_ledger import ShareLedger


# Vault shares live outside every term id range (see asset_id.py).
VAULT_SHARE_ID = 1 << 254
DEFAULT_VAULT_WALLET = "vault"


@runtime_checkable
class VaultAdapter(Protocol):
    """Everything the term engine needs from a yield source."""

    @property
    def share_id(self) -> int:
        ...

    def deposit(self, amount: Decimal) -> Decimal:
        """Deposit underlying from the engine wallet; return vault shares received."""
        ...

    def redeem(self, shares: Decimal) -> Decimal:
        """Redeem vault shares held by the engine wallet; return underlying received."""
        ...

    def preview_deposit(self, amount: Decimal) -> Decimal:
        ...

    def preview_redeem(self, shares: Decimal) -> Decimal:
        ...

    def preview_withdraw(self, amount: Decimal) -> Decimal:
        """Vault shares needed to withdraw exactly amount of underlying (rounded up)."""
        ...


class Vault:
    """
    Reference yield vault over a ShareLedger.

    Args:
        ledger: Ledger holding both the asset and the vault's shares
        asset_id: Asset the vault accepts (default: the underlying)
        share_id: Ledger id of the vault share unit
        wallet: Ledger wallet holding the vault's assets
        symbol: Display symbol of the share unit
    """

    def __init__(
        self,
        ledger: ShareLedger,
        asset_id: int = UNDERLYING_ID,
        share_id: int = VAULT_SHARE_ID,
        wallet: str = DEFAULT_VAULT_WALLET,
        symbol: str = "yvUND",
    ):
        if not ledger.has_unit(asset_id):
            raise UnitNotRegistered(f"Vault asset #{asset_id} not registered")
        self.ledger = ledger
        self.asset_id = asset_id
        self.share_id = share_id
        self.wallet = wallet
        if not ledger.is_registered(wallet):
            ledger.register_wallet(wallet)
        if not ledger.has_unit(share_id):
            ledger.register_unit(vault_share(share_id, symbol, f"{symbol} Vault Share", asset_id))
        elif ledger.get_unit(share_id).unit_type != UNIT_TYPE_VAULT_SHARE:
            raise VaultError(f"#{share_id} is registered but is not a vault share")

    def _origin(self, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.VAULT, self.wallet, event)

    # ------------------------------------------------------------------
    # Accounting views
    # ------------------------------------------------------------------

    def total_assets(self) -> Decimal:
        return self.ledger.balance_of(self.asset_id, self.wallet)

    def total_supply(self) -> Decimal:
        return self.ledger.total_supply(self.share_id)

    def balance_of(self, owner: str) -> Decimal:
        return self.ledger.balance_of(self.share_id, owner)

    def price_per_share(self) -> Decimal:
        """Underlying per vault share (1 while the vault is empty)."""
        supply = self.total_supply()
        if supply == 0:
            return Decimal("1")
        return self.total_assets() / supply

    def _mul_div(self, x: Decimal, num: Decimal, den: Decimal, rounding: str) -> Decimal:
        if den == 0:
            raise VaultError("vault has outstanding shares but no assets")
        if rounding == ROUND_UP:
            return mul_div_up(x, num, den)
        return mul_div_down(x, num, den)

    def convert_to_shares(self, assets: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
        assets = to_amount(assets)
        supply = self.total_supply()
        if supply == 0:
            return quantize_amount(assets, rounding)
        return self._mul_div(assets, supply, self.total_assets(), rounding)

    def convert_to_assets(self, shares: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
        shares = to_amount(shares)
        supply = self.total_supply()
        if supply == 0:
            return quantize_amount(shares, rounding)
        return self._mul_div(shares, self.total_assets(), supply, rounding)

    def preview_deposit(self, assets: Decimal) -> Decimal:
        return self.convert_to_shares(assets, ROUND_DOWN)

    def preview_redeem(self, shares: Decimal) -> Decimal:
        return self.convert_to_assets(shares, ROUND_DOWN)

    def preview_withdraw(self, assets: Decimal) -> Decimal:
        return self.convert_to_shares(assets, ROUND_UP)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deposit(self, assets: Decimal, owner: str, receiver: Optional[str] = None) -> Decimal:
        """
        Take assets from owner and issue vault shares to receiver.

        Both legs are one ledger transaction.

        Raises:
            VaultError: If the deposit is worth zero shares
            InsufficientFunds: If owner lacks the assets
        """
        assets = to_amount(assets)
        if assets < 0:
            raise ValueError(f"deposit must be non-negative, got {assets}")
        receiver = receiver or owner
        if assets == 0:
            return ZERO
        shares = self.preview_deposit(assets)
        if shares == 0:
            raise VaultError(f"deposit of {assets} is worth zero shares")
        moves = [
            Move(assets, self.asset_id, owner, self.wallet, "vault_deposit"),
            Move(shares, self.share_id, SYSTEM_WALLET, receiver, "vault_deposit"),
        ]
        self.ledger.execute_or_raise(
            build_transaction(self.ledger, moves, origin=self._origin("VAULT_DEPOSIT"))
        )
        return shares

    def redeem(self, shares: Decimal, owner: str, receiver: Optional[str] = None) -> Decimal:
        """
        Burn owner's vault shares and pay the underlying they are worth to receiver.

        Raises:
            InsufficientBalance: If owner holds fewer shares
        """
        shares = to_amount(shares)
        if shares < 0:
            raise ValueError(f"redeem must be non-negative, got {shares}")
        receiver = receiver or owner
        if shares == 0:
            return ZERO
        if self.balance_of(owner) < shares:
            raise InsufficientBalance(
                f"{owner} holds {self.balance_of(owner)} vault shares, redeeming {shares}"
            )
        assets = self.preview_redeem(shares)
        moves = [Move(shares, self.share_id, owner, SYSTEM_WALLET, "vault_redeem")]
        if assets > 0:
            moves.append(Move(assets, self.asset_id, self.wallet, receiver, "vault_redeem"))
        self.ledger.execute_or_raise(
            build_transaction(self.ledger, moves, origin=self._origin("VAULT_REDEEM"))
        )
        return assets

    def accrue(self, amount: Decimal) -> None:
        """Credit interest: mint underlying into the vault."""
        self.ledger.mint(self.asset_id, self.wallet, amount, origin=self._origin("ACCRUE"))

    def realize_loss(self, amount: Decimal) -> None:
        """Write off part of the vault's assets, lowering the share price."""
        self.ledger.burn(self.asset_id, self.wallet, amount, origin=self._origin("LOSS"))

    def issue_shares(self, to: str, shares: Decimal) -> None:
        """Issue shares without taking assets (dilutes every holder)."""
        self.ledger.mint(self.share_id, to, shares, origin=self._origin("ISSUE"))

    def destroy_shares(self, owner: str, shares: Decimal) -> None:
        """Destroy shares without paying assets (accretes every other holder)."""
        self.ledger.burn(self.share_id, owner, shares, origin=self._origin("DESTROY"))


class ERC4626Adapter:
    """
    Binds a Vault to a holder wallet so the engine can deposit and redeem
    with single-argument calls.
    """

    def __init__(self, vault: Vault, holder: str):
        self.vault = vault
        self.holder = holder

    @property
    def share_id(self) -> int:
        return self.vault.share_id

    def deposit(self, amount: Decimal) -> Decimal:
        return self.vault.deposit(amount, self.holder, self.holder)

    def redeem(self, shares: Decimal) -> Decimal:
        return self.vault.redeem(shares, self.holder, self.holder)

    def preview_deposit(self, amount: Decimal) -> Decimal:
        return self.vault.preview_deposit(amount)

    def preview_redeem(self, shares: Decimal) -> Decimal:
        return self.vault.preview_redeem(shares)

    def preview_withdraw(self, amount: Decimal) -> Decimal:
        return self.vault.preview_withdraw(amount)
