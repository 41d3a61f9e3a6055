"""
engine.py - Term Engine

The TermEngine accepts the underlying asset, routes idle balance into a
yield vault and issues two families of shares against it:

    Unlocked          pooled claim on the reserve plus its vault shares
    Locked(maturity)  par-value claim on the vault shares deposited for
                      that maturity

lock() mints (optionally converting existing shares of other families into
the target family), unlock() redeems. Every public mutating call runs inside
_call(), which rejects re-entry and restores the ledger and engine state if
anything raises, so a call either fully applies or leaves no trace.

Engine invariants (checked by the conformance tests):
    ledger underlying held by the engine wallet == reserve.underlying_reserve
    vault shares held by the engine wallet == vault_share_reserve + sum(vault_shares[m])
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .asset_id import (
    AssetId, Locked, Unlocked, Yield, UNLOCKED_ID,
    asset_name, asset_symbol, decode_asset_id, encode_asset_id,
)
from .core import (
    Move, Unit, UnitStateChange, TransactionOrigin, OriginType,
    build_transaction, to_amount, to_timestamp, _freeze_state,
    SYSTEM_WALLET, UNDERLYING_ID, UNIT_TYPE_LOCKED, UNIT_TYPE_UNLOCKED, ZERO,
    InvalidTerm, InsufficientReserve, InsufficientVaultShares, ReentrantCall,
)
from .reserve import (
    ReserveBand, ReserveState,
    attributed_slice, shares_for_value, split_payment, sweep_excess, value_of_shares,
)
from .share_ledger import ShareLedger
from .vault import VaultAdapter


DEFAULT_TERM_WALLET = "term"


@dataclass(frozen=True, slots=True)
class Extraction:
    """Backing released by converting one source position, and its canonical value."""
    underlying: Decimal
    vault_shares: Decimal
    value: Decimal


def term_unit(asset: AssetId, start: Optional[int] = None) -> Unit:
    """Ledger unit for a term share family."""
    if isinstance(asset, Unlocked):
        return Unit(
            token_id=UNLOCKED_ID,
            symbol=asset_symbol(asset),
            name=asset_name(asset),
            unit_type=UNIT_TYPE_UNLOCKED,
        )
    state = {'maturity': asset.maturity, 'starts': (start,) if start is not None else ()}
    return Unit(
        token_id=encode_asset_id(asset),
        symbol=asset_symbol(asset),
        name=asset_name(asset),
        unit_type=UNIT_TYPE_LOCKED,
        _frozen_state=_freeze_state(state),
    )


class TermEngine:
    """
    Issues and redeems term shares against a vault.

    Args:
        ledger: ShareLedger holding the underlying, vault shares and term shares
        vault: VaultAdapter that deposits and redeems on behalf of wallet
        target_reserve: Idle reserve kept after a sweep (default: half of max_reserve)
        max_reserve: Idle reserve ceiling that triggers a sweep
        wallet: Ledger wallet holding the engine's underlying and vault shares
        verbose: Print one line per call

    Example:
        engine = TermEngine(ledger, ERC4626Adapter(vault, "term"),
                            target_reserve=Decimal("25000"), max_reserve=Decimal("50000"))
        ledger.approve("alice", "term", UNDERLYING_ID, INFINITE_ALLOWANCE)
        minted = engine.lock("alice", [], [], Decimal("1000"), "alice", 0, 0)
    """

    def __init__(
        self,
        ledger: ShareLedger,
        vault: VaultAdapter,
        target_reserve: Optional[Decimal],
        max_reserve: Decimal,
        wallet: str = DEFAULT_TERM_WALLET,
        verbose: bool = False,
    ):
        self.ledger = ledger
        self.vault = vault
        if target_reserve is None:
            self.band = ReserveBand.from_max(max_reserve)
        else:
            self.band = ReserveBand(target=target_reserve, maximum=max_reserve)
        self.wallet = wallet
        self.verbose = verbose
        self._reserve = ReserveState()
        self._vault_shares: Dict[int, Decimal] = {}
        self._active = False
        # shares burned by the call in progress, applied to the ledger at its end
        self._burning: Dict[int, Decimal] = {}
        if not ledger.is_registered(wallet):
            ledger.register_wallet(wallet)

    # ========================================================================
    # CALL GUARD
    # ========================================================================

    @contextmanager
    def _call(self, event: str):
        """Reject re-entry, and roll everything back if the body raises."""
        if self._active:
            raise ReentrantCall(f"{event} called while another engine call is in progress")
        self._active = True
        self._burning = {}
        ledger_snapshot = self.ledger.snapshot()
        reserve_snapshot = self._reserve
        shares_snapshot = dict(self._vault_shares)
        try:
            yield
        except Exception as exc:
            self.ledger.restore(ledger_snapshot)
            self._reserve = reserve_snapshot
            self._vault_shares = shares_snapshot
            if self.verbose:
                print(f"↺ ROLLBACK {event}: {type(exc).__name__}: {exc}")
            raise
        finally:
            self._active = False
            self._burning = {}

    def _origin(self, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.ENGINE, self.wallet, event)

    @staticmethod
    def _amounts(ids: Sequence[int], amounts: Sequence) -> List[Tuple[AssetId, Decimal]]:
        if len(ids) != len(amounts):
            raise ValueError(f"{len(ids)} ids but {len(amounts)} amounts")
        pairs = []
        for token_id, raw in zip(ids, amounts):
            amount = to_amount(raw)
            if amount < 0:
                raise ValueError(f"amount must be non-negative, got {amount}")
            asset = decode_asset_id(token_id)
            if isinstance(asset, Yield):
                raise InvalidTerm(f"yield id {token_id:#x} is not redeemable here")
            pairs.append((asset, amount))
        return pairs

    def _supply(self, token_id: int) -> Decimal:
        return self.ledger.total_supply(token_id) - self._burning.get(token_id, ZERO)

    def _burn(self, moves: List[Move], asset: AssetId, amount: Decimal,
              caller: str, reference: str) -> None:
        token_id = encode_asset_id(asset)
        self._burning[token_id] = self._burning.get(token_id, ZERO) + amount
        moves.append(Move(amount, token_id, caller, SYSTEM_WALLET, reference))

    def now(self) -> int:
        return to_timestamp(self.ledger.current_time)

    # ========================================================================
    # VIEWS
    # ========================================================================

    @property
    def target_reserve(self) -> Decimal:
        return self.band.target

    @property
    def max_reserve(self) -> Decimal:
        return self.band.maximum

    def reserve_details(self) -> ReserveState:
        """Current idle underlying and vault shares backing the Unlocked family."""
        return self._reserve

    def vault_shares_for(self, maturity: int) -> Decimal:
        return self._vault_shares.get(maturity, ZERO)

    def maturities(self) -> List[int]:
        return sorted(self._vault_shares)

    def is_mature(self, maturity: int) -> bool:
        return self.now() >= maturity

    def _unlocked_value(self) -> Decimal:
        return self._reserve.underlying_reserve + self.vault.preview_redeem(
            self._reserve.vault_share_reserve
        )

    def underlying_value(self, asset: Union[AssetId, int]) -> Decimal:
        """Underlying a family could currently be redeemed for."""
        if isinstance(asset, int):
            asset = decode_asset_id(asset)
        if isinstance(asset, Unlocked):
            return self._unlocked_value()
        if isinstance(asset, Locked):
            return self.vault.preview_redeem(self.vault_shares_for(asset.maturity))
        raise InvalidTerm(f"{asset!r} has no backing of its own")

    def total_value(self) -> Decimal:
        """Underlying value across every family."""
        return self._unlocked_value() + sum(
            (self.vault.preview_redeem(shares) for shares in self._vault_shares.values()),
            ZERO,
        )

    def unlocked_share_price(self) -> Decimal:
        supply = self.ledger.total_supply(UNLOCKED_ID)
        if supply == 0:
            return Decimal("1")
        return self._unlocked_value() / supply

    def locked_share_price(self, maturity: int) -> Decimal:
        supply = self.ledger.total_supply(maturity)
        if supply == 0:
            return Decimal("1")
        return self.vault.preview_redeem(self.vault_shares_for(maturity)) / supply

    # ========================================================================
    # LOCK
    # ========================================================================

    def _target(self, start: int, maturity: int) -> AssetId:
        if maturity == 0:
            return Unlocked()
        target = Locked(maturity)
        if isinstance(start, bool) or not isinstance(start, int) or start < 0:
            raise InvalidTerm(f"start must be a non-negative int timestamp, got {start!r}")
        if start >= maturity:
            raise InvalidTerm(f"start {start} must be before maturity {maturity}")
        if maturity < self.now():
            raise InvalidTerm(f"maturity {maturity} is in the past (now {self.now()})")
        return target

    def _extract(self, source: AssetId, amount: Decimal) -> Extraction:
        """Remove the backing of amount source shares from its family without paying anyone."""
        if isinstance(source, Unlocked):
            supply = self._supply(UNLOCKED_ID)
            if supply == 0 or amount > supply:
                raise InsufficientVaultShares(
                    f"converting {amount} Unlocked exceeds supply {supply}"
                )
            value = value_of_shares(amount, supply, self._unlocked_value())
            from_reserve, shortfall = split_payment(value, self._reserve.underlying_reserve)
            shares = self.vault.preview_withdraw(shortfall) if shortfall > 0 else ZERO
            if shares > self._reserve.vault_share_reserve:
                raise InsufficientVaultShares(
                    f"Unlocked needs {shares} vault shares, reserve holds "
                    f"{self._reserve.vault_share_reserve}"
                )
            self._reserve = self._reserve.adjust(-from_reserve, -shares)
            return Extraction(from_reserve, shares, value)

        maturity = source.maturity
        attributed = self.vault_shares_for(maturity)
        supply = self._supply(maturity)
        shares = attributed_slice(amount, attributed, supply)
        if attributed == 0 or supply == 0 or amount > supply or shares > attributed:
            raise InsufficientVaultShares(
                f"Locked({maturity}) cannot release backing for {amount} of {supply} shares"
            )
        self._vault_shares[maturity] = attributed - shares
        return Extraction(ZERO, shares, self.vault.preview_redeem(shares))

    def lock(
        self,
        caller: str,
        burn_ids: Sequence[int],
        burn_amounts: Sequence,
        deposit_amount,
        destination: str,
        start: int,
        maturity: int,
    ) -> Decimal:
        """
        Mint shares of the target family (Unlocked when maturity is 0).

        The target is funded by deposit_amount of underlying pulled from caller
        (the engine wallet must hold an allowance) plus the backing of every
        (burn_ids[i], burn_amounts[i]) position converted out of its family.

        Returns:
            Shares minted to destination

        Raises:
            InvalidTerm: Bad start/maturity, or a source equal to the target
            InsufficientFunds: Caller lacks the underlying or the allowance
            InsufficientBalance: Caller lacks the shares being converted
            InsufficientVaultShares: A source family cannot release its backing
        """
        event = "CONVERT" if len(burn_ids) else "LOCK"
        with self._call(event):
            target = self._target(start, maturity)
            target_id = encode_asset_id(target)
            deposit = to_amount(deposit_amount)
            if deposit < 0:
                raise ValueError(f"deposit must be non-negative, got {deposit}")
            sources = self._amounts(burn_ids, burn_amounts)

            supply_before = self.ledger.total_supply(target_id)
            value_before = self._unlocked_value() if isinstance(target, Unlocked) else ZERO

            moves: List[Move] = []
            underlying_in = deposit
            shares_in = ZERO
            value_in = deposit
            for source, amount in sources:
                if source == target:
                    raise InvalidTerm(f"cannot convert {source!r} into itself")
                if amount == 0:
                    continue
                released = self._extract(source, amount)
                underlying_in += released.underlying
                shares_in += released.vault_shares
                value_in += released.value
                self._burn(moves, source, amount, caller, "convert")

            if deposit > 0:
                self.ledger.transfer_from(
                    self.wallet, caller, self.wallet, UNDERLYING_ID, deposit,
                    origin=self._origin(event),
                )

            if isinstance(target, Unlocked):
                minted = shares_for_value(value_in, supply_before, value_before)
                self._reserve = self._reserve.adjust(underlying_in, shares_in)
                excess = sweep_excess(self._reserve, self.band)
                # an excess worth no vault shares stays idle
                if excess > 0 and self.vault.preview_deposit(excess) > 0:
                    swept = self.vault.deposit(excess)
                    self._reserve = self._reserve.adjust(-excess, swept)
            else:
                from_reserve = underlying_in - deposit
                if from_reserve > 0 and self.vault.preview_deposit(underlying_in) == 0:
                    # reserve dust buys no vault shares: it stays with Unlocked
                    self._reserve = self._reserve.adjust(from_reserve)
                    underlying_in = deposit
                    value_in -= from_reserve
                new_shares = self.vault.deposit(underlying_in) if underlying_in > 0 else ZERO
                if shares_in + new_shares > 0:
                    self._vault_shares[maturity] = \
                        self.vault_shares_for(maturity) + shares_in + new_shares
                minted = value_in

            state_changes: List[UnitStateChange] = []
            units: Tuple[Unit, ...] = ()
            if minted > 0:
                moves.append(Move(minted, target_id, SYSTEM_WALLET, destination, "mint"))
                if not self.ledger.has_unit(target_id):
                    units = (term_unit(target, start),)
                elif isinstance(target, Locked):
                    state_changes = self._record_start(target, start)
            if moves:
                self.ledger.execute_or_raise(build_transaction(
                    self.ledger, moves, state_changes,
                    origin=self._origin(event), units_to_create=units,
                ))

            if self.verbose:
                print(f"✓ {event} {caller} → {destination}: {value_in} in, "
                      f"{minted} {asset_symbol(target)} minted")
            return minted

    def _record_start(self, target: Locked, start: int) -> List[UnitStateChange]:
        token_id = encode_asset_id(target)
        old_state = self.ledger.get_unit_state(token_id)
        starts = tuple(old_state.get('starts', ()))
        if start in starts:
            return []
        new_state = {**old_state, 'starts': tuple(sorted(starts + (start,)))}
        return [UnitStateChange(token_id, old_state, new_state)]

    # ========================================================================
    # UNLOCK
    # ========================================================================

    def _pay_unlocked(self, amount: Decimal) -> Decimal:
        supply = self._supply(UNLOCKED_ID)
        due = value_of_shares(amount, supply, self._unlocked_value())
        from_reserve, shortfall = split_payment(due, self._reserve.underlying_reserve)
        if shortfall == 0:
            self._reserve = self._reserve.adjust(-due)
            return due
        shares = self.vault.preview_withdraw(shortfall)
        if shares > self._reserve.vault_share_reserve:
            raise InsufficientReserve(
                f"shortfall of {shortfall} needs {shares} vault shares, reserve holds "
                f"{self._reserve.vault_share_reserve}"
            )
        redeemed = self.vault.redeem(shares)
        # any redemption surplus over the shortfall stays in the reserve
        self._reserve = self._reserve.adjust(redeemed - due, -shares)
        return due

    def _pay_locked(self, maturity: int, amount: Decimal) -> Decimal:
        attributed = self.vault_shares_for(maturity)
        supply = self._supply(maturity)
        shares = attributed_slice(amount, attributed, supply)
        if attributed == 0 or supply == 0 or shares > attributed:
            raise InsufficientReserve(
                f"Locked({maturity}) holds {attributed} vault shares for {supply} shares, "
                f"cannot redeem {amount}"
            )
        self._vault_shares[maturity] = attributed - shares
        return self.vault.redeem(shares) if shares > 0 else ZERO

    def unlock(
        self,
        caller: str,
        destination: str,
        ids: Sequence[int],
        amounts: Sequence,
    ) -> Decimal:
        """
        Burn caller's shares and pay the underlying they are worth to destination.

        Returns:
            Total underlying paid

        Raises:
            InsufficientReserve: A family cannot back the requested amount
            InsufficientBalance: Caller holds fewer shares than burned
        """
        with self._call("UNLOCK"):
            pairs = self._amounts(ids, amounts)
            moves: List[Move] = []
            total_paid = ZERO
            for asset, amount in pairs:
                if amount == 0:
                    continue
                if isinstance(asset, Unlocked):
                    paid = self._pay_unlocked(amount)
                else:
                    paid = self._pay_locked(asset.maturity, amount)
                self._burn(moves, asset, amount, caller, "unlock")
                total_paid += paid

            if total_paid > 0:
                moves.append(Move(total_paid, UNDERLYING_ID, self.wallet, destination, "payout"))
            if moves:
                self.ledger.execute_or_raise(
                    build_transaction(self.ledger, moves, origin=self._origin("UNLOCK"))
                )

            if self.verbose:
                print(f"✓ UNLOCK {caller} → {destination}: {total_paid} paid")
            return total_paid
