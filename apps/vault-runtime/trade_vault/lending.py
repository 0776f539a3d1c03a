"""Money-market (Aave-style) adapter for the vault.

Pool math is the pool's business; the vault only checks its own balance,
grants exact approvals, forwards the call and emits an accounting event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .errors import InsufficientBalance, Revert, UnsupportedAsset, ValueMismatch
from .ledger import NATIVE_ASSET, CallContext
from .state import transactional


@dataclass(frozen=True)
class UserReserveData:
    current_a_token_balance: int
    current_stable_debt: int = 0
    current_variable_debt: int = 0
    principal_stable_debt: int = 0
    scaled_variable_debt: int = 0
    stable_borrow_rate: int = 0
    liquidity_rate: int = 0
    stable_rate_last_updated: int = 0
    usage_as_collateral_enabled: bool = False


class LendingPool(Protocol):
    def supply(self, ctx: CallContext, asset: str, amount: int, on_behalf_of: str, referral_code: int) -> None: ...

    def withdraw(self, ctx: CallContext, asset: str, amount: int, to: str) -> int: ...

    def borrow(
        self, ctx: CallContext, asset: str, amount: int, interest_rate_mode: int, referral_code: int, on_behalf_of: str
    ) -> None: ...

    def repay(self, ctx: CallContext, asset: str, amount: int, interest_rate_mode: int, on_behalf_of: str) -> int: ...


class LendingDataProvider(Protocol):
    def get_user_reserve_data(self, asset: str, user: str) -> UserReserveData: ...


class NativeGateway(Protocol):
    def repay_eth(self, ctx: CallContext, pool: str, amount: int, rate_mode: int, on_behalf_of: str) -> None: ...


class LendingAdapterMixin:
    """Lending entry points of TradeVault."""

    def _pool(self) -> LendingPool:
        return self.ledger.contract_at(self._state.lending_pool)

    def _outgoing(self, value: int = 0) -> CallContext:
        return CallContext(ledger=self.ledger, sender=self.address, value=value)

    @transactional
    def aave_supply(self, sender: str, asset: str, amount: int, _unused: int = 0) -> None:
        self._require_manager(sender)
        state = self._state
        asset = asset.lower()
        held = self.ledger.balance_of(asset, self.address)
        if held < amount:
            raise InsufficientBalance(f"InsufficientBalance: held {held} < requested {amount}")
        self.ledger.approve(asset, self.address, state.lending_pool, amount)
        self._pool().supply(self._outgoing(), asset, amount, self.address, state.lending_referral_code)
        self.ledger.emit(self.address, "AaveSupply", asset=asset, amount=amount)

    @transactional
    def aave_withdraw(self, sender: str, asset: str, amount: int) -> None:
        self._require_manager(sender)
        asset = asset.lower()
        self._pool().withdraw(self._outgoing(), asset, amount, self.address)
        self.ledger.emit(self.address, "AaveWithdraw", asset=asset, amount=amount)

    @transactional
    def aave_borrow(self, sender: str, asset: str, amount: int, rate_mode: int) -> None:
        self._require_manager(sender)
        asset = asset.lower()
        if asset == NATIVE_ASSET:
            raise UnsupportedAsset()
        self._pool().borrow(
            self._outgoing(), asset, amount, rate_mode, self._state.lending_referral_code, self.address
        )
        self.ledger.emit(self.address, "AaveBorrow", asset=asset, amount=amount)

    @transactional
    def aave_repay(self, sender: str, asset: str, amount: int, rate_mode: int, value: int = 0) -> None:
        """Repay debt. Native repayment must attach exactly `amount` as value;
        token repayment must attach none."""
        if value:
            self.ledger.transfer_native(sender, self.address, value)
        self._require_manager(sender)
        state = self._state
        asset = asset.lower()
        if asset == NATIVE_ASSET:
            if value != amount:
                raise ValueMismatch(f"ValueMismatch: value {value} != amount {amount}")
            gateway: NativeGateway = self.ledger.contract_at(state.lending_gateway)
            self.ledger.transfer_native(self.address, state.lending_gateway, amount)
            gateway.repay_eth(self._outgoing(amount), state.lending_pool, amount, rate_mode, self.address)
        else:
            if value:
                raise ValueMismatch(f"ValueMismatch: value {value} sent with token repay")
            self.ledger.approve(asset, self.address, state.lending_pool, amount)
            self._pool().repay(self._outgoing(), asset, amount, rate_mode, self.address)
        self.ledger.emit(self.address, "AaveRepay", asset=asset, amount=amount)

    @transactional
    def set_aave_referral_code(self, sender: str, code: int) -> None:
        self._require_manager(sender)
        if not 0 <= code < 2**16:
            raise Revert("Referral code must fit in uint16")
        self._state.lending_referral_code = code

    def get_aave_position_sizes(self, assets: list[str]) -> list[int]:
        provider: LendingDataProvider = self.ledger.contract_at(self._state.lending_data_provider)
        return [
            provider.get_user_reserve_data(asset.lower(), self.address).current_a_token_balance for asset in assets
        ]
