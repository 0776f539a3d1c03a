"""TradeVault: custodial trading contract.

Managers drive every privileged operation. Swaps additionally need the
trigger's signature over the exact call data sent to the swapper. The
`tokenIn`/`tokenOut`/`amountIn` arguments of a swap are advisory: they pick
the approval and the measured token and are echoed in the event, but what
actually happens on-chain is whatever the signed call data does.
"""

from __future__ import annotations

import logging

from .crypto import MAX_UINT256, keccak256, normalize_address, recover_signer
from .errors import (
    AlreadyInitialized,
    ArithmeticUnderflow,
    HashMismatch,
    InvalidSignature,
    ReentrantCall,
    Revert,
    SwapExecutionFailed,
    Unauthorized,
)
from .instructions import SwapInstruction, SwapPayload
from .ledger import Ledger
from .lending import LendingAdapterMixin
from .margin import MarginAdapterMixin
from .revert import decode_revert
from .state import AccessPolicy, VaultState, transactional

logger = logging.getLogger(__name__)


class TradeVault(LendingAdapterMixin, MarginAdapterMixin):
    address: str

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        ledger.deploy(self)

    @property
    def _state(self) -> VaultState:
        return self.ledger.storage(self.address, VaultState)

    # ---- initialization / access control ----

    @transactional
    def initialize(
        self,
        sender: str,
        *,
        trigger: str,
        manager: str,
        lending_pool: str,
        lending_data_provider: str,
        lending_gateway: str,
        margin_router: str,
        margin_position_router: str,
        margin_referral_code: bytes = b"\x00" * 32,
        lending_referral_code: int = 0,
        swap_approval_amount: int = MAX_UINT256,
        access_policy: AccessPolicy = AccessPolicy.GUARDED,
    ) -> None:
        state = self._state
        if state.initialized:
            raise AlreadyInitialized()
        state.initialized = True
        state.trigger = normalize_address(trigger)
        state.lending_pool = normalize_address(lending_pool)
        state.lending_data_provider = normalize_address(lending_data_provider)
        state.lending_gateway = normalize_address(lending_gateway)
        state.lending_referral_code = lending_referral_code
        state.margin_router = normalize_address(margin_router)
        state.margin_position_router = normalize_address(margin_position_router)
        state.margin_referral_code = bytes(margin_referral_code).ljust(32, b"\x00")[:32]
        state.swap_approval_amount = swap_approval_amount
        state.access_policy = access_policy
        for identity in (sender, manager):
            self._set_manager(normalize_address(identity), True)

    @property
    def trigger(self) -> str:
        return self._state.trigger

    @property
    def access_policy(self) -> AccessPolicy:
        return self._state.access_policy

    def is_manager(self, identity: str) -> bool:
        return identity.lower() in self._state.managers

    def _require_manager(self, caller: str) -> None:
        if not self.is_manager(caller):
            raise Unauthorized()

    def _set_manager(self, identity: str, enabled: bool) -> None:
        managers = self._state.managers
        if enabled:
            managers.add(identity)
            self.ledger.emit(self.address, "ManagerAdded", identity=identity)
        else:
            managers.discard(identity)
            self.ledger.emit(self.address, "ManagerRemoved", identity=identity)

    @transactional
    def set_manager(self, sender: str, identity: str, enabled: bool) -> None:
        if self._state.access_policy is AccessPolicy.GUARDED:
            self._require_manager(sender)
        self._set_manager(normalize_address(identity), enabled)

    @transactional
    def set_swap_approval_amount(self, sender: str, amount: int) -> None:
        self._require_manager(sender)
        if not 0 <= amount <= MAX_UINT256:
            raise Revert("Approval amount must fit in uint256")
        self._state.swap_approval_amount = amount

    # ---- swaps ----

    def _enter(self) -> None:
        state = self._state
        if state.entered:
            raise ReentrantCall()
        state.entered = True

    def _exit(self) -> None:
        self._state.entered = False

    @transactional
    def swap(self, sender: str, swapper: str, token_in: str, token_out: str, amount_in: int, payload: bytes) -> int:
        self._require_manager(sender)
        self._enter()
        try:
            return self._swap(swapper, token_in, token_out, amount_in, payload)
        finally:
            self._exit()

    @transactional
    def multi_swap(self, sender: str, instructions: list[bytes]) -> list[int]:
        """Execute every encoded instruction in order; any failure aborts them all."""
        self._require_manager(sender)
        self._enter()
        try:
            amounts = []
            for raw in instructions:
                instruction = SwapInstruction.decode(raw)
                amounts.append(
                    self._swap(
                        instruction.swapper,
                        instruction.token_in,
                        instruction.token_out,
                        instruction.amount_in,
                        instruction.payload,
                    )
                )
            return amounts
        finally:
            self._exit()

    def _swap(self, swapper: str, token_in: str, token_out: str, amount_in: int, payload: bytes) -> int:
        ledger = self.ledger
        state = self._state
        swapper = normalize_address(swapper)
        token_in = normalize_address(token_in)
        token_out = normalize_address(token_out)

        ledger.approve(token_in, self.address, swapper, state.swap_approval_amount)
        balance_before = ledger.balance_of(token_out, self.address)

        decoded = SwapPayload.decode(payload)
        if decoded.digest != keccak256(decoded.inner_call_data):
            raise HashMismatch()
        if recover_signer(decoded.digest, decoded.signature) != state.trigger:
            raise InvalidSignature()

        success, return_data = ledger.call(self.address, swapper, decoded.inner_call_data)
        if not success:
            raise SwapExecutionFailed(decode_revert(return_data))

        balance_after = ledger.balance_of(token_out, self.address)
        if balance_after < balance_before:
            raise ArithmeticUnderflow()
        amount_out = balance_after - balance_before
        ledger.emit(
            self.address,
            "SwapSuccess",
            tokenIn=token_in,
            tokenOut=token_out,
            amountIn=amount_in,
            amountOut=amount_out,
        )
        logger.debug("Swap via %s: %s -> %s, out %d", swapper, token_in, token_out, amount_out)
        return amount_out

    # ---- views ----

    def get_assets_sizes(self, assets: list[str]) -> list[int]:
        return [self.ledger.balance_of(asset.lower(), self.address) for asset in assets]
