"""Perpetual-margin (GMX-style) boundary calls.

Positions are opened and closed through signed orders handled off-chain;
the vault only approves the position router as a plugin and reads fees.
"""

from __future__ import annotations

from typing import Protocol

from .ledger import CallContext
from .state import AccessPolicy, transactional


class MarginRouter(Protocol):
    def approve_plugin(self, ctx: CallContext, plugin: str) -> None: ...


class MarginPositionRouter(Protocol):
    def min_execution_fee(self) -> int: ...


class MarginAdapterMixin:
    @transactional
    def gmx_approve_plugin(self, sender: str) -> None:
        state = self._state
        if state.access_policy is AccessPolicy.GUARDED:
            self._require_manager(sender)
        router: MarginRouter = self.ledger.contract_at(state.margin_router)
        router.approve_plugin(self._outgoing(), state.margin_position_router)

    def gmx_min_execution_fee(self) -> int:
        position_router: MarginPositionRouter = self.ledger.contract_at(self._state.margin_position_router)
        return position_router.min_execution_fee()
