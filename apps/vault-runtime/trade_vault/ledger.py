"""In-process model of the host ledger.

Holds token and native balances, allowances, contract storage and the event
log in one WorldState. Transactions are all-or-nothing: the outermost
`transaction()` snapshots the world and restores it if anything escapes.
Raw calls (`call`) isolate the callee the same way the EVM does, so a
reverting target only loses its own effects.
"""

from __future__ import annotations

import copy
import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

from .crypto import MAX_UINT256, normalize_address
from .errors import InsufficientAllowance, InsufficientBalance, Revert

logger = logging.getLogger(__name__)

NATIVE_ASSET = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"


@dataclass(frozen=True)
class Event:
    emitter: str
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class CallContext:
    ledger: "Ledger"
    sender: str
    value: int = 0


class CallTarget(Protocol):
    address: str

    def handle(self, ctx: CallContext, data: bytes) -> bytes:
        """Execute raw call data. Raise Revert to fail the call."""


@dataclass
class WorldState:
    balances: dict[tuple[str, str], int] = field(default_factory=dict)
    allowances: dict[tuple[str, str, str], int] = field(default_factory=dict)
    native: dict[str, int] = field(default_factory=dict)
    storage: dict[str, Any] = field(default_factory=dict)
    logs: list[Event] = field(default_factory=list)


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int


class Ledger:
    def __init__(self) -> None:
        self.world = WorldState()
        self.tokens: dict[str, TokenInfo] = {}
        self.contracts: dict[str, Any] = {}
        self._depth = 0

    # ---- accounts / deployment ----

    @staticmethod
    def new_address() -> str:
        return "0x" + secrets.token_hex(20)

    def deploy(self, contract: Any) -> str:
        address = self.new_address()
        contract.address = address
        self.contracts[address] = contract
        return address

    def contract_at(self, address: str) -> Any:
        contract = self.contracts.get(normalize_address(address))
        if contract is None:
            raise Revert(f"No contract deployed at {address}")
        return contract

    def create_token(self, symbol: str, decimals: int = 18) -> str:
        address = self.new_address()
        self.tokens[address] = TokenInfo(address=address, symbol=symbol, decimals=decimals)
        return address

    def storage(self, address: str, factory: Any = dict) -> Any:
        return self.world.storage.setdefault(address, factory())

    # ---- atomicity ----

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        snapshot = copy.deepcopy(self.world)
        self._depth = 1
        try:
            yield self
        except BaseException:
            self.world = snapshot
            raise
        finally:
            self._depth = 0

    def call(self, sender: str, target: str, data: bytes, value: int = 0) -> tuple[bool, bytes]:
        """Low-level call. Returns (success, return_data) and never raises Revert."""
        target = normalize_address(target)
        snapshot = copy.deepcopy(self.world)
        depth = self._depth
        self._depth = depth + 1
        try:
            if value:
                self.transfer_native(sender, target, value)
            contract = self.contracts.get(target)
            if contract is None:
                return True, b""
            result = contract.handle(CallContext(ledger=self, sender=sender, value=value), bytes(data))
            return True, bytes(result or b"")
        except Revert as exc:
            self.world = snapshot
            logger.debug("Call to %s reverted: %s", target, exc.message)
            return False, exc.data
        finally:
            self._depth = depth

    # ---- native currency ----

    def native_balance(self, holder: str) -> int:
        return self.world.native.get(holder, 0)

    def fund_native(self, holder: str, amount: int) -> None:
        self.world.native[holder] = self.native_balance(holder) + amount

    def transfer_native(self, sender: str, to: str, amount: int) -> None:
        held = self.native_balance(sender)
        if held < amount:
            raise InsufficientBalance(f"InsufficientBalance: native balance {held} < {amount}")
        self.world.native[sender] = held - amount
        self.world.native[to] = self.native_balance(to) + amount

    # ---- tokens ----

    def balance_of(self, token: str, holder: str) -> int:
        if token == NATIVE_ASSET:
            return self.native_balance(holder)
        return self.world.balances.get((token, holder), 0)

    def mint(self, token: str, to: str, amount: int) -> None:
        self.world.balances[(token, to)] = self.balance_of(token, to) + amount

    def burn(self, token: str, holder: str, amount: int) -> None:
        held = self.balance_of(token, holder)
        if held < amount:
            raise InsufficientBalance(f"InsufficientBalance: {held} < {amount}")
        self.world.balances[(token, holder)] = held - amount

    def transfer(self, token: str, sender: str, to: str, amount: int) -> None:
        self.burn(token, sender, amount)
        self.mint(token, to, amount)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self.world.allowances.get((token, owner, spender), 0)

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        self.world.allowances[(token, owner, spender)] = amount

    def transfer_from(self, token: str, spender: str, owner: str, to: str, amount: int) -> None:
        allowed = self.allowance(token, owner, spender)
        if allowed < amount:
            raise InsufficientAllowance(f"InsufficientAllowance: {allowed} < {amount}")
        if allowed != MAX_UINT256:
            self.world.allowances[(token, owner, spender)] = allowed - amount
        self.transfer(token, owner, to, amount)

    # ---- events ----

    def emit(self, emitter: str, name: str, **args: Any) -> Event:
        event = Event(emitter=emitter, name=name, args=args)
        self.world.logs.append(event)
        return event

    def events(self, name: str | None = None, emitter: str | None = None) -> list[Event]:
        return [
            event
            for event in self.world.logs
            if (name is None or event.name == name) and (emitter is None or event.emitter == emitter)
        ]
