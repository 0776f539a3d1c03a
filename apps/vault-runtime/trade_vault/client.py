"""Off-chain orchestration across chains.

Each configured chain is an independent actor: its own RPC connection,
nonce sequence and single-worker queue for state-changing submissions.
Different chains run in parallel; submissions on one chain are serialized.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Callable, Sequence

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError

from .config import ChainConfig, ClientConfig
from .crypto import derive_address, is_hex_address, keccak256
from .errors import ClientError
from .instructions import SwapInstruction
from .rpc import NonceAllocator, RpcClient, TransactionSender, wait_tx_confirmed

logger = logging.getLogger(__name__)

WEI_PER_UNIT = Decimal(10) ** 18
MULTISWAP_GAS_LIMIT_MULTIPLIER = 1.2


def function_selector(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))[:4]


def encode_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> bytes:
    return function_selector(signature) + abi_encode(list(types), list(args))


def wei_to_decimal(value: int) -> Decimal:
    return Decimal(value) / WEI_PER_UNIT


def build_multicall_tx(token: str, amount: Decimal | int, targets: Sequence[str], txs: Sequence[str]) -> str:
    """Calldata for the arbitrage contract's multiSwap, to be signed elsewhere."""
    addresses = []
    for target in targets:
        if not is_hex_address(target):
            raise ClientError(f"Invalid target address: '{target}'.")
        addresses.append(target.lower())
    payloads = []
    for raw in txs:
        try:
            payloads.append(bytes.fromhex(raw[2:] if raw.startswith("0x") else raw))
        except ValueError as exc:
            raise ClientError(f"failed to decode tx: {raw}") from exc
    if not is_hex_address(token):
        raise ClientError(f"Invalid token address: '{token}'.")
    packed = encode_call(
        "multiSwap(address,uint256,address[],bytes[])",
        ["address", "uint256", "address[]", "bytes[]"],
        [token.lower(), int(amount), addresses, payloads],
    )
    return "0x" + packed.hex()


class Chain:
    def __init__(
        self,
        cfg: ChainConfig,
        private_key_hex: str,
        user_address: str,
        gas_multiplier: float,
        rpc: RpcClient | None = None,
    ):
        self.config = cfg
        self.user_address = user_address
        self.rpc = rpc or RpcClient(cfg.node_address)
        self.nonces = NonceAllocator(lambda: self.rpc.pending_nonce(user_address))
        self.sender = TransactionSender(self.rpc, private_key_hex, user_address, self.nonces, gas_multiplier)
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"chain-{cfg.chain_id}")
        self._feeder: str | None = None
        self._feeder_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._queue.submit(fn, *args, **kwargs)

    def call(self, to: str, signature: str, types: Sequence[str], args: Sequence[Any], returns: Sequence[str]) -> tuple:
        raw = self.rpc.call(to, encode_call(signature, types, args), self.user_address)
        try:
            return abi_decode(list(returns), raw)
        except DecodingError as exc:
            raise ClientError(f"{signature} returned undecodable data from {to}.") from exc

    def transact(self, to: str, data: bytes, *, gas_limit: int | None = None) -> dict[str, Any]:
        tx_hash = self.sender.send(to, data, gas_limit=gas_limit)
        return wait_tx_confirmed(self.rpc, tx_hash)

    def feeder_address(self) -> str:
        with self._feeder_lock:
            if self._feeder is None:
                (feeder,) = self.call(self.config.interaction_address, "feeder()", [], [], ["address"])
                self._feeder = feeder.lower()
            return self._feeder

    def close(self) -> None:
        self._queue.shutdown(wait=True)


class Interactor:
    def __init__(
        self,
        config: ClientConfig,
        private_key_hex: str,
        rpc_factory: Callable[[ChainConfig], RpcClient] | None = None,
    ):
        self.user_address = derive_address(private_key_hex)
        self.gas_multiplier = config.gas_multiplier
        self.chains: dict[int, Chain] = {}
        for cfg in config.blockchains:
            rpc = rpc_factory(cfg) if rpc_factory else None
            self.chains[cfg.chain_id] = Chain(cfg, private_key_hex, self.user_address, config.gas_multiplier, rpc)
            logger.info(
                "Chain %s inited with interaction contract %s, USDT %s",
                cfg.name,
                cfg.interaction_address,
                cfg.usdc_address,
            )
        logger.info("Interaction inited with user address: %s", self.user_address)

    def __enter__(self) -> "Interactor":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        for chain in self.chains.values():
            chain.close()

    def get_chain(self, chain_id: int) -> Chain:
        chain = self.chains.get(chain_id)
        if chain is None:
            raise ClientError(f"chain not found: {chain_id}")
        return chain

    def submit(self, chain_id: int, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue work on a chain's worker; returns a Future for parallel use across chains."""
        return self.get_chain(chain_id).submit(fn, *args, **kwargs)

    def _run(self, chain_id: int, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return self.submit(chain_id, fn, *args, **kwargs).result()

    # ---- trade vault ----

    def multi_swap(self, chain_id: int, trading_address: str, instructions: Sequence[SwapInstruction]) -> dict[str, Any]:
        chain = self.get_chain(chain_id)
        data = encode_call("multiSwap(bytes[])", ["bytes[]"], [[item.encode() for item in instructions]])

        def _send() -> dict[str, Any]:
            estimate = chain.rpc.estimate_gas(chain.user_address, trading_address, data)
            return chain.transact(trading_address, data, gas_limit=int(estimate * MULTISWAP_GAS_LIMIT_MULTIPLIER))

        return self._run(chain_id, _send)

    def aave_positions(self, chain_id: int, trading_address: str, tokens: Sequence[str]) -> list[Decimal]:
        chain = self.get_chain(chain_id)
        assets = [token.lower() if token else chain.config.usdc_address for token in tokens]
        try:
            (values,) = chain.call(
                trading_address,
                "getAavePositionSizes(address[])",
                ["address[]"],
                [assets],
                ["uint256[]"],
            )
        except ClientError as exc:
            raise ClientError(f"failed to get aave positions: {exc}") from exc
        return [wei_to_decimal(value) for value in values]

    def aave_withdraw(self, chain_id: int, trading_address: str, token: str, amount: Decimal | int) -> dict[str, Any]:
        chain = self.get_chain(chain_id)
        data = encode_call("aaveWithdraw(address,uint256)", ["address", "uint256"], [token.lower(), int(amount)])
        return self._run(chain_id, chain.transact, trading_address, data)

    # ---- margin protocol ----

    def gmx_positions(
        self,
        chain_id: int,
        collateral_tokens: Sequence[str],
        index_tokens: Sequence[str],
        is_long: Sequence[bool],
        trade_address: str,
        vault_address: str,
        reader_address: str,
    ) -> list[int]:
        chain = self.get_chain(chain_id)
        try:
            (values,) = chain.call(
                reader_address,
                "getPositions(address,address,address[],address[],bool[])",
                ["address", "address", "address[]", "address[]", "bool[]"],
                [
                    vault_address.lower(),
                    trade_address.lower(),
                    [token.lower() for token in collateral_tokens],
                    [token.lower() for token in index_tokens],
                    list(is_long),
                ],
                ["uint256[]"],
            )
        except ClientError as exc:
            raise ClientError(f"failed to fetch gmx positions: {exc}") from exc
        return list(values)

    # ---- fund feeder ----

    def withdraw_multiple(self, chain_id: int, fund_id: int, trade_tvl: int) -> dict[str, Any]:
        chain = self.get_chain(chain_id)
        (users,) = chain.call(
            chain.feeder_address(),
            "userWaitingForWithdrawal(uint256)",
            ["uint256"],
            [fund_id],
            ["address[]"],
        )
        data = encode_call(
            "withdrawMultiple(uint256,address[],uint256)",
            ["uint256", "address[]", "uint256"],
            [fund_id, [user.lower() for user in users], trade_tvl],
        )
        return self._run(chain_id, chain.transact, chain.config.interaction_address, data)

    def user_data(self, chain_id: int, fund_id: int, user: str) -> dict[str, int]:
        chain = self.get_chain(chain_id)
        total_deposit, total_withdrawals, token_amount, pending_withdrawal_tokens = chain.call(
            chain.feeder_address(),
            "getUserData(uint256,address)",
            ["uint256", "address"],
            [fund_id, user.lower()],
            ["uint256", "uint256", "uint256", "uint256"],
        )
        return {
            "totalDeposit": total_deposit,
            "totalWithdrawals": total_withdrawals,
            "tokenAmount": token_amount,
            "pendingWithdrawalTokens": pending_withdrawal_tokens,
        }
