"""Node transport: JSON-RPC reads, cast-based broadcast, nonces and receipts."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import secrets
import shutil
import subprocess
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable

from . import config
from .errors import ClientError, RpcError, SubprocessTimeout, TransactionReverted, TxTimeout

logger = logging.getLogger(__name__)

RETRYABLE_SEND_FRAGMENTS = (
    "replacement transaction underpriced",
    "nonce too low",
    "already known",
    "temporarily underpriced",
    "transaction underpriced",
)


class RpcClient:
    def __init__(self, url: str, timeout_sec: int | None = None):
        self.url = url
        self.timeout_sec = timeout_sec or config.rpc_timeout_sec()

    def request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": secrets.randbelow(2**31), "method": method, "params": params}
        request = urllib.request.Request(
            url=self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_sec) as response:
                body = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            raise ClientError(f"RPC {method} failed with HTTP {exc.code}.") from exc
        except urllib.error.URLError as exc:
            raise ClientError(f"RPC {method} failed: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise ClientError(f"RPC {method} returned invalid JSON.") from exc
        if not isinstance(body, dict):
            raise ClientError(f"RPC {method} returned a non-object payload.")
        error = body.get("error")
        if isinstance(error, dict):
            raise RpcError(int(error.get("code", -1)), str(error.get("message", "")))
        return body.get("result")

    def call(self, to: str, data: bytes, from_addr: str | None = None) -> bytes:
        tx: dict[str, str] = {"to": to, "data": "0x" + bytes(data).hex()}
        if from_addr:
            tx["from"] = from_addr
        result = self.request("eth_call", [tx, "latest"])
        return _hex_to_bytes(result)

    def gas_price(self) -> int:
        return _hex_to_int(self.request("eth_gasPrice", []))

    def estimate_gas(self, from_addr: str, to: str, data: bytes, value: int = 0) -> int:
        tx = {"from": from_addr, "to": to, "data": "0x" + bytes(data).hex(), "value": hex(value)}
        return _hex_to_int(self.request("eth_estimateGas", [tx]))

    def pending_nonce(self, address: str) -> int:
        return _hex_to_int(self.request("eth_getTransactionCount", [address, "pending"]))

    def chain_id(self) -> int:
        return _hex_to_int(self.request("eth_chainId", []))

    def transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        result = self.request("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise ClientError("eth_getTransactionReceipt returned a non-object payload.")
        return result


def _hex_to_int(value: Any) -> int:
    if not isinstance(value, str) or not re.fullmatch(r"0x[0-9a-fA-F]+", value):
        raise ClientError(f"Expected hex quantity, got {value!r}.")
    return int(value, 16)


def _hex_to_bytes(value: Any) -> bytes:
    if not isinstance(value, str) or not re.fullmatch(r"0x([0-9a-fA-F]{2})*", value):
        raise ClientError(f"Expected hex data, got {value!r}.")
    return bytes.fromhex(value[2:])


def _is_not_found(exc: RpcError) -> bool:
    return "not found" in exc.rpc_message.lower()


def wait_tx_confirmed(
    rpc: RpcClient,
    tx_hash: str,
    timeout_sec: float | None = None,
    poll_sec: float | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """Block until the receipt is available.

    Raises TxTimeout when the deadline passes; the transaction may still be
    mined afterwards.
    """
    timeout_sec = timeout_sec if timeout_sec is not None else config.tx_timeout_sec()
    poll_sec = poll_sec if poll_sec is not None else config.tx_poll_sec()
    deadline = clock() + timeout_sec
    while True:
        try:
            receipt = rpc.transaction_receipt(tx_hash)
        except RpcError as exc:
            if not _is_not_found(exc):
                logger.error("Receipt retrieval failed for %s: %s", tx_hash, exc)
                raise
            receipt = None
        if receipt is not None:
            status = str(receipt.get("status", "0x1")).lower()
            if status not in {"0x1", "1"}:
                raise TransactionReverted(tx_hash)
            logger.info("Tx %s mined", tx_hash)
            return receipt

        logger.info("Transaction %s not yet mined", tx_hash)
        remaining = deadline - clock()
        if remaining <= 0:
            raise TxTimeout(tx_hash, timeout_sec)
        sleep(min(poll_sec, remaining))


class NonceAllocator:
    """Monotonic nonce counter for one sender on one chain."""

    def __init__(self, fetch_pending: Callable[[], int]):
        self._fetch_pending = fetch_pending
        self._lock = threading.Lock()
        self._next: int | None = None

    def allocate(self) -> int:
        with self._lock:
            if self._next is None:
                self._next = self._fetch_pending()
                logger.debug("Nonce seeded at %d", self._next)
            nonce = self._next
            self._next += 1
            return nonce

    def resync(self, next_nonce: int) -> int:
        """Adopt the node's next nonce and allocate it."""
        with self._lock:
            self._next = next_nonce + 1
            logger.info("Nonce resynced to %d", next_nonce)
            return next_nonce

    def reset(self) -> None:
        with self._lock:
            self._next = None


def _find_cast_bin() -> str | None:
    candidates: list[str] = []
    explicit = (os.environ.get("TRADE_VAULT_CAST_BIN") or "").strip()
    if explicit:
        candidates.append(explicit)

    foundry_bin = (os.environ.get("FOUNDRY_BIN") or "").strip()
    if foundry_bin:
        candidates.append(str(pathlib.Path(foundry_bin) / "cast"))

    which_cast = shutil.which("cast")
    if which_cast:
        candidates.append(which_cast)

    candidates.append(str(pathlib.Path.home() / ".foundry" / "bin" / "cast"))

    for entry in candidates:
        path = pathlib.Path(entry).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return None


def require_cast_bin() -> str:
    cast_bin = _find_cast_bin()
    if not cast_bin:
        raise ClientError("Missing dependency: cast.")
    return cast_bin


def run_subprocess(cmd: list[str], *, timeout_sec: int, kind: str) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, text=True, capture_output=True, timeout=timeout_sec)
    except subprocess.TimeoutExpired as exc:
        raise SubprocessTimeout(kind=kind, timeout_sec=timeout_sec, cmd=cmd) from exc


def extract_tx_hash(output: str) -> str:
    trimmed = (output or "").strip()
    if not trimmed:
        raise ClientError("cast send returned empty output.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None

    candidates: list[Any] = []
    if isinstance(parsed, dict):
        candidates.extend([parsed.get("transactionHash"), parsed.get("txHash"), parsed.get("hash")])
    elif isinstance(parsed, str):
        candidates.append(parsed)

    for value in candidates:
        if isinstance(value, str) and re.fullmatch(r"0x[a-fA-F0-9]{64}", value):
            return value

    match = re.search(r"0x[a-fA-F0-9]{64}", trimmed)
    if match:
        return match.group(0)
    raise ClientError("cast send output did not include a transaction hash.")


def retryable_send_error(stderr: str) -> bool:
    normalized = stderr.lower()
    return any(fragment in normalized for fragment in RETRYABLE_SEND_FRAGMENTS)


def parse_next_nonce_from_error(stderr: str) -> int | None:
    # Example: "nonce too low: next nonce 5, tx nonce 4"
    match = re.search(r"nonce too low: next nonce ([0-9]+), tx nonce ([0-9]+)", stderr.lower())
    if not match:
        return None
    return int(match.group(1))


class TransactionSender:
    """Signs and broadcasts transactions for one key on one chain."""

    def __init__(
        self,
        rpc: RpcClient,
        private_key_hex: str,
        from_addr: str,
        nonces: NonceAllocator,
        gas_multiplier: float = config.DEFAULT_GAS_MULTIPLIER,
    ):
        self.rpc = rpc
        self._private_key_hex = private_key_hex
        self.from_addr = from_addr
        self.nonces = nonces
        self.gas_multiplier = gas_multiplier

    def _gas_price(self, suggested: int, attempt: int) -> int:
        base = int(suggested * self.gas_multiplier)
        # Replacement needs a strictly higher price than the pending tx at this nonce.
        bump = max(suggested // 8, 1)
        return base + (2**attempt - 1) * bump

    def send(self, to: str, data: bytes, *, value: int = 0, gas_limit: int | None = None) -> str:
        cast_bin = require_cast_bin()
        attempts = config.tx_send_max_attempts()
        suggested = self.rpc.gas_price()
        nonce = self.nonces.allocate()
        last_err = "cast send failed."
        for attempt in range(attempts):
            cmd = [
                cast_bin,
                "send",
                "--async",
                "--json",
                "--rpc-url",
                self.rpc.url,
                "--private-key",
                self._private_key_hex,
                "--nonce",
                str(nonce),
                "--gas-price",
                str(self._gas_price(suggested, attempt)),
            ]
            if gas_limit is not None:
                cmd.extend(["--gas-limit", str(gas_limit)])
            if value:
                cmd.extend(["--value", str(value)])
            cmd.extend(["--from", self.from_addr, to, "0x" + bytes(data).hex()])

            logger.debug("Broadcast attempt %d to %s with nonce %d", attempt + 1, to, nonce)
            try:
                proc = run_subprocess(cmd, timeout_sec=config.cast_send_timeout_sec(), kind="cast_send")
            except SubprocessTimeout:
                # The node may never have seen this nonce.
                self.nonces.reset()
                raise
            if proc.returncode == 0:
                tx_hash = extract_tx_hash(proc.stdout)
                logger.info("Submitted tx %s (nonce %d)", tx_hash, nonce)
                return tx_hash

            last_err = (proc.stderr or "").strip() or (proc.stdout or "").strip() or "cast send failed."
            is_last = attempt >= attempts - 1
            next_nonce = parse_next_nonce_from_error(last_err)
            if not is_last and next_nonce is not None:
                nonce = self.nonces.resync(next_nonce)
                time.sleep(0.25)
                continue
            if not is_last and retryable_send_error(last_err):
                logger.warning("Retrying broadcast after: %s", last_err)
                time.sleep(0.25)
                continue
            self.nonces.reset()
            if not is_last:
                raise ClientError(last_err)

        raise ClientError(f"{last_err} (after {attempts} attempts)")
