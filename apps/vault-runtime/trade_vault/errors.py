from __future__ import annotations

from .revert import encode_error_string

PANIC_SELECTOR = bytes.fromhex("4e487b71")


class Revert(Exception):
    """On-chain failure. Aborts the enclosing transaction."""

    default_message = "Transaction reverted"

    def __init__(self, message: str | None = None, data: bytes | None = None):
        message = message if message is not None else self.default_message
        super().__init__(message)
        self.message = message
        self.data = data if data is not None else encode_error_string(message)


class Unauthorized(Revert):
    default_message = "Unauthorized: caller is not a manager"


class HashMismatch(Revert):
    default_message = "HashMismatch: digest does not match call data"


class InvalidSignature(Revert):
    default_message = "InvalidSignature: signer is not the trigger"


class SwapExecutionFailed(Revert):
    """The swapper call reverted; the message is the swapper's own reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InsufficientBalance(Revert):
    default_message = "InsufficientBalance"


class InsufficientAllowance(Revert):
    default_message = "InsufficientAllowance"


class UnsupportedAsset(Revert):
    default_message = "UnsupportedAsset: native currency is not supported"


class ValueMismatch(Revert):
    default_message = "ValueMismatch: attached value does not equal amount"


class AlreadyInitialized(Revert):
    default_message = "Initializable: contract is already initialized"


class ReentrantCall(Revert):
    default_message = "ReentrancyGuard: reentrant call"


class InvalidPayload(Revert):
    default_message = "InvalidPayload: instruction could not be decoded"


class ArithmeticUnderflow(Revert):
    """Solidity checked-arithmetic panic (code 0x11)."""

    def __init__(self) -> None:
        super().__init__("Panic: arithmetic underflow", data=PANIC_SELECTOR + (0x11).to_bytes(32, "big"))


class ClientError(Exception):
    """Off-chain client failure (configuration, RPC, broadcast)."""


class KeystoreError(ClientError):
    """Keystore file is unavailable, unsafe or cannot be decrypted."""


class RpcError(ClientError):
    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


class TransactionReverted(ClientError):
    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} was mined with failure status.")
        self.tx_hash = tx_hash


class TxTimeout(ClientError):
    """Confirmation was not observed in time.

    The transaction may still be mined later; callers must re-query chain
    state before resubmitting.
    """

    def __init__(self, tx_hash: str, timeout_sec: float):
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout_sec}s; final state unknown.")
        self.tx_hash = tx_hash
        self.timeout_sec = timeout_sec


class SubprocessTimeout(ClientError):
    """A cast subprocess timed out."""

    def __init__(self, kind: str, timeout_sec: int, cmd: list[str]):
        super().__init__(f"Timed out after {timeout_sec}s running: {' '.join(_redact(cmd))}")
        self.kind = kind
        self.timeout_sec = timeout_sec
        self.cmd = cmd


def _redact(cmd: list[str]) -> list[str]:
    out: list[str] = []
    hide_next = False
    for part in cmd:
        out.append("<redacted>" if hide_next else part)
        hide_next = part == "--private-key"
    return out
