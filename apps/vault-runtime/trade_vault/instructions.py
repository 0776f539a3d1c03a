"""Swap instruction codec.

An instruction is `abi.encode(address swapper, address tokenIn, address
tokenOut, uint256 amountIn, bytes payload)` and its payload is
`abi.encode(bytes32 digest, bytes signature, bytes innerCallData)`.

Nothing on-chain records consumed digests. Replay safety belongs to the
signer, e.g. a nonce or deadline inside innerCallData that the swapper
itself checks.
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError

from .crypto import keccak256, sign_digest
from .errors import InvalidPayload

INSTRUCTION_TYPES = ["address", "address", "address", "uint256", "bytes"]
PAYLOAD_TYPES = ["bytes32", "bytes", "bytes"]


@dataclass(frozen=True)
class SwapPayload:
    digest: bytes
    signature: bytes
    inner_call_data: bytes

    def encode(self) -> bytes:
        return abi_encode(PAYLOAD_TYPES, [self.digest, self.signature, self.inner_call_data])

    @classmethod
    def decode(cls, raw: bytes) -> "SwapPayload":
        try:
            digest, signature, inner = abi_decode(PAYLOAD_TYPES, bytes(raw))
        except (DecodingError, OverflowError, ValueError) as exc:
            raise InvalidPayload() from exc
        return cls(digest=digest, signature=signature, inner_call_data=inner)


@dataclass(frozen=True)
class SwapInstruction:
    swapper: str
    token_in: str
    token_out: str
    amount_in: int
    payload: bytes

    def encode(self) -> bytes:
        return abi_encode(
            INSTRUCTION_TYPES,
            [self.swapper, self.token_in, self.token_out, self.amount_in, self.payload],
        )

    @classmethod
    def decode(cls, raw: bytes) -> "SwapInstruction":
        try:
            swapper, token_in, token_out, amount_in, payload = abi_decode(INSTRUCTION_TYPES, bytes(raw))
        except (DecodingError, OverflowError, ValueError) as exc:
            raise InvalidPayload() from exc
        return cls(
            swapper=swapper.lower(),
            token_in=token_in.lower(),
            token_out=token_out.lower(),
            amount_in=amount_in,
            payload=payload,
        )


def sign_payload(trigger_key_hex: str, inner_call_data: bytes) -> SwapPayload:
    digest = keccak256(inner_call_data)
    return SwapPayload(digest=digest, signature=sign_digest(trigger_key_hex, digest), inner_call_data=bytes(inner_call_data))


def build_swap_instruction(
    trigger_key_hex: str,
    swapper: str,
    token_in: str,
    token_out: str,
    amount_in: int,
    inner_call_data: bytes,
) -> SwapInstruction:
    payload = sign_payload(trigger_key_hex, inner_call_data)
    return SwapInstruction(
        swapper=swapper.lower(),
        token_in=token_in.lower(),
        token_out=token_out.lower(),
        amount_in=int(amount_in),
        payload=payload.encode(),
    )
