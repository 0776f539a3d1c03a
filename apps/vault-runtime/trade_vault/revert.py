"""Revert data helpers.

A standard Solidity failure string is returned as the `Error(string)`
selector followed by the ABI encoding of the message.
"""

from __future__ import annotations

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")
SILENT_REVERT_MESSAGE = "Transaction reverted silently"

# selector (4) + string offset word (32) + string length word (32)
MIN_ERROR_STRING_LENGTH = 68


def encode_error_string(message: str) -> bytes:
    return ERROR_STRING_SELECTOR + abi_encode(["string"], [message])


def decode_revert(return_data: bytes) -> str:
    if len(return_data) < MIN_ERROR_STRING_LENGTH:
        return SILENT_REVERT_MESSAGE
    try:
        (message,) = abi_decode(["string"], bytes(return_data[4:]))
    except (DecodingError, UnicodeDecodeError, OverflowError, ValueError):
        return SILENT_REVERT_MESSAGE
    return message
