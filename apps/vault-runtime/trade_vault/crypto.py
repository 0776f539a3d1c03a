"""Hashing, addresses and secp256k1 signatures."""

from __future__ import annotations

import re

from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

NULL_ADDRESS = "0x" + "00" * 20
MAX_UINT256 = 2**256 - 1
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SIGNATURE_LENGTH = 65


def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(bytes(data))
    return digest.digest()


def is_hex_address(value: str) -> bool:
    return bool(re.fullmatch(r"0x[a-fA-F0-9]{40}", value))


def normalize_address(value: str) -> str:
    stripped = (value or "").strip()
    if not is_hex_address(stripped):
        raise ValueError(f"Invalid address: '{value}'.")
    return stripped.lower()


def normalize_private_key_hex(value: str) -> str | None:
    stripped = value.strip()
    if stripped.startswith("0x"):
        stripped = stripped[2:]
    if re.fullmatch(r"[a-fA-F0-9]{64}", stripped):
        return stripped.lower()
    return None


def derive_address(private_key_hex: str) -> str:
    private_key_bytes = bytes.fromhex(private_key_hex)
    private_value = int.from_bytes(private_key_bytes, byteorder="big")
    # cryptography validates private key range for secp256k1.
    private_key = ec.derive_private_key(private_value, ec.SECP256K1())
    public_key_bytes = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return "0x" + keccak256(public_key_bytes[1:])[-20:].hex()


def sign_digest(private_key_hex: str, digest: bytes) -> bytes:
    """Sign a 32-byte digest, returning r || s || v with v in {27, 28}."""
    signature = keys.PrivateKey(bytes.fromhex(private_key_hex)).sign_msg_hash(digest)
    return signature.r.to_bytes(32, "big") + signature.s.to_bytes(32, "big") + bytes([signature.v + 27])


def recover_signer(digest: bytes, signature: bytes) -> str:
    """Recover the signing address, or NULL_ADDRESS for anything unrecoverable.

    Never raises; callers treat NULL_ADDRESS as a failed verification.
    """
    if len(signature) != SIGNATURE_LENGTH or len(digest) != 32:
        return NULL_ADDRESS
    r = int.from_bytes(signature[0:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        return NULL_ADDRESS
    if not (0 < r < SECP256K1_N and 0 < s < SECP256K1_N):
        return NULL_ADDRESS
    try:
        public_key = keys.Signature(vrs=(v - 27, r, s)).recover_public_key_from_msg_hash(bytes(digest))
    except (BadSignature, ValidationError):
        return NULL_ADDRESS
    return public_key.to_address().lower()
