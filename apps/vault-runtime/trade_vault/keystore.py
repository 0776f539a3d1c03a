"""Encrypted-at-rest storage for the operator and trigger signing keys."""

from __future__ import annotations

import base64
import json
import os
import pathlib
import secrets
import stat
from typing import Any

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .crypto import derive_address, normalize_private_key_hex
from .errors import KeystoreError

KEYSTORE_VERSION = 1
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32


def _derive_aes_key(passphrase: str, salt: bytes, params: dict[str, Any] | None = None) -> bytes:
    params = params or {}
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=int(params.get("timeCost", ARGON2_TIME_COST)),
        memory_cost=int(params.get("memoryCost", ARGON2_MEMORY_COST)),
        parallelism=int(params.get("parallelism", ARGON2_PARALLELISM)),
        hash_len=int(params.get("hashLen", ARGON2_HASH_LEN)),
        type=Type.ID,
    )


def encrypt_private_key(private_key_hex: str, passphrase: str) -> dict[str, Any]:
    normalized = normalize_private_key_hex(private_key_hex)
    if normalized is None:
        raise KeystoreError("Private key must be 32 bytes of hex.")
    salt = secrets.token_bytes(16)
    nonce = secrets.token_bytes(12)
    cipher = AESGCM(_derive_aes_key(passphrase, salt))
    ciphertext = cipher.encrypt(nonce, bytes.fromhex(normalized), None)
    return {
        "version": KEYSTORE_VERSION,
        "address": derive_address(normalized),
        "crypto": {
            "enc": "aes-256-gcm",
            "kdf": "argon2id",
            "kdfParams": {
                "timeCost": ARGON2_TIME_COST,
                "memoryCost": ARGON2_MEMORY_COST,
                "parallelism": ARGON2_PARALLELISM,
                "hashLen": ARGON2_HASH_LEN,
            },
            "saltB64": base64.b64encode(salt).decode("ascii"),
            "nonceB64": base64.b64encode(nonce).decode("ascii"),
            "ciphertextB64": base64.b64encode(ciphertext).decode("ascii"),
        },
    }


def decrypt_private_key(entry: dict[str, Any], passphrase: str) -> str:
    crypto = entry.get("crypto")
    if not isinstance(crypto, dict):
        raise KeystoreError("Keystore entry missing crypto object.")

    required = ["enc", "kdf", "kdfParams", "saltB64", "nonceB64", "ciphertextB64"]
    missing = [k for k in required if k not in crypto]
    if missing:
        raise KeystoreError(f"Keystore crypto payload missing fields: {', '.join(missing)}")

    try:
        salt = base64.b64decode(crypto["saltB64"])
        nonce = base64.b64decode(crypto["nonceB64"])
        ciphertext = base64.b64decode(crypto["ciphertextB64"])
    except ValueError as exc:
        raise KeystoreError("Keystore crypto payload is not valid base64.") from exc

    if len(salt) != 16 or len(nonce) != 12 or len(ciphertext) < 16:
        raise KeystoreError("Keystore crypto payload has invalid lengths.")

    cipher = AESGCM(_derive_aes_key(passphrase, salt, crypto.get("kdfParams")))
    try:
        private_key = cipher.decrypt(nonce, ciphertext, None).hex()
    except InvalidTag as exc:
        raise KeystoreError("Keystore passphrase is incorrect or ciphertext is corrupted.") from exc

    address = entry.get("address")
    if isinstance(address, str) and address.lower() != derive_address(private_key):
        raise KeystoreError("Keystore address does not match the decrypted key.")
    return private_key


def write_keystore(path: pathlib.Path, private_key_hex: str, passphrase: str) -> dict[str, Any]:
    entry = encrypt_private_key(private_key_hex, passphrase)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    path.write_text(json.dumps(entry, indent=2), encoding="utf-8")
    if os.name != "nt":
        os.chmod(path, 0o600)
    return entry


def load_keystore(path: pathlib.Path, passphrase: str) -> str:
    if not path.exists():
        raise KeystoreError(f"Keystore not found at '{path}'.")
    if os.name != "nt" and stat.S_IMODE(path.stat().st_mode) != 0o600:
        raise KeystoreError(f"Unsafe keystore permissions for '{path}'. Expected 0o600 owner-only permissions.")
    try:
        entry = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise KeystoreError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(entry, dict) or entry.get("version") != KEYSTORE_VERSION:
        raise KeystoreError(f"Unsupported keystore format in '{path}'.")
    return decrypt_private_key(entry, passphrase)
