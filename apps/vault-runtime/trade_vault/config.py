from __future__ import annotations

import json
import os
import pathlib
import re
from dataclasses import dataclass, field
from typing import Any

from .crypto import is_hex_address, normalize_private_key_hex
from .errors import ClientError
from .keystore import load_keystore

APP_DIR = pathlib.Path(os.environ.get("TRADE_VAULT_HOME", str(pathlib.Path.home() / ".trade-vault")))
DEFAULT_CONFIG_FILE = APP_DIR / "config.json"

DEFAULT_GAS_MULTIPLIER = 1.1
DEFAULT_TX_TIMEOUT_SEC = 15
DEFAULT_TX_POLL_SEC = 1
DEFAULT_RPC_TIMEOUT_SEC = 20
DEFAULT_CAST_SEND_TIMEOUT_SEC = 30
DEFAULT_TX_SEND_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    node_address: str
    interaction_address: str
    usdc_address: str
    swapper_address: str


@dataclass(frozen=True)
class ClientConfig:
    blockchains: list[ChainConfig] = field(default_factory=list)
    gas_multiplier: float = DEFAULT_GAS_MULTIPLIER
    keystore: pathlib.Path | None = None


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    if not re.fullmatch(r"[0-9]+", raw):
        raise ClientError(f"{name} must be an integer.")
    value = int(raw)
    if value < 1:
        raise ClientError(f"{name} must be >= 1.")
    return value


def tx_timeout_sec() -> int:
    return _env_int("TRADE_VAULT_TX_TIMEOUT_SEC", DEFAULT_TX_TIMEOUT_SEC)


def tx_poll_sec() -> int:
    return _env_int("TRADE_VAULT_TX_POLL_SEC", DEFAULT_TX_POLL_SEC)


def rpc_timeout_sec() -> int:
    return _env_int("TRADE_VAULT_RPC_TIMEOUT_SEC", DEFAULT_RPC_TIMEOUT_SEC)


def cast_send_timeout_sec() -> int:
    return _env_int("TRADE_VAULT_CAST_SEND_TIMEOUT_SEC", DEFAULT_CAST_SEND_TIMEOUT_SEC)


def tx_send_max_attempts() -> int:
    return _env_int("TRADE_VAULT_TX_SEND_MAX_ATTEMPTS", DEFAULT_TX_SEND_MAX_ATTEMPTS)


def _require_address(entry: dict[str, Any], key: str, required: bool = True) -> str:
    value = entry.get(key)
    if not value and not required:
        return ""
    if not isinstance(value, str) or not is_hex_address(value):
        raise ClientError(f"Chain config '{key}' must be a hex address.")
    return value.lower()


def _parse_chain(entry: Any) -> ChainConfig:
    if not isinstance(entry, dict):
        raise ClientError("Each blockchains entry must be a JSON object.")
    chain_id = entry.get("chainId")
    if not isinstance(chain_id, int) or chain_id < 1:
        raise ClientError("Chain config 'chainId' must be a positive integer.")
    node = entry.get("nodeAddress")
    if not isinstance(node, str) or not node.strip():
        raise ClientError(f"Chain config for {chain_id} is missing nodeAddress.")
    return ChainConfig(
        chain_id=chain_id,
        name=str(entry.get("name") or chain_id),
        node_address=node.strip(),
        interaction_address=_require_address(entry, "interactionAddress"),
        usdc_address=_require_address(entry, "usdcAddress"),
        swapper_address=_require_address(entry, "swapperAddress", required=False),
    )


def parse_config(data: Any) -> ClientConfig:
    if not isinstance(data, dict):
        raise ClientError("Config must be a JSON object.")
    chains = data.get("blockchains")
    if not isinstance(chains, list) or not chains:
        raise ClientError("Config must list at least one entry in 'blockchains'.")
    parsed = [_parse_chain(entry) for entry in chains]
    ids = [chain.chain_id for chain in parsed]
    if len(set(ids)) != len(ids):
        raise ClientError("Config lists the same chainId more than once.")
    multiplier = data.get("gasMultiplier", DEFAULT_GAS_MULTIPLIER)
    if not isinstance(multiplier, (int, float)) or multiplier < 1:
        raise ClientError("Config 'gasMultiplier' must be a number >= 1.")
    keystore = data.get("keystore")
    return ClientConfig(
        blockchains=parsed,
        gas_multiplier=float(multiplier),
        keystore=pathlib.Path(keystore).expanduser() if isinstance(keystore, str) and keystore else None,
    )


def load_config(path: pathlib.Path | None = None) -> ClientConfig:
    if path is None:
        env_path = (os.environ.get("TRADE_VAULT_CONFIG") or "").strip()
        path = pathlib.Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_FILE
    if not path.exists():
        raise ClientError(f"Config not found at '{path}'.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ClientError(f"Invalid JSON in '{path}': {exc}") from exc
    return parse_config(data)


def resolve_private_key(config: ClientConfig, env_name: str = "TRADE_VAULT_PRIVATE_KEY") -> str:
    """Signing key from the environment, else from the configured keystore."""
    raw = (os.environ.get(env_name) or "").strip()
    if raw:
        normalized = normalize_private_key_hex(raw)
        if normalized is None:
            raise ClientError(f"{env_name} must be 32 bytes of hex.")
        return normalized
    if config.keystore is None:
        raise ClientError(f"No signing key: set {env_name} or configure a keystore.")
    passphrase = os.environ.get("TRADE_VAULT_KEYSTORE_PASSPHRASE")
    if not passphrase:
        raise ClientError("TRADE_VAULT_KEYSTORE_PASSPHRASE is required to unlock the keystore.")
    return load_keystore(config.keystore, passphrase)
