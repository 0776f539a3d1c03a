#!/usr/bin/env python3
"""trade-vault operator CLI.

Builds trigger-signed swap instructions and drives the vault and fund
contracts on every configured chain. Each command prints exactly one JSON
object on stdout.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import pathlib
import sys
from decimal import Decimal, InvalidOperation
from typing import Any

from .client import Interactor, build_multicall_tx
from .config import APP_DIR, load_config, resolve_private_key
from .crypto import is_hex_address, normalize_private_key_hex, recover_signer
from .errors import ClientError, InvalidPayload, KeystoreError, RpcError, SubprocessTimeout, TransactionReverted, TxTimeout
from .instructions import SwapInstruction, build_swap_instruction
from .keystore import load_keystore, write_keystore
from .revert import decode_revert


def emit(payload: dict) -> int:
    print(json.dumps(payload, separators=(",", ":"), default=str))
    return 0


def ok(message: str, **extra: object) -> int:
    payload = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return emit(payload)


def fail(code: str, message: str, action_hint: str | None = None, details: dict | None = None, exit_code: int = 1) -> int:
    payload: dict[str, object] = {"ok": False, "code": code, "message": message}
    if action_hint:
        payload["actionHint"] = action_hint
    if details:
        payload["details"] = details
    emit(payload)
    return exit_code


def require_json_flag(args: argparse.Namespace) -> int | None:
    if getattr(args, "json", False):
        return None
    return fail("missing_flag", "This command requires --json output mode.", "Re-run with --json.", exit_code=2)


def _hex_bytes(raw: str, name: str) -> bytes:
    stripped = raw.strip()
    if stripped.startswith("0x"):
        stripped = stripped[2:]
    try:
        return bytes.fromhex(stripped)
    except ValueError as exc:
        raise ValueError(f"{name} must be hex bytes.") from exc


def _uint(raw: str, name: str) -> int:
    try:
        value = Decimal(str(raw).strip())
        valid = value.is_finite() and value >= 0 and value == value.to_integral_value()
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a non-negative integer.") from exc
    if not valid:
        raise ValueError(f"{name} must be a non-negative integer.")
    return int(value)


def _address(raw: str, name: str) -> str:
    if not is_hex_address(raw.strip()):
        raise ValueError(f"{name} must be a 0x-prefixed 20-byte hex address.")
    return raw.strip().lower()


def _open_interactor(args: argparse.Namespace) -> Interactor:
    config_path = pathlib.Path(args.config).expanduser() if getattr(args, "config", None) else None
    config = load_config(config_path)
    return Interactor(config, resolve_private_key(config))


def _client_failure(exc: Exception, details: dict[str, Any]) -> int:
    if isinstance(exc, TxTimeout):
        return fail(
            "tx_timeout",
            str(exc),
            "Final state is unknown; re-query chain state before resubmitting.",
            {**details, "txHash": exc.tx_hash},
        )
    if isinstance(exc, TransactionReverted):
        return fail("tx_reverted", str(exc), "Inspect the transaction on a block explorer.", {**details, "txHash": exc.tx_hash})
    if isinstance(exc, SubprocessTimeout):
        return fail("cast_timeout", str(exc), "Check node connectivity and retry.", details)
    if isinstance(exc, KeystoreError):
        return fail("keystore_error", str(exc), "Verify keystore path, permissions and passphrase.", details)
    if isinstance(exc, RpcError):
        return fail("rpc_error", str(exc), "Verify node address and contract addresses.", details)
    if isinstance(exc, ClientError):
        msg = str(exc)
        if "Missing dependency: cast" in msg:
            return fail("missing_dependency", msg, "Install Foundry and ensure `cast` is on PATH.", {"dependency": "cast"})
        return fail("client_error", msg, "Verify configuration and node connectivity.", details)
    return fail("unexpected_error", str(exc), "Inspect runtime configuration and retry.", details)


def cmd_instruction_build(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        swapper = _address(args.swapper, "--swapper")
        token_in = _address(args.token_in, "--token-in")
        token_out = _address(args.token_out, "--token-out")
        amount_in = _uint(args.amount_in, "--amount-in")
        inner = _hex_bytes(args.calldata, "--calldata")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)

    trigger_key = normalize_private_key_hex(os.environ.get("TRADE_VAULT_TRIGGER_KEY") or "")
    if trigger_key is None and args.keystore:
        passphrase = os.environ.get("TRADE_VAULT_KEYSTORE_PASSPHRASE") or ""
        try:
            if not passphrase:
                raise KeystoreError("TRADE_VAULT_KEYSTORE_PASSPHRASE is required to unlock the keystore.")
            trigger_key = load_keystore(pathlib.Path(args.keystore).expanduser(), passphrase)
        except KeystoreError as exc:
            return fail("keystore_error", str(exc), "Verify keystore path, permissions and passphrase.", {"path": args.keystore})
    if trigger_key is None:
        return fail(
            "missing_env",
            "TRADE_VAULT_TRIGGER_KEY must hold the trigger's 32-byte hex private key.",
            "Export TRADE_VAULT_TRIGGER_KEY or pass --keystore, then retry.",
            exit_code=2,
        )
    instruction = build_swap_instruction(trigger_key, swapper, token_in, token_out, amount_in, inner)
    return ok(
        "Swap instruction built.",
        instruction="0x" + instruction.encode().hex(),
        payload="0x" + instruction.payload.hex(),
        swapper=swapper,
        tokenIn=token_in,
        tokenOut=token_out,
        amountIn=str(amount_in),
    )


def cmd_signer_recover(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        digest = _hex_bytes(args.digest, "--digest")
        signature = _hex_bytes(args.signature, "--signature")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    return ok("Signer recovered.", signer=recover_signer(digest, signature))


def cmd_revert_decode(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        data = _hex_bytes(args.data, "--data")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    return ok("Revert decoded.", reason=decode_revert(data))


def _load_instructions(path: str) -> list[SwapInstruction]:
    raw = json.loads(pathlib.Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, list) or not raw:
        raise ValueError("Instructions file must be a non-empty JSON array.")
    items: list[SwapInstruction] = []
    for entry in raw:
        if isinstance(entry, str):
            items.append(SwapInstruction.decode(_hex_bytes(entry, "instruction")))
            continue
        if not isinstance(entry, dict):
            raise ValueError("Each instruction must be a hex string or an object.")
        items.append(
            SwapInstruction(
                swapper=_address(str(entry.get("swapper", "")), "swapper"),
                token_in=_address(str(entry.get("tokenIn", "")), "tokenIn"),
                token_out=_address(str(entry.get("tokenOut", "")), "tokenOut"),
                amount_in=_uint(str(entry.get("amountIn", "")), "amountIn"),
                payload=_hex_bytes(str(entry.get("payload", "")), "payload"),
            )
        )
    return items


def cmd_multiswap_send(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id, "tradingAddress": args.trade_address}
    try:
        trade_address = _address(args.trade_address, "--trade-address")
        instructions = _load_instructions(args.instructions)
    except (OSError, ValueError, InvalidPayload) as exc:
        return fail("invalid_input", str(exc), "Provide a JSON array of encoded or structured instructions.", details, exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            receipt = interactor.multi_swap(args.chain_id, trade_address, instructions)
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("multiSwap mined.", txHash=receipt.get("transactionHash"), count=len(instructions), **details)


def cmd_aave_positions(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id, "tradingAddress": args.trade_address}
    try:
        trade_address = _address(args.trade_address, "--trade-address")
        tokens = [_address(token, "--token") if token else "" for token in args.token]
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            positions = interactor.aave_positions(args.chain_id, trade_address, tokens)
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("Aave positions fetched.", positions=[str(value) for value in positions], **details)


def cmd_aave_withdraw(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id, "tradingAddress": args.trade_address}
    try:
        trade_address = _address(args.trade_address, "--trade-address")
        token = _address(args.token, "--token")
        amount = _uint(args.amount, "--amount")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            receipt = interactor.aave_withdraw(args.chain_id, trade_address, token, amount)
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("Aave withdraw mined.", txHash=receipt.get("transactionHash"), token=token, amount=str(amount), **details)


def cmd_gmx_positions(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id}
    try:
        collateral = [_address(token, "--collateral") for token in args.collateral]
        index = [_address(token, "--index") for token in args.index]
        is_long = [value.strip().lower() in {"1", "true", "long"} for value in args.is_long]
        if not (len(collateral) == len(index) == len(is_long)):
            raise ValueError("--collateral, --index and --is-long must be given the same number of times.")
        trade_address = _address(args.trade_address, "--trade-address")
        vault_address = _address(args.vault_address, "--vault-address")
        reader_address = _address(args.reader_address, "--reader-address")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            positions = interactor.gmx_positions(
                args.chain_id, collateral, index, is_long, trade_address, vault_address, reader_address
            )
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("GMX positions fetched.", positions=[str(value) for value in positions], **details)


def cmd_fund_withdraw_multiple(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id, "fundId": args.fund_id}
    try:
        fund_id = _uint(args.fund_id, "--fund-id")
        trade_tvl = _uint(args.trade_tvl, "--trade-tvl")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            receipt = interactor.withdraw_multiple(args.chain_id, fund_id, trade_tvl)
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("withdrawMultiple mined.", txHash=receipt.get("transactionHash"), **details)


def cmd_fund_user_data(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    details = {"chainId": args.chain_id, "fundId": args.fund_id, "user": args.user}
    try:
        fund_id = _uint(args.fund_id, "--fund-id")
        user = _address(args.user, "--user")
    except ValueError as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    try:
        with _open_interactor(args) as interactor:
            data = interactor.user_data(args.chain_id, fund_id, user)
    except Exception as exc:
        return _client_failure(exc, details)
    return ok("User data fetched.", **{key: str(value) for key, value in data.items()}, **details)


def cmd_multicall_tx(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        amount = _uint(args.amount, "--amount")
        tx = build_multicall_tx(args.token, amount, args.target, args.tx)
    except (ValueError, ClientError) as exc:
        return fail("invalid_input", str(exc), exit_code=2)
    return ok("Multicall transaction built.", tx=tx)


def cmd_keystore_create(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    path = pathlib.Path(args.path).expanduser() if args.path else APP_DIR / "keystore.json"
    if path.exists() and not args.force:
        return fail("keystore_exists", f"Keystore already exists at '{path}'.", "Pass --force to overwrite.", {"path": str(path)})

    private_key = os.environ.get("TRADE_VAULT_IMPORT_PRIVATE_KEY") or ""
    passphrase = os.environ.get("TRADE_VAULT_KEYSTORE_PASSPHRASE") or ""
    if sys.stdin.isatty():
        if not private_key:
            private_key = getpass.getpass("Private key (hex): ")
        if not passphrase:
            passphrase = getpass.getpass("Keystore passphrase: ")
    if not private_key or not passphrase:
        return fail(
            "non_interactive",
            "Private key and passphrase are required.",
            "Set TRADE_VAULT_IMPORT_PRIVATE_KEY and TRADE_VAULT_KEYSTORE_PASSPHRASE or run with a TTY.",
            exit_code=2,
        )
    try:
        entry = write_keystore(path, private_key, passphrase)
    except (KeystoreError, OSError) as exc:
        return fail("keystore_error", str(exc), "Check the key format and target directory permissions.", {"path": str(path)})
    return ok("Keystore written.", path=str(path), address=entry["address"])


def _add_client_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chain-id", type=int, required=True)
    parser.add_argument("--config")
    parser.add_argument("--json", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="trade-vault", add_help=True)
    p.add_argument("--verbose", action="store_true", help="log progress to stderr")
    sub = p.add_subparsers(dest="top")

    instruction = sub.add_parser("instruction")
    instruction_sub = instruction.add_subparsers(dest="instruction_cmd")
    i_build = instruction_sub.add_parser("build")
    i_build.add_argument("--swapper", required=True)
    i_build.add_argument("--token-in", required=True)
    i_build.add_argument("--token-out", required=True)
    i_build.add_argument("--amount-in", required=True)
    i_build.add_argument("--calldata", required=True)
    i_build.add_argument("--keystore", help="trigger keystore, used when TRADE_VAULT_TRIGGER_KEY is unset")
    i_build.add_argument("--json", action="store_true")
    i_build.set_defaults(func=cmd_instruction_build)

    signer = sub.add_parser("signer")
    signer_sub = signer.add_subparsers(dest="signer_cmd")
    s_recover = signer_sub.add_parser("recover")
    s_recover.add_argument("--digest", required=True)
    s_recover.add_argument("--signature", required=True)
    s_recover.add_argument("--json", action="store_true")
    s_recover.set_defaults(func=cmd_signer_recover)

    revert = sub.add_parser("revert")
    revert_sub = revert.add_subparsers(dest="revert_cmd")
    r_decode = revert_sub.add_parser("decode")
    r_decode.add_argument("--data", required=True)
    r_decode.add_argument("--json", action="store_true")
    r_decode.set_defaults(func=cmd_revert_decode)

    multiswap = sub.add_parser("multiswap")
    multiswap_sub = multiswap.add_subparsers(dest="multiswap_cmd")
    m_send = multiswap_sub.add_parser("send")
    _add_client_flags(m_send)
    m_send.add_argument("--trade-address", required=True)
    m_send.add_argument("--instructions", required=True, help="path to a JSON array of instructions")
    m_send.set_defaults(func=cmd_multiswap_send)

    aave = sub.add_parser("aave")
    aave_sub = aave.add_subparsers(dest="aave_cmd")
    a_pos = aave_sub.add_parser("positions")
    _add_client_flags(a_pos)
    a_pos.add_argument("--trade-address", required=True)
    a_pos.add_argument("--token", action="append", default=[], help="repeatable; empty selects the chain's USDC")
    a_pos.set_defaults(func=cmd_aave_positions)

    a_withdraw = aave_sub.add_parser("withdraw")
    _add_client_flags(a_withdraw)
    a_withdraw.add_argument("--trade-address", required=True)
    a_withdraw.add_argument("--token", required=True)
    a_withdraw.add_argument("--amount", required=True)
    a_withdraw.set_defaults(func=cmd_aave_withdraw)

    gmx = sub.add_parser("gmx")
    gmx_sub = gmx.add_subparsers(dest="gmx_cmd")
    g_pos = gmx_sub.add_parser("positions")
    _add_client_flags(g_pos)
    g_pos.add_argument("--collateral", action="append", default=[])
    g_pos.add_argument("--index", action="append", default=[])
    g_pos.add_argument("--is-long", action="append", default=[])
    g_pos.add_argument("--trade-address", required=True)
    g_pos.add_argument("--vault-address", required=True)
    g_pos.add_argument("--reader-address", required=True)
    g_pos.set_defaults(func=cmd_gmx_positions)

    fund = sub.add_parser("fund")
    fund_sub = fund.add_subparsers(dest="fund_cmd")
    f_withdraw = fund_sub.add_parser("withdraw-multiple")
    _add_client_flags(f_withdraw)
    f_withdraw.add_argument("--fund-id", required=True)
    f_withdraw.add_argument("--trade-tvl", required=True)
    f_withdraw.set_defaults(func=cmd_fund_withdraw_multiple)

    f_user = fund_sub.add_parser("user-data")
    _add_client_flags(f_user)
    f_user.add_argument("--fund-id", required=True)
    f_user.add_argument("--user", required=True)
    f_user.set_defaults(func=cmd_fund_user_data)

    multicall = sub.add_parser("multicall-tx")
    multicall.add_argument("--token", required=True)
    multicall.add_argument("--amount", required=True)
    multicall.add_argument("--target", action="append", default=[])
    multicall.add_argument("--tx", action="append", default=[])
    multicall.add_argument("--json", action="store_true")
    multicall.set_defaults(func=cmd_multicall_tx)

    keystore = sub.add_parser("keystore")
    keystore_sub = keystore.add_subparsers(dest="keystore_cmd")
    k_create = keystore_sub.add_parser("create")
    k_create.add_argument("--path")
    k_create.add_argument("--force", action="store_true")
    k_create.add_argument("--json", action="store_true")
    k_create.set_defaults(func=cmd_keystore_create)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
