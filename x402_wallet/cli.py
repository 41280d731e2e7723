"""
Command-line surface for the x402 wallet.

Usage:
    x402-wallet create --name agent-1 --network testnet
    x402-wallet import --name old --wif-stdin
    x402-wallet list
    x402-wallet balance <wallet-id> [--utxos]
    x402-wallet pay <wallet-id> <address> <satoshis> [--resource-url URL]
    x402-wallet send <wallet-id> <address> <satoshis>
    x402-wallet history <wallet-id> [--limit N]
    x402-wallet delete <wallet-id>

Passphrases are read with ``getpass`` unless ``--passphrase-env VAR`` names
an environment variable that holds one.  Results are printed as JSON on
stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import logging
import os
import sys
from typing import Any

from x402_wallet import payments
from x402_wallet.config import load_config, validate_config
from x402_wallet.context import WalletContext
from x402_wallet.errors import OperationResult, WalletError, describe, error_code_of
from x402_wallet.logging_config import setup_logging
from x402_wallet.manager import WalletManager

logger = logging.getLogger("x402_wallet.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="x402-wallet", description="BSV agent wallet with x402 payments")
    p.add_argument("--config", default=None, help="Path to x402-wallet.toml config file")
    p.add_argument("--network", default=None, choices=["mainnet", "testnet"],
                   help="Override BSV_NETWORK")
    p.add_argument("--passphrase-env", default=None,
                   help="Read the passphrase from this environment variable instead of prompting")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("create", help="Create a wallet from a fresh mnemonic")
    c.add_argument("--name", required=True)

    i = sub.add_parser("import", help="Import a wallet from WIF or mnemonic (read from stdin)")
    i.add_argument("--name", required=True)
    src = i.add_mutually_exclusive_group(required=True)
    src.add_argument("--wif-stdin", action="store_true", help="Read a WIF key from stdin")
    src.add_argument("--mnemonic-stdin", action="store_true", help="Read a BIP39 phrase from stdin")

    sub.add_parser("list", help="List wallets")

    b = sub.add_parser("balance", help="Show a wallet's balance")
    b.add_argument("wallet_id")
    b.add_argument("--utxos", action="store_true", help="Include spendable outputs")

    for name, helptext in (("pay", "Create an x402 payment proof"), ("send", "Send and broadcast")):
        s = sub.add_parser(name, help=helptext)
        s.add_argument("wallet_id")
        s.add_argument("address")
        s.add_argument("amount", type=int, help="Amount in satoshis")
        s.add_argument("--change-address", default=None)
        s.add_argument("--fee-rate", type=float, default=None, help="sat/byte")
        if name == "pay":
            s.add_argument("--resource-url", default=None)
            s.add_argument("--language", default=None)

    h = sub.add_parser("history", help="List a wallet's transactions")
    h.add_argument("wallet_id")
    h.add_argument("--limit", type=int, default=100)

    d = sub.add_parser("delete", help="Delete a wallet (irreversible)")
    d.add_argument("wallet_id")

    return p.parse_args(argv)


def _passphrase(args: argparse.Namespace, confirm: bool = False) -> str:
    if args.passphrase_env:
        value = os.environ.get(args.passphrase_env, "")
        if not value:
            raise WalletError(f"Environment variable {args.passphrase_env} is empty")
        return value
    value = getpass.getpass("Passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != value:
        raise WalletError("Passphrases do not match")
    return value


def _emit(result: OperationResult | dict[str, Any]) -> int:
    out = result.to_dict() if isinstance(result, OperationResult) else result
    print(json.dumps(out, indent=2))
    return 0 if out.get("success") else 1


async def run(args: argparse.Namespace, ctx: WalletContext) -> int:
    try:
        return await _dispatch(args, ctx)
    except WalletError as exc:
        # prompt failures only; operations below report their own errors
        return _emit({"success": False, "error": describe(exc), "errorCode": error_code_of(exc)})


async def _dispatch(args: argparse.Namespace, ctx: WalletContext) -> int:
    manager = WalletManager(ctx)
    cmd = args.command
    if cmd == "pay":
        params = payments.CreatePaymentParams(
            wallet_id=args.wallet_id,
            passphrase=_passphrase(args),
            pay_to=args.address,
            amount=args.amount,
            change_address=args.change_address,
            fee_rate=args.fee_rate,
            language=args.language,
            resource_url=args.resource_url,
        )
        return _emit(await payments.create_payment(ctx, params))
    if cmd == "send":
        params = payments.SendTransactionParams(
            wallet_id=args.wallet_id,
            passphrase=_passphrase(args),
            to_address=args.address,
            amount=args.amount,
            change_address=args.change_address,
            fee_rate=args.fee_rate,
        )
        return _emit(await payments.send_transaction(ctx, params))
    if cmd == "balance":
        return _emit(await payments.get_balance(ctx, args.wallet_id, include_utxos=args.utxos))
    if cmd == "history":
        return _emit(await payments.list_transactions(ctx, args.wallet_id, limit=args.limit))

    passphrase = ""
    try:
        if cmd == "create":
            passphrase = _passphrase(args, confirm=True)
            info = await manager.create_wallet(args.name, ctx.network, passphrase)
            print("Write the mnemonic down now; it will not be shown again.", file=sys.stderr)
            return _emit({"success": True, **info.to_dict()})
        if cmd == "import":
            secret = sys.stdin.readline().strip()
            passphrase = _passphrase(args, confirm=True)
            if args.wif_stdin:
                info = await manager.import_wif(args.name, secret, ctx.network, passphrase)
            else:
                info = await manager.import_mnemonic(args.name, secret, ctx.network, passphrase)
            return _emit({"success": True, **info.to_dict()})
        if cmd == "list":
            wallets = [m.to_dict() for m in manager.list_wallets()]
            return _emit({"success": True, "wallets": wallets, "total": len(wallets)})
        if cmd == "delete":
            passphrase = _passphrase(args)
            await manager.remove_wallet(args.wallet_id, passphrase)
            return _emit({"success": True, "message": f"Wallet {args.wallet_id} deleted"})
    except WalletError as exc:
        return _emit({"success": False, "error": describe(exc, [passphrase]), "errorCode": error_code_of(exc)})

    raise AssertionError(f"unhandled command {cmd}")


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
        if args.network:
            cfg.network = args.network
        validate_config(cfg)
    except WalletError as exc:
        return _emit({"success": False, "error": str(exc), "errorCode": error_code_of(exc)})

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)
    ctx = WalletContext(cfg)
    ctx.bootstrap()
    return await run(args, ctx)


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    code = 130
    with contextlib.suppress(KeyboardInterrupt):
        code = asyncio.run(main())
    sys.exit(code)


if __name__ == "__main__":
    main_sync()
