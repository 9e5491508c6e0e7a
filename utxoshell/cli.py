"""Command line interface for utxoshell.

Each sub-command maps onto a single store, registry or engine operation so that
scripts can drive wallets and transaction templates without writing Python.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import getpass
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from .config import ShellConfig, load_config, set_default_config_path
from .errors import NotFound, UtxoShellError, ValidationError
from .invoke import InvocationEngine, InvocationRequest, InvocationState
from .keys import WORD_COUNT_STRENGTH
from .model import Balance, Utxo
from .providers import Provider, ProviderRegistry
from .retry import RetryPolicy
from .rpc_client import client_for
from .store import StoreFile
from .wallets import Wallet, WalletStore

logger = logging.getLogger(__name__)

PASSWORD_ENV_PREFIX = "UTXOSHELL_PASSWORD_"


class CLIError(ValidationError):
    """Raised when CLI arguments are invalid."""

    kind = "cli"


@dataclass
class Context:
    config: ShellConfig
    wallets: WalletStore
    providers: ProviderRegistry
    engine: InvocationEngine
    output: str

    def client(self, provider: Provider):
        return client_for(
            provider,
            timeout=self.config.request_timeout,
            retry=RetryPolicy.from_config(self.config),
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="utxoshell", description="UTxO wallet and transaction invocation shell")
    parser.add_argument("--store", help="Path to the wallet/provider store (default: ~/.utxoshell/store.yaml)")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--output", choices=("table", "json"), default="table", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # wallet ---------------------------------------------------------------
    wallet_parser = subparsers.add_parser("wallet", help="manage wallets")
    wallet_sub = wallet_parser.add_subparsers(dest="action", required=True)

    create = wallet_sub.add_parser("create", help="create a wallet from a fresh mnemonic")
    create.add_argument("name")
    create.add_argument("--password", help="Spending password (prompted when omitted)")
    create.add_argument(
        "--words",
        type=int,
        default=24,
        choices=sorted(WORD_COUNT_STRENGTH),
        help="Mnemonic length (default: 24)",
    )

    restore = wallet_sub.add_parser("restore", help="restore a wallet from a mnemonic")
    restore.add_argument("name")
    restore.add_argument("--password", help="Spending password (prompted when omitted)")
    restore.add_argument("--mnemonic", help="Mnemonic words (prompted when omitted)")
    restore.add_argument("--mnemonic-file", type=Path, help="File containing the mnemonic words")

    edit = wallet_sub.add_parser("edit", help="rename, change password or default flag")
    edit.add_argument("name")
    edit.add_argument("--new-name")
    edit.add_argument("--password", help="Current password, required with --new-password")
    edit.add_argument("--new-password")
    default_group = edit.add_mutually_exclusive_group()
    default_group.add_argument("--default", dest="set_default", action="store_const", const=True)
    default_group.add_argument("--no-default", dest="set_default", action="store_const", const=False)

    delete = wallet_sub.add_parser("delete", help="delete a wallet")
    delete.add_argument("name")

    wallet_sub.add_parser("list", help="list wallets")

    info = wallet_sub.add_parser("info", help="show wallet details")
    info.add_argument("name", nargs="?", help="Wallet name (default wallet when omitted)")

    balance = wallet_sub.add_parser("balance", help="query the wallet balance through a provider")
    balance.add_argument("name", nargs="?", help="Wallet name (default wallet when omitted)")
    balance.add_argument("--provider", help="Provider name (default provider when omitted)")

    utxos = wallet_sub.add_parser("utxos", help="list the unspent outputs held by a wallet")
    utxos.add_argument("name", nargs="?", help="Wallet name (default wallet when omitted)")
    utxos.add_argument("--provider", help="Provider name (default provider when omitted)")

    # provider -------------------------------------------------------------
    provider_parser = subparsers.add_parser("provider", help="manage remote providers")
    provider_sub = provider_parser.add_subparsers(dest="action", required=True)

    p_create = provider_sub.add_parser("create", help="register a provider")
    p_create.add_argument("name")
    p_create.add_argument("--protocol", required=True, choices=("utxorpc", "trp"))
    p_create.add_argument("--network", required=True, choices=("mainnet", "testnet"))
    p_create.add_argument("--url", required=True)
    p_create.add_argument("--header", action="append", default=[], metavar="KEY=VALUE")
    p_create.add_argument("--default", dest="is_default", action="store_const", const=True, default=None)

    p_edit = provider_sub.add_parser("edit", help="update a provider")
    p_edit.add_argument("name")
    p_edit.add_argument("--new-name")
    p_edit.add_argument("--protocol", choices=("utxorpc", "trp"))
    p_edit.add_argument("--network", choices=("mainnet", "testnet"))
    p_edit.add_argument("--url")
    p_edit.add_argument("--header", action="append", default=None, metavar="KEY=VALUE")
    p_default = p_edit.add_mutually_exclusive_group()
    p_default.add_argument("--default", dest="set_default", action="store_const", const=True)
    p_default.add_argument("--no-default", dest="set_default", action="store_const", const=False)

    p_delete = provider_sub.add_parser("delete", help="delete a provider")
    p_delete.add_argument("name")

    provider_sub.add_parser("list", help="list providers")

    p_info = provider_sub.add_parser("info", help="show provider details")
    p_info.add_argument("name", nargs="?")

    p_test = provider_sub.add_parser("test", help="fetch the chain tip to check connectivity")
    p_test.add_argument("name", nargs="?")

    # tx -------------------------------------------------------------------
    tx_parser = subparsers.add_parser("tx", help="resolve, sign and submit transactions")
    tx_sub = tx_parser.add_subparsers(dest="action", required=True)

    invoke = tx_sub.add_parser("invoke", help="resolve, sign, submit and optionally confirm a template")
    _add_template_args(invoke)
    invoke.add_argument(
        "--signer", action="append", default=[], required=True, help="Signing wallet (repeat for several)"
    )
    invoke.add_argument("--password", help="Password for every signer (overrides UTXOSHELL_PASSWORD_<NAME>)")
    invoke.add_argument("--network", choices=("mainnet", "testnet"), help="Require the provider network")
    invoke.add_argument("--unsafe", action="store_true", help="Skip pre-submission checks")
    invoke.add_argument("--confirm", action="store_true", help="Wait for confirmation after submitting")
    invoke.add_argument("--skip-submit", action="store_true", help="Resolve and sign only; print the signed transaction")

    resolve = tx_sub.add_parser("resolve", help="resolve a template without signing")
    _add_template_args(resolve)

    sign = tx_sub.add_parser("sign", help="add wallet signatures to an existing transaction")
    _add_cbor_args(sign)
    sign.add_argument(
        "--signer", action="append", default=[], required=True, help="Signing wallet (repeat for several)"
    )
    sign.add_argument("--password", help="Password for every signer (overrides UTXOSHELL_PASSWORD_<NAME>)")

    submit = tx_sub.add_parser("submit", help="submit an already signed transaction")
    _add_cbor_args(submit)
    submit.add_argument("--provider")

    return parser


def _add_cbor_args(parser: argparse.ArgumentParser) -> None:
    cbor_group = parser.add_mutually_exclusive_group(required=True)
    cbor_group.add_argument("--cbor", help="Transaction as hex")
    cbor_group.add_argument("--cbor-file", type=Path, help="File containing the transaction hex")


def _add_template_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--template", required=True, type=Path, help="Template manifest (YAML or JSON)")
    parser.add_argument("--tx", dest="transaction", help="Transaction name inside the template")
    args_group = parser.add_mutually_exclusive_group()
    args_group.add_argument("--args-json", help="JSON object with the runtime arguments")
    args_group.add_argument("--args-file", type=Path, help="File containing the runtime arguments")
    parser.add_argument("--provider", help="Provider name (default provider when omitted)")


# Helpers -------------------------------------------------------------------


def _parse_headers(raw: Sequence[str] | None) -> dict[str, str] | None:
    if raw is None:
        return None
    headers: dict[str, str] = {}
    for entry in raw:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"Headers must be KEY=VALUE, got: {entry}")
        headers[key.strip()] = value
    return headers


def _read_file(path: Path, what: str) -> str:
    try:
        return path.read_text()
    except OSError as exc:
        raise CLIError(f"Cannot read {what} {path}: {exc.strerror or exc}") from exc


def _load_args(args_json: str | None, args_file: Path | None) -> dict[str, Any]:
    if args_json is None and args_file is None:
        return {}
    raw = args_json if args_json is not None else _read_file(args_file, "arguments file")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"Runtime arguments are not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise CLIError("Runtime arguments must be a JSON object")
    return value


def password_env_var(wallet: str) -> str:
    return PASSWORD_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", wallet).upper()


def resolve_password(wallet: str, flag: str | None = None, *, prompt: str | None = None, env=None) -> str:
    """Password from the flag, then ``UTXOSHELL_PASSWORD_<NAME>``, then an interactive prompt."""

    env = os.environ if env is None else env
    if flag:
        return flag
    from_env = env.get(password_env_var(wallet))
    if from_env:
        return from_env
    return getpass.getpass(prompt or f"Password for wallet '{wallet}': ")


def _new_password(wallet: str, flag: str | None) -> str:
    if flag:
        return flag
    from_env = os.environ.get(password_env_var(wallet))
    if from_env:
        return from_env
    first = getpass.getpass(f"New password for wallet '{wallet}': ")
    if getpass.getpass("Repeat password: ") != first:
        raise CLIError("Passwords do not match")
    return first


def _emit(ctx: Context, payload: Any, lines: Sequence[str]) -> None:
    if ctx.output == "json":
        print(json.dumps(payload, indent=2))
        return
    for line in lines:
        print(line)


def _wallet_lines(wallet: Wallet) -> list[str]:
    return [
        f"name:       {wallet.name}",
        f"default:    {'yes' if wallet.is_default else 'no'}",
        f"public key: {wallet.public_key}",
        f"mainnet:    {wallet.addresses.get('mainnet', '')}",
        f"testnet:    {wallet.addresses.get('testnet', '')}",
        f"created:    {wallet.created}",
        f"modified:   {wallet.modified}",
    ]


def _provider_lines(provider: Provider) -> list[str]:
    header_names = ", ".join(sorted(provider.headers)) or "-"
    return [
        f"name:     {provider.name}",
        f"default:  {'yes' if provider.is_default else 'no'}",
        f"protocol: {provider.protocol.value}",
        f"network:  {provider.network.value}",
        f"url:      {provider.url}",
        f"headers:  {header_names}",
    ]


def _provider_summary(provider: Provider) -> dict[str, Any]:
    data = provider.to_dict()
    # header values usually carry API keys
    data["headers"] = sorted(provider.headers)
    return data


def _named_wallet(ctx: Context, name: str | None) -> Wallet:
    if name:
        return ctx.wallets.get(name)
    wallet = ctx.wallets.default()
    if wallet is None:
        raise NotFound("No wallet name given and no default wallet is configured")
    return wallet


# Wallet commands ------------------------------------------------------------


def cmd_wallet_create(ctx: Context, args: argparse.Namespace) -> None:
    password = _new_password(args.name, args.password)
    wallet, mnemonic = ctx.wallets.create(args.name, password, args.words)
    payload = {"wallet": wallet.summary(), "mnemonic": mnemonic}
    _emit(
        ctx,
        payload,
        _wallet_lines(wallet)
        + ["", "Write down this mnemonic; it will not be shown again:", mnemonic],
    )


def cmd_wallet_restore(ctx: Context, args: argparse.Namespace) -> None:
    if args.mnemonic_file is not None:
        mnemonic = _read_file(args.mnemonic_file, "mnemonic file")
    elif args.mnemonic:
        mnemonic = args.mnemonic
    else:
        mnemonic = getpass.getpass("Mnemonic words: ")
    password = _new_password(args.name, args.password)
    wallet = ctx.wallets.restore(args.name, password, mnemonic)
    _emit(ctx, {"wallet": wallet.summary()}, _wallet_lines(wallet))


def cmd_wallet_edit(ctx: Context, args: argparse.Namespace) -> None:
    old_password = None
    new_password = None
    if args.new_password is not None:
        new_password = args.new_password
        old_password = resolve_password(args.name, args.password, prompt="Current password: ")
    wallet = ctx.wallets.edit(
        args.name,
        new_name=args.new_name,
        new_password=new_password,
        old_password=old_password,
        set_default=args.set_default,
    )
    _emit(ctx, {"wallet": wallet.summary()}, _wallet_lines(wallet))


def cmd_wallet_delete(ctx: Context, args: argparse.Namespace) -> None:
    ctx.wallets.delete(args.name)
    _emit(ctx, {"deleted": args.name}, [f"Deleted wallet {args.name}"])


def cmd_wallet_list(ctx: Context, args: argparse.Namespace) -> None:
    wallets = ctx.wallets.list()
    lines = [" default | name                 | testnet address"]
    for wallet in wallets:
        marker = "*" if wallet.is_default else ""
        lines.append(f" {marker:^7} | {wallet.name:<20} | {wallet.addresses.get('testnet', '')}")
    if not wallets:
        lines = ["No wallets found."]
    _emit(ctx, {"wallets": [wallet.summary() for wallet in wallets]}, lines)


def cmd_wallet_info(ctx: Context, args: argparse.Namespace) -> None:
    wallet = _named_wallet(ctx, args.name)
    _emit(ctx, {"wallet": wallet.summary()}, _wallet_lines(wallet))


def _wallet_utxos(ctx: Context, args: argparse.Namespace) -> tuple[str, list[Utxo]]:
    wallet = _named_wallet(ctx, args.name)
    provider = ctx.providers.resolve(args.provider)
    address = wallet.address(provider.network)
    client = ctx.client(provider)
    try:
        return address, client.query_utxos(address)
    finally:
        client.close()


def cmd_wallet_balance(ctx: Context, args: argparse.Namespace) -> None:
    address, utxos = _wallet_utxos(ctx, args)
    balance = Balance.from_utxos(address, utxos)
    lines = [f"address: {address}", f"lovelace: {balance.coin}", f"utxos: {balance.utxo_count}"]
    lines.extend(f"{unit}: {quantity}" for unit, quantity in sorted(balance.assets.items()))
    _emit(ctx, balance.to_dict(), lines)


def cmd_wallet_utxos(ctx: Context, args: argparse.Namespace) -> None:
    address, utxos = _wallet_utxos(ctx, args)
    lines = [f" {'tx hash':<64} | {'index':>5} | {'lovelace':>12} | {'assets':>6} | datum hash"]
    for utxo in utxos:
        lines.append(
            f" {utxo.tx_hash:<64} | {utxo.index:>5} | {utxo.coin:>12} | {len(utxo.assets):>6} | {utxo.datum_hash or '-'}"
        )
    if not utxos:
        lines = [f"No unspent outputs at {address}."]
    _emit(ctx, {"address": address, "utxos": [utxo.to_dict() for utxo in utxos]}, lines)


# Provider commands ------------------------------------------------------------


def cmd_provider_create(ctx: Context, args: argparse.Namespace) -> None:
    provider = ctx.providers.create(
        args.name,
        args.protocol,
        args.network,
        args.url,
        headers=_parse_headers(args.header),
        is_default=args.is_default,
    )
    _emit(ctx, {"provider": _provider_summary(provider)}, _provider_lines(provider))


def cmd_provider_edit(ctx: Context, args: argparse.Namespace) -> None:
    provider = ctx.providers.edit(
        args.name,
        new_name=args.new_name,
        protocol=args.protocol,
        network=args.network,
        url=args.url,
        headers=_parse_headers(args.header),
        set_default=args.set_default,
    )
    _emit(ctx, {"provider": _provider_summary(provider)}, _provider_lines(provider))


def cmd_provider_delete(ctx: Context, args: argparse.Namespace) -> None:
    ctx.providers.delete(args.name)
    _emit(ctx, {"deleted": args.name}, [f"Deleted provider {args.name}"])


def cmd_provider_list(ctx: Context, args: argparse.Namespace) -> None:
    providers = ctx.providers.list()
    lines = [" default | name                 | protocol | network | url"]
    for provider in providers:
        marker = "*" if provider.is_default else ""
        lines.append(
            f" {marker:^7} | {provider.name:<20} | {provider.protocol.value:<8} | "
            f"{provider.network.value:<7} | {provider.url}"
        )
    if not providers:
        lines = ["No providers found."]
    _emit(ctx, {"providers": [_provider_summary(p) for p in providers]}, lines)


def cmd_provider_info(ctx: Context, args: argparse.Namespace) -> None:
    provider = ctx.providers.resolve(args.name)
    _emit(ctx, {"provider": _provider_summary(provider)}, _provider_lines(provider))


def cmd_provider_test(ctx: Context, args: argparse.Namespace) -> None:
    provider = ctx.providers.resolve(args.name)
    tip = ctx.providers.test(provider.name)
    _emit(
        ctx,
        {"provider": provider.name, "slot": tip.slot, "hash": tip.hash, "height": tip.height},
        [f"Provider {provider.name} is reachable; tip at slot {tip.slot} ({tip.hash})"],
    )


# Transaction commands -----------------------------------------------------------


def cmd_tx_invoke(ctx: Context, args: argparse.Namespace) -> int:
    request = InvocationRequest(
        template_path=args.template,
        signers=list(args.signer),
        args=_load_args(args.args_json, args.args_file),
        allow_unsafe=args.unsafe,
        transaction=args.transaction,
        provider=args.provider,
        required_network=args.network,
        confirm=args.confirm,
        submit=not args.skip_submit,
    )
    passwords = functools.partial(resolve_password, flag=args.password)
    result = asyncio.run(ctx.engine.invoke(request, passwords))
    lines = [f"tx: {result.tx_id}", f"status: {result.status}"]
    if result.reason:
        lines.append(f"reason: {result.reason}")
    if result.checks_skipped:
        lines.append(f"skipped checks: {', '.join(result.checks_skipped)}")
    if result.status == InvocationState.SIGNED.value:
        lines.append(f"cbor: {result.cbor}")
    _emit(ctx, result.to_dict(), lines)
    return 1 if result.status == InvocationState.REJECTED.value else 0


def cmd_tx_resolve(ctx: Context, args: argparse.Namespace) -> None:
    request = InvocationRequest(
        template_path=args.template,
        signers=[],
        args=_load_args(args.args_json, args.args_file),
        transaction=args.transaction,
        provider=args.provider,
    )
    invocation = ctx.engine.prepare(request, require_signers=False)
    unsigned = asyncio.run(ctx.engine.resolve(invocation))
    _emit(ctx, {"hash": unsigned.hash, "cbor": unsigned.cbor.hex()}, [unsigned.cbor.hex()])


def _read_cbor(args: argparse.Namespace) -> bytes:
    raw = args.cbor if args.cbor is not None else _read_file(args.cbor_file, "transaction file")
    try:
        return bytes.fromhex(raw.strip())
    except ValueError as exc:
        raise CLIError("Transaction CBOR must be hex encoded") from exc


def cmd_tx_sign(ctx: Context, args: argparse.Namespace) -> None:
    passwords = functools.partial(resolve_password, flag=args.password)
    signed = ctx.engine.sign_transaction(_read_cbor(args), list(args.signer), passwords)
    lines = [f"tx: {signed.tx_id}"]
    lines.extend(f"signed by: {record.wallet}" for record in signed.signatures)
    lines.append(f"cbor: {signed.cbor.hex()}")
    _emit(ctx, signed.to_dict(), lines)


def cmd_tx_submit(ctx: Context, args: argparse.Namespace) -> None:
    cbor = _read_cbor(args)
    provider = ctx.providers.resolve(args.provider)
    client = ctx.client(provider)
    try:
        tx_id = client.submit_tx(cbor)
    finally:
        client.close()
    _emit(ctx, {"tx_id": tx_id, "status": "submitted"}, [f"tx: {tx_id}"])


_COMMANDS = {
    ("wallet", "create"): cmd_wallet_create,
    ("wallet", "restore"): cmd_wallet_restore,
    ("wallet", "edit"): cmd_wallet_edit,
    ("wallet", "delete"): cmd_wallet_delete,
    ("wallet", "list"): cmd_wallet_list,
    ("wallet", "info"): cmd_wallet_info,
    ("wallet", "balance"): cmd_wallet_balance,
    ("wallet", "utxos"): cmd_wallet_utxos,
    ("provider", "create"): cmd_provider_create,
    ("provider", "edit"): cmd_provider_edit,
    ("provider", "delete"): cmd_provider_delete,
    ("provider", "list"): cmd_provider_list,
    ("provider", "info"): cmd_provider_info,
    ("provider", "test"): cmd_provider_test,
    ("tx", "invoke"): cmd_tx_invoke,
    ("tx", "resolve"): cmd_tx_resolve,
    ("tx", "sign"): cmd_tx_sign,
    ("tx", "submit"): cmd_tx_submit,
}


def build_context(args: argparse.Namespace) -> Context:
    if args.config:
        set_default_config_path(args.config)
    overrides = {"store_path": args.store} if args.store else None
    config = load_config(config_path=args.config, overrides=overrides)
    store = StoreFile(config.store_path)
    client_factory = functools.partial(
        client_for, timeout=config.request_timeout, retry=RetryPolicy.from_config(config)
    )
    wallets = WalletStore(store, case_sensitive=config.case_sensitive_names)
    providers = ProviderRegistry(
        store, case_sensitive=config.case_sensitive_names, client_factory=client_factory
    )
    engine = InvocationEngine(wallets, providers, config=config, client_factory=client_factory)
    return Context(config=config, wallets=wallets, providers=providers, engine=engine, output=args.output)


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        ctx = build_context(args)
        if not args.verbose:
            logging.getLogger().setLevel(ctx.config.log_level)
        status = _COMMANDS[(args.command, args.action)](ctx, args)
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
        parser.exit(130)
    except UtxoShellError as exc:
        if args.output == "json":
            print(json.dumps({"error": exc.to_dict()}, indent=2))
            parser.exit(1)
        parser.exit(1, f"error[{exc.kind}]: {exc.message}\n")
    if status:
        parser.exit(status)


if __name__ == "__main__":
    main(sys.argv[1:])
