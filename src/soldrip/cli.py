from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from soldrip.config import Settings
from soldrip.logging_utils import setup_logging
from soldrip.services.drip_errors import ConfigurationError, StateCorruptedError
from soldrip.services.run_loop import CancellationToken, RunOutcome, install_signal_handlers
from soldrip.services.state_store import StateStore, state_path_for
from soldrip.services.wallet_orchestrator import (
    WalletRunner,
    WalletSpec,
    collect_wallet_specs,
    run_wallets_sequentially,
)

logger = logging.getLogger(__name__)

DEFAULT_WALLET_LABEL = "default"


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def _wallet_environ(env_file: str | None) -> dict[str, str]:
    file_values = dotenv_values(env_file or ".env")
    merged = {key: value for key, value in file_values.items() if value is not None}
    merged.update(os.environ)
    return merged


async def _run_single(settings: Settings, *, dry_run: bool, resume: bool, label: str) -> int:
    if settings.solana_mnemonic is None or not settings.solana_mnemonic.get_secret_value().strip():
        raise ConfigurationError("SOLANA_MNEMONIC (or MNEMONIC) is required for drip")
    config = settings.drip_config(dry_run=dry_run or None, resume=resume or None)
    cancel = CancellationToken()
    install_signal_handlers(cancel)
    spec = WalletSpec(label=label, mnemonic=settings.solana_mnemonic.get_secret_value())
    report = await WalletRunner(settings, config)(spec, cancel)
    print(f"drip: wallet={report.wallet_label} outcome={report.outcome.value}")
    if report.outcome is RunOutcome.ABORTED and report.error:
        print(f"drip: {report.error}")
    return report.exit_code


async def _run_multi(
    settings: Settings, *, dry_run: bool, resume: bool, wallets_file: str | None, env_file: str | None
) -> int:
    config = settings.drip_config(dry_run=dry_run or None, resume=resume or None)
    specs = collect_wallet_specs(
        _wallet_environ(env_file), Path(wallets_file or settings.drip_wallets_file)
    )
    if not specs:
        raise ConfigurationError("no wallets configured (WALLET_<n>_MNEMONIC or wallets file)")
    cancel = CancellationToken()
    install_signal_handlers(cancel)
    result = await run_wallets_sequentially(specs, WalletRunner(settings, config), cancel)
    for report in result.reports:
        print(f"multi-drip: wallet={report.wallet_label} outcome={report.outcome.value}")
    for label in result.failed_to_start:
        print(f"multi-drip: wallet={label} failed to start")
    return result.exit_code


def _show_state(settings: Settings, *, label: str, as_json: bool) -> int:
    store = StateStore(state_path_for(settings.state_dir_path(), label))
    try:
        state = store.load()
    except StateCorruptedError as exc:
        print(f"state-show: {exc}")
        return 1
    if state is None:
        print(f"state-show: no usable state at {store.path}")
        return 0
    payload = state.to_json_payload()
    if as_json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    print(f"path:           {store.path}")
    for key in sorted(payload):
        print(f"{key + ':':<16}{payload[key]}")
    return 0


async def _tg_test(settings: Settings, message: str) -> int:
    notifier = WalletRunner.notifier_for(settings)
    try:
        if not notifier.configured:
            print("tg-test: Telegram is disabled or missing TG_BOT_TOKEN/TG_CHAT_ID")
            return 1
        delivered = await notifier.send(message)
    finally:
        await notifier.close()
    print(f"tg-test: {'sent' if delivered else 'failed'}")
    return 0 if delivered else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="soldrip",
        epilog="Configuration is read from the environment and an optional .env file.",
    )
    parser.add_argument("--env-file", default=None, help="Alternative dotenv file to load")
    subparsers = parser.add_subparsers(dest="command", required=True)

    drip_parser = subparsers.add_parser("drip", help="Run round-trip cycles for one wallet")
    multi_parser = subparsers.add_parser("multi-drip", help="Run wallets one after another")
    for run_parser in (drip_parser, multi_parser):
        run_parser.add_argument("--dry-run", action="store_true", help="Quote only, never submit")
        run_parser.add_argument(
            "--resume", action="store_true", help="Continue an unfinished run instead of starting over"
        )
    drip_parser.add_argument("--wallet-label", default=DEFAULT_WALLET_LABEL)
    multi_parser.add_argument("--wallets-file", default=None, help="Overrides DRIP_WALLETS_FILE")

    state_parser = subparsers.add_parser("state-show", help="Print a wallet's persisted state")
    state_parser.add_argument("--wallet-label", default=DEFAULT_WALLET_LABEL)
    state_parser.add_argument("--json", action="store_true", dest="as_json")

    tg_parser = subparsers.add_parser("tg-test", help="Send a Telegram test message")
    tg_parser.add_argument("--message", default="soldrip: Telegram test message")

    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except ValidationError as exc:
        print(f"configuration error: {exc}")
        return 2
    setup_logging(settings.log_level, known_secrets=settings.secret_values())
    logger.info("runtime_prepared", extra={"extra": {"command": args.command, "pid": os.getpid()}})

    try:
        if args.command == "drip":
            return asyncio.run(
                _run_single(settings, dry_run=args.dry_run, resume=args.resume, label=args.wallet_label)
            )
        if args.command == "multi-drip":
            return asyncio.run(
                _run_multi(
                    settings,
                    dry_run=args.dry_run,
                    resume=args.resume,
                    wallets_file=args.wallets_file,
                    env_file=args.env_file,
                )
            )
        if args.command == "state-show":
            return _show_state(settings, label=args.wallet_label, as_json=args.as_json)
        if args.command == "tg-test":
            return asyncio.run(_tg_test(settings, args.message))
    except ConfigurationError as exc:
        print(f"configuration error: {exc}")
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
