from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from soldrip.adapters.jupiter import JupiterClient
from soldrip.adapters.solana_rpc import JupiterSwapProvider, SolanaRpcGateway
from soldrip.adapters.telegram import TelegramNotifier
from soldrip.adapters.wallet import load_wallet
from soldrip.config import Settings
from soldrip.domain.models import DripConfig
from soldrip.logging_context import with_logging_context
from soldrip.security.redaction import sanitize_text
from soldrip.services.drip_errors import ConfigurationError
from soldrip.services.run_loop import CancellationToken, RunLoop, RunOutcome, RunReport
from soldrip.services.state_store import StateStore, state_path_for

logger = logging.getLogger(__name__)

_WALLET_ENV_PATTERN = re.compile(r"^WALLET_(\d+)_MNEMONIC$")


@dataclass(frozen=True)
class WalletSpec:
    label: str
    mnemonic: str = field(repr=False)


def wallet_specs_from_env(environ: Mapping[str, str]) -> list[WalletSpec]:
    numbered: list[tuple[int, str]] = []
    for key, value in environ.items():
        match = _WALLET_ENV_PATTERN.match(key)
        if match and value.strip():
            numbered.append((int(match.group(1)), value.strip()))
    return [WalletSpec(label=f"wallet_{index}", mnemonic=value) for index, value in sorted(numbered)]


def wallet_specs_from_file(path: Path) -> list[WalletSpec]:
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"wallets file {path} is not valid JSON") from exc
    if not isinstance(payload, list):
        raise ConfigurationError(f"wallets file {path} must contain a JSON list")

    specs: list[WalletSpec] = []
    for index, item in enumerate(payload, start=1):
        if isinstance(item, str) and item.strip():
            specs.append(WalletSpec(label=f"file_{index}", mnemonic=item.strip()))
        elif isinstance(item, dict) and isinstance(item.get("mnemonic"), str):
            label = str(item.get("id") or f"file_{index}")
            specs.append(WalletSpec(label=label, mnemonic=item["mnemonic"].strip()))
        else:
            logger.warning("wallets_file_entry_ignored", extra={"extra": {"index": index}})
    return specs


def collect_wallet_specs(environ: Mapping[str, str], wallets_file: Path | None) -> list[WalletSpec]:
    specs = wallet_specs_from_env(environ)
    if wallets_file is not None:
        specs.extend(wallet_specs_from_file(wallets_file))

    unique: list[WalletSpec] = []
    seen: set[str] = set()
    for spec in specs:
        if spec.mnemonic in seen:
            logger.warning("duplicate_wallet_skipped", extra={"extra": {"label": spec.label}})
            continue
        seen.add(spec.mnemonic)
        unique.append(spec)
    return unique


WalletRun = Callable[[WalletSpec, CancellationToken], Awaitable[RunReport]]


@dataclass(frozen=True)
class MultiWalletReport:
    reports: tuple[RunReport, ...]
    failed_to_start: tuple[str, ...] = ()

    @property
    def exit_code(self) -> int:
        aborted = any(report.outcome is RunOutcome.ABORTED for report in self.reports)
        return 1 if aborted or self.failed_to_start else 0


async def run_wallets_sequentially(
    specs: list[WalletSpec], run_wallet: WalletRun, cancel: CancellationToken
) -> MultiWalletReport:
    """Run each wallet to completion, summary included, before starting the next one."""

    reports: list[RunReport] = []
    failed: list[str] = []
    for position, spec in enumerate(specs, start=1):
        if cancel.cancelled:
            logger.warning("multi_wallet_interrupted", extra={"extra": {"remaining": len(specs) - position + 1}})
            break
        with with_logging_context(wallet=spec.label):
            logger.info("wallet_run_started", extra={"extra": {"position": position, "total": len(specs)}})
            try:
                report = await run_wallet(spec, cancel)
            except Exception as exc:  # noqa: BLE001
                failed.append(spec.label)
                logger.error(
                    "wallet_start_failed",
                    extra={
                        "extra": {
                            "error_type": type(exc).__name__,
                            "error_message": sanitize_text(str(exc), known_secrets=[spec.mnemonic]),
                        }
                    },
                )
                continue
            reports.append(report)
            logger.info("wallet_run_finished", extra={"extra": {"outcome": report.outcome.value}})
    return MultiWalletReport(reports=tuple(reports), failed_to_start=tuple(failed))


class WalletRunner:
    """Builds the network adapters for one wallet, runs it, and closes them afterwards."""

    def __init__(self, settings: Settings, config: DripConfig) -> None:
        self.settings = settings
        self.config = config

    @staticmethod
    def notifier_for(settings: Settings) -> TelegramNotifier:
        return TelegramNotifier(
            bot_token=settings.tg_bot_token.get_secret_value() if settings.tg_bot_token else None,
            chat_id=settings.tg_chat_id,
            enabled=settings.tg_enabled,
            timeout_ms=settings.tg_timeout_ms,
            max_retry=settings.tg_max_retry,
        )

    async def __call__(self, spec: WalletSpec, cancel: CancellationToken) -> RunReport:
        wallet = load_wallet(spec.label, spec.mnemonic)
        jupiter = JupiterClient(
            base_url=self.settings.jup_base_url,
            api_key=self.settings.jup_api_key.get_secret_value() if self.settings.jup_api_key else None,
            timeout_seconds=self.settings.http_timeout_sec,
        )
        gateway = SolanaRpcGateway(rpc_url=self.settings.rpc_url, keypair=wallet.keypair)
        notifier = self.notifier_for(self.settings)
        logger.info("wallet_loaded", extra={"extra": {"public_key": wallet.public_key}})
        try:
            loop = RunLoop(
                config=self.config,
                store=StateStore(state_path_for(self.settings.state_dir_path(), spec.label)),
                swaps=JupiterSwapProvider(jupiter=jupiter, gateway=gateway),
                balances=gateway,
                wallet_public_key=wallet.public_key,
                wallet_label=spec.label,
                notifier=notifier.notify_summary,
            )
            return await loop.run(cancel)
        finally:
            await jupiter.close()
            await gateway.close()
            await notifier.close()
