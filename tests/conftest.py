from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

import pytest

from soldrip.adapters.providers import BalanceProvider, SwapProvider, SwapQuote
from soldrip.config import Settings
from soldrip.domain.models import DripConfig, RetryPolicy, Route
from soldrip.domain.tokens import SOL_MINT, USDC_MINT

SOL_ROUTE = Route(name="SOL-USDC", volatile_mint=SOL_MINT, stable_mint=USDC_MINT)


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)
        validation_alias = getattr(field, "validation_alias", None)
        choices = getattr(validation_alias, "choices", ())
        for choice in choices:
            if isinstance(choice, str):
                settings_env_keys.add(choice)

    for key in list(os.environ):
        if key in settings_env_keys or (key.startswith("WALLET_") and key.endswith("_MNEMONIC")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DRIP_STATE_DIR", str(tmp_path / "state"))

    yield

    Settings.model_config["env_file"] = original_env_file


class FakeSwapProvider(SwapProvider):
    """Deterministic in-memory swap venue: 1 USDC raw unit buys 5 lamports."""

    def __init__(self) -> None:
        self.quotes: list[tuple[str, str, int, int]] = []
        self.submitted: list[str] = []
        self.buy_failures: list[BaseException] = []
        self.sell_failures: list[BaseException] = []
        self.confirm_result = True
        self.buy_multiplier = 5

    async def quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> SwapQuote:
        self.quotes.append((input_mint, output_mint, amount, slippage_bps))
        buying = input_mint == USDC_MINT
        failures = self.buy_failures if buying else self.sell_failures
        if failures:
            raise failures.pop(0)
        out_amount = amount * self.buy_multiplier if buying else max(1, amount // 5)
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out_amount,
            slippage_bps=slippage_bps,
        )

    async def build_swap(self, quote: SwapQuote, wallet_public_key: str) -> str:
        return f"tx-{len(self.quotes)}"

    async def submit(self, serialized_transaction: str) -> str:
        self.submitted.append(serialized_transaction)
        return f"sig-{len(self.submitted)}"

    async def confirm(self, tx_ref: str, timeout_ms: int) -> bool:
        return self.confirm_result


class FakeBalanceProvider(BalanceProvider):
    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances = dict(balances or {})
        self.calls: list[str] = []
        self.error: BaseException | None = None

    async def balance_of(self, owner: str, mint: str) -> int:
        self.calls.append(mint)
        if self.error is not None:
            raise self.error
        return self.balances.get(mint, 0)


@pytest.fixture
def fake_swaps() -> FakeSwapProvider:
    return FakeSwapProvider()


@pytest.fixture
def fake_balances() -> FakeBalanceProvider:
    return FakeBalanceProvider({USDC_MINT: 100_000_000, SOL_MINT: 2_000_000_000})


@pytest.fixture
def make_config():
    def _make(**overrides) -> DripConfig:
        retry_overrides = overrides.pop("retry", {})
        retry = RetryPolicy(
            **{
                "max_attempts": 5,
                "buy_max_attempts": 3,
                "initial_backoff_ms": 1000,
                "max_backoff_ms": 8000,
                "slippage_step_bps": 25,
                "slippage_max_bps": 300,
                **retry_overrides,
            }
        )
        base = {
            "routes": (SOL_ROUTE,),
            "target_legs": 4,
            "window_sec": 3600,
            "stable_min": Decimal("1"),
            "stable_max": Decimal("2"),
            "stable_mint": USDC_MINT,
            "min_delay_sec": 5,
            "retry": retry,
        }
        base.update(overrides)
        return DripConfig(**base)

    return _make


@pytest.fixture
def no_sleep():
    slept: list[float] = []

    async def _sleep(seconds: float) -> None:
        slept.append(seconds)

    _sleep.calls = slept  # type: ignore[attr-defined]
    return _sleep
