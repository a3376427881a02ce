from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from soldrip.config import Settings
from soldrip.domain.models import LegKind
from soldrip.domain.tokens import SOL_MINT, USDC_MINT
from soldrip.services.drip_errors import ConfigurationError


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.drip_target_trades == 10
    assert settings.drip_window_sec == 3600
    assert settings.drip_routes == ["SOL-USDC"]
    assert settings.drip_dry_run is False
    assert settings.drip_resume is False
    assert settings.solana_mnemonic is None


def test_settings_reads_env_and_legacy_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRIP_TRADES", "6")
    monkeypatch.setenv("MNEMONIC", "alpha beta")
    monkeypatch.setenv("DRIP_USDC_MIN", "0.5")
    monkeypatch.setenv("DRIP_USDC_MAX", "1.25")
    monkeypatch.setenv("DRIP_ROUTES", "sol-usdc, JUP-USDC")

    settings = Settings()

    assert settings.drip_target_trades == 6
    assert settings.solana_mnemonic is not None
    assert settings.solana_mnemonic.get_secret_value() == "alpha beta"
    assert settings.drip_usdc_min == Decimal("0.5")
    assert settings.drip_routes == ["SOL-USDC", "JUP-USDC"]
    assert "alpha beta" not in repr(settings)


def test_settings_rejects_inverted_ranges(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRIP_USDC_MIN", "3")
    monkeypatch.setenv("DRIP_USDC_MAX", "2")

    with pytest.raises(ValidationError, match="DRIP_USDC_MAX"):
        Settings()


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("DRIP_TARGET_TRADES", "0"),
        ("DRIP_WINDOW_SEC", "-1"),
        ("DRIP_MIN_DELAY_SEC", "-5"),
        ("DRIP_SAFETY_FACTOR", "1.5"),
        ("DRIP_USDC_MIN", "0"),
    ],
)
def test_settings_rejects_invalid_values(monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
    monkeypatch.setenv(key, value)

    with pytest.raises(ValidationError):
        Settings()


def test_drip_config_builds_routes_and_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRIP_MAX_BUY_RETRIES", "2")
    monkeypatch.setenv("DRIP_MAX_SELL_RETRIES", "7")
    monkeypatch.setenv("DRIP_FAIL_BACKOFF_SEC", "3")
    monkeypatch.setenv("DRIP_DRY_RUN", "true")

    config = Settings().drip_config()

    assert config.routes[0].volatile_mint == SOL_MINT
    assert config.stable_mint == USDC_MINT
    assert config.retry.attempts_for(LegKind.BUY) == 2
    assert config.retry.attempts_for(LegKind.SELL) == 7
    assert config.retry.initial_backoff_ms == 3000
    assert config.dry_run is True
    assert Settings().drip_config(dry_run=False).dry_run is False


def test_drip_config_without_tradable_routes_is_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DRIP_ROUTES", "DOGE-USDC")

    with pytest.raises(ConfigurationError, match="no tradable routes"):
        Settings().drip_config()


def test_settings_reads_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text("DRIP_TARGET_TRADES=4\nTG_ENABLED=true\n", encoding="utf-8")

    settings = Settings(_env_file=env_file)

    assert settings.drip_target_trades == 4
    assert settings.tg_enabled is True


def test_secret_values_lists_configured_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JUP_API_KEY", "jup-key-123")
    monkeypatch.setenv("TG_BOT_TOKEN", "123:abc")

    assert Settings().secret_values() == ["jup-key-123", "123:abc"]
