from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Annotated

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from soldrip.adapters.jupiter import DEFAULT_BASE_URL
from soldrip.domain.models import DripConfig, RetryPolicy
from soldrip.domain.tokens import USDC_MINT, parse_routes
from soldrip.services.drip_errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    rpc_url: str = Field(default="https://api.mainnet-beta.solana.com", alias="RPC_URL")
    solana_mnemonic: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("SOLANA_MNEMONIC", "MNEMONIC")
    )
    jup_api_key: SecretStr | None = Field(default=None, alias="JUP_API_KEY")
    jup_base_url: str = Field(default=DEFAULT_BASE_URL, alias="JUP_BASE_URL")
    http_timeout_sec: float = Field(default=15.0, alias="HTTP_TIMEOUT_SEC")

    drip_target_trades: int = Field(
        default=10, validation_alias=AliasChoices("DRIP_TARGET_TRADES", "DRIP_TRADES")
    )
    drip_window_sec: int = Field(default=3600, alias="DRIP_WINDOW_SEC")
    drip_usdc_min: Decimal = Field(default=Decimal("1"), alias="DRIP_USDC_MIN")
    drip_usdc_max: Decimal = Field(default=Decimal("2"), alias="DRIP_USDC_MAX")
    drip_min_delay_sec: int = Field(default=5, alias="DRIP_MIN_DELAY_SEC")
    drip_fail_backoff_sec: int = Field(default=30, alias="DRIP_FAIL_BACKOFF_SEC")
    drip_max_backoff_sec: int = Field(default=300, alias="DRIP_MAX_BACKOFF_SEC")
    drip_max_buy_retries: int = Field(default=3, alias="DRIP_MAX_BUY_RETRIES")
    drip_max_sell_retries: int = Field(default=5, alias="DRIP_MAX_SELL_RETRIES")
    drip_sell_only_retry: bool = Field(default=False, alias="DRIP_SELL_ONLY_RETRY")
    drip_base_slippage_bps: int = Field(default=100, alias="DRIP_BASE_SLIPPAGE_BPS")
    drip_slippage_step_bps: int = Field(default=25, alias="DRIP_SLIPPAGE_STEP_BPS")
    drip_slippage_max_bps: int = Field(default=300, alias="DRIP_SLIPPAGE_MAX_BPS")
    drip_est_cycle_exec_sec: int = Field(default=45, alias="DRIP_EST_CYCLE_EXEC_SEC")
    drip_safety_factor: float = Field(default=0.85, alias="DRIP_SAFETY_FACTOR")
    drip_confirm_timeout_sec: int = Field(default=60, alias="DRIP_CONFIRM_TIMEOUT_SEC")
    drip_dry_run: bool = Field(default=False, alias="DRIP_DRY_RUN")
    drip_resume: bool = Field(default=False, alias="DRIP_RESUME")
    drip_routes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["SOL-USDC"], alias="DRIP_ROUTES"
    )
    drip_routes_json: str | None = Field(default=None, alias="DRIP_ROUTES_JSON")
    drip_state_dir: str = Field(default="data", alias="DRIP_STATE_DIR")
    drip_wallets_file: str = Field(default="wallets.json", alias="DRIP_WALLETS_FILE")

    tg_enabled: bool = Field(default=False, alias="TG_ENABLED")
    tg_bot_token: SecretStr | None = Field(default=None, alias="TG_BOT_TOKEN")
    tg_chat_id: str | None = Field(default=None, alias="TG_CHAT_ID")
    tg_timeout_ms: int = Field(default=10_000, alias="TG_TIMEOUT_MS")
    tg_max_retry: int = Field(default=3, alias="TG_MAX_RETRY")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("drip_routes", mode="before")
    def parse_route_pairs(cls, value: str | list[str]) -> list[str]:
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError("DRIP_ROUTES JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = list(value)
        return [str(item).strip().upper() for item in items if str(item).strip()]

    @field_validator(
        "drip_target_trades",
        "drip_window_sec",
        "drip_max_buy_retries",
        "drip_max_sell_retries",
        "drip_confirm_timeout_sec",
    )
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator(
        "drip_min_delay_sec",
        "drip_fail_backoff_sec",
        "drip_max_backoff_sec",
        "drip_base_slippage_bps",
        "drip_slippage_step_bps",
        "drip_est_cycle_exec_sec",
        "tg_max_retry",
    )
    def validate_non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("drip_usdc_min")
    def validate_usdc_min(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("DRIP_USDC_MIN must be > 0")
        return value

    @field_validator("drip_safety_factor")
    def validate_safety_factor(cls, value: float) -> float:
        if not 0 < value < 1:
            raise ValueError("DRIP_SAFETY_FACTOR must be between 0 and 1 (exclusive)")
        return value

    @field_validator("http_timeout_sec")
    def validate_http_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HTTP_TIMEOUT_SEC must be > 0")
        return value

    @model_validator(mode="after")
    def validate_ranges(self) -> Settings:
        if self.drip_usdc_max < self.drip_usdc_min:
            raise ValueError("DRIP_USDC_MAX must be >= DRIP_USDC_MIN")
        if self.drip_slippage_max_bps < self.drip_base_slippage_bps:
            raise ValueError("DRIP_SLIPPAGE_MAX_BPS must be >= DRIP_BASE_SLIPPAGE_BPS")
        if self.drip_max_backoff_sec < self.drip_fail_backoff_sec:
            raise ValueError("DRIP_MAX_BACKOFF_SEC must be >= DRIP_FAIL_BACKOFF_SEC")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.drip_max_sell_retries,
            buy_max_attempts=self.drip_max_buy_retries,
            initial_backoff_ms=self.drip_fail_backoff_sec * 1000,
            max_backoff_ms=self.drip_max_backoff_sec * 1000,
            slippage_step_bps=self.drip_slippage_step_bps,
            slippage_max_bps=self.drip_slippage_max_bps,
            sell_only_retry=self.drip_sell_only_retry,
        )

    def drip_config(self, *, dry_run: bool | None = None, resume: bool | None = None) -> DripConfig:
        try:
            routes = parse_routes(self.drip_routes, self.drip_routes_json)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if not routes:
            raise ConfigurationError("no tradable routes configured (DRIP_ROUTES / DRIP_ROUTES_JSON)")
        return DripConfig(
            routes=routes,
            target_legs=self.drip_target_trades,
            window_sec=self.drip_window_sec,
            stable_min=self.drip_usdc_min,
            stable_max=self.drip_usdc_max,
            stable_mint=USDC_MINT,
            min_delay_sec=self.drip_min_delay_sec,
            retry=self.retry_policy(),
            base_slippage_bps=self.drip_base_slippage_bps,
            estimated_cycle_exec_ms=self.drip_est_cycle_exec_sec * 1000,
            safety_factor=self.drip_safety_factor,
            confirm_timeout_ms=self.drip_confirm_timeout_sec * 1000,
            dry_run=self.drip_dry_run if dry_run is None else dry_run,
            resume=self.drip_resume if resume is None else resume,
        )

    def state_dir_path(self) -> Path:
        return Path(self.drip_state_dir).expanduser()

    def secret_values(self) -> list[str]:
        secrets = [self.solana_mnemonic, self.jup_api_key, self.tg_bot_token]
        return [secret.get_secret_value() for secret in secrets if secret is not None]
