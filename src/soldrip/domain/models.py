from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

STATE_VERSION = 3


class CycleState(StrEnum):
    INIT = "INIT"
    BOUGHT = "BOUGHT"
    SOLD = "SOLD"


class LegKind(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Route:
    """A tradable pair against the stable asset; identity is the volatile mint."""

    name: str
    volatile_mint: str
    stable_mint: str

    def ref(self) -> RouteRef:
        return RouteRef(name=self.name, volatile_mint=self.volatile_mint)


class RouteRef(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )

    name: str
    volatile_mint: str = Field(min_length=1)


def parse_raw_amount(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("raw amount must be an integer string")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError("raw amount must be an integer string")


class DripState(BaseModel):
    """Durable record of run progress.

    Instances are immutable; every transition returns a new validated state so that
    ``cycle_state == BOUGHT`` holds exactly when a route and a buy amount are recorded.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )

    version: int = STATE_VERSION
    completed_legs: int = Field(default=0, ge=0)
    start_time: int = Field(ge=0)
    cycle_state: CycleState = CycleState.INIT
    current_route: RouteRef | None = None
    last_buy_amount_raw: int | None = None
    last_buy_tx_ref: str | None = None
    last_buy_time: int | None = None

    @field_validator("last_buy_amount_raw", mode="before")
    @classmethod
    def parse_last_buy_amount(cls, value: object) -> int | None:
        return parse_raw_amount(value)

    @field_serializer("last_buy_amount_raw")
    def dump_last_buy_amount(self, value: int | None) -> str | None:
        return None if value is None else str(value)

    @model_validator(mode="after")
    def check_holding_invariant(self) -> DripState:
        holding = self.cycle_state is CycleState.BOUGHT
        recorded = self.current_route is not None and self.last_buy_amount_raw is not None
        if holding != recorded:
            raise ValueError(
                "cycleState BOUGHT requires currentRoute and lastBuyAmountRaw, "
                "and other states must not carry them"
            )
        if self.last_buy_amount_raw is not None and self.last_buy_amount_raw <= 0:
            raise ValueError("lastBuyAmountRaw must be positive")
        return self

    @classmethod
    def fresh(cls, *, now_ms: int) -> DripState:
        return cls(start_time=now_ms)

    def after_buy(self, *, route: RouteRef, amount_raw: int, tx_ref: str, now_ms: int) -> DripState:
        return DripState(
            version=self.version,
            completed_legs=self.completed_legs + 1,
            start_time=self.start_time,
            cycle_state=CycleState.BOUGHT,
            current_route=route,
            last_buy_amount_raw=amount_raw,
            last_buy_tx_ref=tx_ref,
            last_buy_time=now_ms,
        )

    def after_sell(self) -> DripState:
        return DripState(
            version=self.version,
            completed_legs=self.completed_legs + 1,
            start_time=self.start_time,
            cycle_state=CycleState.SOLD,
            last_buy_tx_ref=self.last_buy_tx_ref,
            last_buy_time=self.last_buy_time,
        )

    def reset_cycle(self) -> DripState:
        return DripState(
            version=self.version,
            completed_legs=self.completed_legs,
            start_time=self.start_time,
            cycle_state=CycleState.INIT,
            last_buy_tx_ref=self.last_buy_tx_ref,
            last_buy_time=self.last_buy_time,
        )

    def new_run(self, *, now_ms: int) -> DripState:
        if self.cycle_state is CycleState.BOUGHT:
            raise ValueError("cannot start a new run while holding the volatile asset")
        return DripState(
            version=self.version,
            completed_legs=0,
            start_time=now_ms,
            last_buy_tx_ref=self.last_buy_tx_ref,
            last_buy_time=self.last_buy_time,
        )

    def to_json_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_backoff_ms: int
    max_backoff_ms: int
    slippage_step_bps: int
    slippage_max_bps: int
    sell_only_retry: bool = False
    buy_max_attempts: int | None = None

    def attempts_for(self, leg: LegKind) -> int:
        if leg is LegKind.SELL:
            return self.max_attempts
        if self.sell_only_retry:
            return 1
        return self.buy_max_attempts if self.buy_max_attempts is not None else self.max_attempts

    @property
    def max_skipped_buys(self) -> int:
        # With sell-only retry a failed buy gives up its slot; this bounds consecutive lost slots.
        return self.buy_max_attempts if self.buy_max_attempts is not None else self.max_attempts

    def backoff_ms(self, attempt: int) -> int:
        return min(self.initial_backoff_ms * (2 ** max(0, attempt - 1)), self.max_backoff_ms)

    def slippage_for(self, attempt: int, base_bps: int) -> int:
        if attempt <= 1:
            return base_bps
        escalated = min(base_bps + self.slippage_step_bps * (attempt - 1), self.slippage_max_bps)
        return max(base_bps, escalated)


@dataclass(frozen=True)
class DripConfig:
    routes: tuple[Route, ...]
    target_legs: int
    window_sec: int
    stable_min: Decimal
    stable_max: Decimal
    stable_mint: str
    min_delay_sec: int
    retry: RetryPolicy
    base_slippage_bps: int = 100
    estimated_cycle_exec_ms: int = 45_000
    safety_factor: float = 0.85
    confirm_timeout_ms: int = 60_000
    dry_run: bool = False
    resume: bool = False

    @property
    def window_ms(self) -> int:
        return self.window_sec * 1000

    @property
    def min_delay_ms(self) -> int:
        return self.min_delay_sec * 1000

    def route_for(self, volatile_mint: str) -> Route | None:
        for route in self.routes:
            if route.volatile_mint == volatile_mint:
                return route
        return None


@dataclass(frozen=True)
class LegReport:
    leg: LegKind
    route_name: str
    amount_in_raw: int
    amount_out_raw: int
    tx_ref: str
    attempts: int
    slippage_bps: int
    elapsed_ms: int
    recovery: bool = False


def epoch_ms() -> int:
    return int(time.time() * 1000)
