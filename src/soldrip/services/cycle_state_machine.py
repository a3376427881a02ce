from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from soldrip.adapters.providers import BalanceProvider, SwapProvider, SwapQuote
from soldrip.domain.models import CycleState, DripConfig, DripState, LegKind, LegReport, Route, epoch_ms
from soldrip.domain.tokens import decimals_for, format_ui, to_raw_amount
from soldrip.logging_context import with_leg_context
from soldrip.services.drip_errors import ProviderError, RetryExhaustedError
from soldrip.services.retry import RetryExecutor
from soldrip.services.safety import check_buy_sanity, require_sell_inputs, resolve_sell_amount
from soldrip.services.state_store import StateStore

logger = logging.getLogger(__name__)

DRY_RUN_TX_REF = "dry_run"


class StepOutcome(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    outcome: StepOutcome
    state: DripState
    report: LegReport | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class _Fill:
    amount_in_raw: int
    amount_out_raw: int
    tx_ref: str


class CycleStateMachine:
    """Drives INIT -> BOUGHT -> SOLD -> INIT for one wallet.

    Every completed leg is saved through the store before ``step`` returns; that save is the
    point after which a leg counts as done across restarts.
    """

    def __init__(
        self,
        *,
        config: DripConfig,
        store: StateStore,
        swaps: SwapProvider,
        balances: BalanceProvider,
        retry: RetryExecutor,
        wallet_public_key: str,
        state: DripState,
        rng: random.Random | None = None,
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self.config = config
        self.store = store
        self.swaps = swaps
        self.balances = balances
        self.retry = retry
        self.wallet_public_key = wallet_public_key
        self.rng = rng or random.Random()
        self.clock_ms = clock_ms
        self._state = state
        self._consecutive_skips = 0

    @property
    def state(self) -> DripState:
        return self._state

    def _commit(self, state: DripState) -> None:
        self.store.save(state)
        self._state = state

    def start_new_run(self, *, now_ms: int) -> DripState:
        self._commit(self._state.new_run(now_ms=now_ms))
        return self._state

    async def step(self) -> StepResult:
        cycle_state = self._state.cycle_state
        match cycle_state:
            case CycleState.INIT:
                return await self.execute_buy()
            case CycleState.SOLD:
                self._state = self._state.reset_cycle()
                return await self.execute_buy()
            case CycleState.BOUGHT:
                return await self.execute_sell()
            case _:
                assert_never(cycle_state)

    def _pick_route(self) -> Route:
        return self.rng.choice(self.config.routes)

    def _pick_stable_amount(self) -> int:
        decimals = decimals_for(self.config.stable_mint)
        low = to_raw_amount(self.config.stable_min, decimals)
        high = to_raw_amount(self.config.stable_max, decimals)
        return self.rng.randint(low, high)

    async def _swap(self, quote: SwapQuote) -> str:
        if self.config.dry_run:
            return DRY_RUN_TX_REF
        serialized = await self.swaps.build_swap(quote, self.wallet_public_key)
        tx_ref = await self.swaps.submit(serialized)
        if not await self.swaps.confirm(tx_ref, self.config.confirm_timeout_ms):
            raise ProviderError(f"transaction {tx_ref} was not confirmed")
        return tx_ref

    async def execute_buy(self) -> StepResult:
        if self._state.cycle_state is not CycleState.INIT:
            raise RuntimeError(f"buy requested in state {self._state.cycle_state.value}")

        route = self._pick_route()
        amount_in = self._pick_stable_amount()
        leg_index = self._state.completed_legs + 1

        async def _attempt(slippage_bps: int) -> _Fill:
            quote = await self.swaps.quote(
                route.stable_mint, route.volatile_mint, amount_in, slippage_bps
            )
            tx_ref = await self._swap(quote)
            return _Fill(amount_in_raw=amount_in, amount_out_raw=quote.out_amount, tx_ref=tx_ref)

        with with_leg_context(LegKind.BUY.value, route.name):
            started = time.monotonic()
            try:
                result = await self.retry.attempt(
                    LegKind.BUY, _attempt, base_slippage_bps=self.config.base_slippage_bps
                )
            except RetryExhaustedError as exc:
                if not self.config.retry.sell_only_retry:
                    raise
                self._consecutive_skips += 1
                limit = self.config.retry.max_skipped_buys
                logger.warning(
                    "buy_leg_skipped",
                    extra={
                        "extra": {
                            "leg_index": leg_index,
                            "consecutive_skips": self._consecutive_skips,
                            "max_skipped_buys": limit,
                        }
                    },
                )
                if self._consecutive_skips > limit:
                    raise RetryExhaustedError(
                        LegKind.BUY, self._consecutive_skips, exc.last_error
                    ) from exc
                return StepResult(outcome=StepOutcome.SKIPPED, state=self._state, error=exc)

            self._consecutive_skips = 0

            fill = result.value
            self._commit(
                self._state.after_buy(
                    route=route.ref(),
                    amount_raw=fill.amount_out_raw,
                    tx_ref=fill.tx_ref,
                    now_ms=self.clock_ms(),
                )
            )
            check_buy_sanity(
                volatile_mint=route.volatile_mint,
                stable_mint=route.stable_mint,
                stable_in_raw=fill.amount_in_raw,
                amount_out_raw=fill.amount_out_raw,
            )

            report = LegReport(
                leg=LegKind.BUY,
                route_name=route.name,
                amount_in_raw=fill.amount_in_raw,
                amount_out_raw=fill.amount_out_raw,
                tx_ref=fill.tx_ref,
                attempts=result.attempts,
                slippage_bps=result.slippage_bps,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            self._log_leg(report, leg_index, route)
            return StepResult(outcome=StepOutcome.COMPLETED, state=self._state, report=report)

    async def execute_sell(self, *, recovery: bool = False) -> StepResult:
        inputs = require_sell_inputs(self._state)
        route = self.config.route_for(inputs.route.volatile_mint) or Route(
            name=inputs.route.name,
            volatile_mint=inputs.route.volatile_mint,
            stable_mint=self.config.stable_mint,
        )
        leg_index = self._state.completed_legs + 1

        async def _attempt(slippage_bps: int) -> _Fill:
            balance = None
            if not self.config.dry_run:
                balance = await self.balances.balance_of(self.wallet_public_key, route.volatile_mint)
            amount = resolve_sell_amount(inputs.amount_raw, balance).amount_raw
            quote = await self.swaps.quote(
                route.volatile_mint, route.stable_mint, amount, slippage_bps
            )
            tx_ref = await self._swap(quote)
            return _Fill(amount_in_raw=amount, amount_out_raw=quote.out_amount, tx_ref=tx_ref)

        with with_leg_context(LegKind.SELL.value, route.name):
            started = time.monotonic()
            result = await self.retry.attempt(
                LegKind.SELL, _attempt, base_slippage_bps=self.config.base_slippage_bps
            )
            fill = result.value
            self._commit(self._state.after_sell())
            # SOLD -> INIT needs no I/O; the persisted SOLD record is equivalent on reload.
            self._state = self._state.reset_cycle()

            report = LegReport(
                leg=LegKind.SELL,
                route_name=route.name,
                amount_in_raw=fill.amount_in_raw,
                amount_out_raw=fill.amount_out_raw,
                tx_ref=fill.tx_ref,
                attempts=result.attempts,
                slippage_bps=result.slippage_bps,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                recovery=recovery,
            )
            self._log_leg(report, leg_index, route)
            return StepResult(outcome=StepOutcome.COMPLETED, state=self._state, report=report)

    def _log_leg(self, report: LegReport, leg_index: int, route: Route) -> None:
        if report.leg is LegKind.BUY:
            in_decimals = decimals_for(route.stable_mint)
            out_decimals = decimals_for(route.volatile_mint)
        else:
            in_decimals = decimals_for(route.volatile_mint)
            out_decimals = decimals_for(route.stable_mint)
        logger.info(
            "recovery_sell_completed" if report.recovery else "leg_completed",
            extra={
                "extra": {
                    "leg_index": leg_index,
                    "target_legs": self.config.target_legs,
                    "side": report.leg.value,
                    "route": route.name,
                    "amount_in": format_ui(report.amount_in_raw, in_decimals),
                    "amount_out": format_ui(report.amount_out_raw, out_decimals),
                    "tx_ref": report.tx_ref,
                    "attempts": report.attempts,
                    "slippage_bps": report.slippage_bps,
                    "elapsed_ms": report.elapsed_ms,
                    "dry_run": self.config.dry_run,
                }
            },
        )
