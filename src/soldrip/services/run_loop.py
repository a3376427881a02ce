from __future__ import annotations

import asyncio
import logging
import random
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from uuid import uuid4

from soldrip.adapters.providers import BalanceProvider, SwapProvider
from soldrip.domain.models import CycleState, DripConfig, DripState, epoch_ms
from soldrip.domain.tokens import SOL_MINT, decimals_for
from soldrip.logging_context import with_logging_context
from soldrip.security.redaction import sanitize_text
from soldrip.services.cycle_state_machine import CycleStateMachine, StepOutcome
from soldrip.services.drip_errors import ErrorKind, classify_error
from soldrip.services.process_lock import StateLockedError, state_file_lock
from soldrip.services.retry import RetryExecutor
from soldrip.services.scheduler import plan_delay
from soldrip.services.startup_recovery import RecoveryManager
from soldrip.services.state_store import StateStore
from soldrip.services.stats import BalanceSnapshot, RunSummary, StatsCollector, render_summary

logger = logging.getLogger(__name__)

SummaryHook = Callable[[RunSummary], Awaitable[None]]


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ABORTED = "aborted"


class CancellationToken:
    """Cooperative stop flag; only checked between legs and while waiting for the next one."""

    def __init__(self, sleep_fn: Callable[[float], Awaitable[None]] | None = None) -> None:
        self._event = asyncio.Event()
        self._sleep_fn = sleep_fn

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; return True if cancellation arrived first."""

        if seconds <= 0 or self.cancelled:
            return self.cancelled
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


def install_signal_handlers(cancel: CancellationToken) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(signame: str) -> None:
        logger.warning("shutdown_requested", extra={"extra": {"signal": signame}})
        cancel.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops.
            signal.signal(sig, lambda _signum, _frame, name=sig.name: _on_signal(name))


@dataclass(frozen=True)
class RunReport:
    wallet_label: str
    outcome: RunOutcome
    error_kind: ErrorKind | None = None
    error: str | None = None
    state: DripState | None = None
    summary: RunSummary | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.outcome is RunOutcome.ABORTED else 0


class RunLoop:
    def __init__(
        self,
        *,
        config: DripConfig,
        store: StateStore,
        swaps: SwapProvider,
        balances: BalanceProvider,
        wallet_public_key: str,
        wallet_label: str = "default",
        notifier: SummaryHook | None = None,
        rng: random.Random | None = None,
        clock_ms: Callable[[], int] = epoch_ms,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.swaps = swaps
        self.balances = balances
        self.wallet_public_key = wallet_public_key
        self.wallet_label = wallet_label
        self.notifier = notifier
        self.rng = rng or random.Random()
        self.clock_ms = clock_ms
        self.retry = RetryExecutor(config.retry, sleep_fn=retry_sleep)

    def _build_machine(self, state: DripState) -> CycleStateMachine:
        return CycleStateMachine(
            config=self.config,
            store=self.store,
            swaps=self.swaps,
            balances=self.balances,
            retry=self.retry,
            wallet_public_key=self.wallet_public_key,
            state=state,
            rng=self.rng,
            clock_ms=self.clock_ms,
        )

    async def run(self, cancel: CancellationToken | None = None) -> RunReport:
        cancel = cancel or CancellationToken()
        with with_logging_context(run_id=uuid4().hex[:12], wallet=self.wallet_label):
            try:
                with state_file_lock(self.store.path):
                    return await self._run_locked(cancel)
            except StateLockedError as exc:
                logger.error("state_locked", extra={"extra": {"error_message": str(exc)}})
                summary = await self._finalize(
                    machine=None,
                    stats=StatsCollector(),
                    start=BalanceSnapshot(),
                    started=time.monotonic(),
                    outcome=RunOutcome.ABORTED,
                    error_text=str(exc),
                )
                return RunReport(
                    wallet_label=self.wallet_label,
                    outcome=RunOutcome.ABORTED,
                    error_kind=ErrorKind.CONFIGURATION,
                    error=str(exc),
                    summary=summary,
                )

    async def _run_locked(self, cancel: CancellationToken) -> RunReport:
        stats = StatsCollector()
        started = time.monotonic()
        machine: CycleStateMachine | None = None
        start_balances = BalanceSnapshot()
        outcome = RunOutcome.ABORTED
        error_kind: ErrorKind | None = None
        error_text: str | None = None
        summary: RunSummary | None = None

        try:
            recovery = await RecoveryManager(
                config=self.config, store=self.store, clock_ms=self.clock_ms
            ).prepare(self._build_machine)
            machine = recovery.machine
            if recovery.recovery_report is not None:
                stats.record(recovery.recovery_report)

            start_balances = await self._snapshot(include_price=not self.config.dry_run)
            outcome = await self._drive(machine, stats, cancel)
        except Exception as exc:  # noqa: BLE001
            outcome = RunOutcome.ABORTED
            error_kind = classify_error(exc)
            error_text = sanitize_text(f"{type(exc).__name__}: {exc}")
            logger.error(
                "run_aborted",
                exc_info=True,
                extra={
                    "extra": {
                        "error_kind": error_kind.value,
                        "completed_legs": machine.state.completed_legs if machine else None,
                        "cycle_state": machine.state.cycle_state.value if machine else None,
                    }
                },
            )
        finally:
            summary = await self._finalize(
                machine=machine,
                stats=stats,
                start=start_balances,
                started=started,
                outcome=outcome,
                error_text=error_text,
            )

        return RunReport(
            wallet_label=self.wallet_label,
            outcome=outcome,
            error_kind=error_kind,
            error=error_text,
            state=machine.state if machine else None,
            summary=summary,
        )

    async def _drive(
        self, machine: CycleStateMachine, stats: StatsCollector, cancel: CancellationToken
    ) -> RunOutcome:
        while (
            machine.state.completed_legs < self.config.target_legs
            or machine.state.cycle_state is CycleState.BOUGHT
        ):
            holding = machine.state.cycle_state is CycleState.BOUGHT
            if cancel.cancelled and not holding:
                logger.warning(
                    "run_interrupted",
                    extra={"extra": {"completed_legs": machine.state.completed_legs}},
                )
                return RunOutcome.INTERRUPTED

            plan = plan_delay(self.config, machine.state, now_ms=self.clock_ms(), rng=self.rng)
            if plan.delay_ms > 0:
                logger.info(
                    "next_leg_scheduled",
                    extra={
                        "extra": {
                            "delay_ms": plan.delay_ms,
                            "remaining_legs": plan.remaining_legs,
                            "remaining_ms": plan.remaining_ms,
                        }
                    },
                )
                if await cancel.sleep(plan.delay_ms / 1000.0):
                    continue

            step = await machine.step()
            if step.report is not None:
                stats.record(step.report)
            if step.outcome is StepOutcome.SKIPPED:
                stats.record_skip()
                await cancel.sleep(self.config.retry.initial_backoff_ms / 1000.0)

        logger.info(
            "run_completed",
            extra={
                "extra": {
                    "completed_legs": machine.state.completed_legs,
                    "target_legs": self.config.target_legs,
                }
            },
        )
        return RunOutcome.COMPLETED

    async def _snapshot(self, *, include_price: bool) -> BalanceSnapshot:
        stable_raw: int | None = None
        sol_raw: int | None = None
        price_raw: int | None = None
        try:
            stable_raw = await self.balances.balance_of(self.wallet_public_key, self.config.stable_mint)
            sol_raw = await self.balances.balance_of(self.wallet_public_key, SOL_MINT)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "balance_snapshot_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error_message": sanitize_text(str(exc))}},
            )
        if include_price:
            try:
                quote = await self.swaps.quote(
                    SOL_MINT,
                    self.config.stable_mint,
                    10 ** decimals_for(SOL_MINT),
                    self.config.base_slippage_bps,
                )
                price_raw = quote.out_amount
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "sol_price_quote_failed",
                    extra={"extra": {"error_type": type(exc).__name__}},
                )
        return BalanceSnapshot(stable_raw=stable_raw, sol_raw=sol_raw, sol_price_stable_raw=price_raw)

    async def _finalize(
        self,
        *,
        machine: CycleStateMachine | None,
        stats: StatsCollector,
        start: BalanceSnapshot,
        started: float,
        outcome: RunOutcome,
        error_text: str | None,
    ) -> RunSummary:
        end = await self._snapshot(include_price=False)
        summary = RunSummary(
            wallet_label=self.wallet_label,
            outcome=outcome.value,
            error=error_text,
            dry_run=self.config.dry_run,
            target_legs=self.config.target_legs,
            window_sec=self.config.window_sec,
            completed_legs=machine.state.completed_legs if machine else 0,
            legs_executed=len(stats.legs),
            skipped_buys=stats.skipped_buys,
            recovery_sells=stats.recovery_sells,
            elapsed_sec=time.monotonic() - started,
            routes=dict(stats.routes),
            start=start,
            end=end,
            stable_decimals=decimals_for(self.config.stable_mint),
        )
        logger.info(
            "run_summary",
            extra={
                "extra": {
                    "outcome": outcome.value,
                    "completed_legs": summary.completed_legs,
                    "legs_executed": summary.legs_executed,
                    "swap_net_raw": summary.swap_net_raw,
                    "summary": render_summary(summary),
                }
            },
        )
        if self.notifier is not None:
            try:
                await self.notifier(summary)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "summary_notification_failed",
                    extra={"extra": {"error_type": type(exc).__name__, "error_message": sanitize_text(str(exc))}},
                )
        return summary
