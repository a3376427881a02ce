from __future__ import annotations

import asyncio
import random
from pathlib import Path

import pytest

from soldrip.domain.models import CycleState, DripState, RouteRef
from soldrip.domain.tokens import USDC_MINT
from soldrip.services.cycle_state_machine import CycleStateMachine
from soldrip.services.drip_errors import ProviderError, RetryExhaustedError
from soldrip.services.retry import RetryExecutor
from soldrip.services.startup_recovery import RecoveryAction, RecoveryManager
from soldrip.services.state_store import StateStore

WALLET = "11111111111111111111111111111111"
NOW_MS = 5_000


def _prepare(config, store: StateStore, swaps, balances, sleep_fn):
    def factory(state: DripState) -> CycleStateMachine:
        return CycleStateMachine(
            config=config,
            store=store,
            swaps=swaps,
            balances=balances,
            retry=RetryExecutor(config.retry, sleep_fn=sleep_fn),
            wallet_public_key=WALLET,
            state=state,
            rng=random.Random(5),
            clock_ms=lambda: NOW_MS,
        )

    manager = RecoveryManager(config=config, store=store, clock_ms=lambda: NOW_MS)
    return asyncio.run(manager.prepare(factory))


def _holding_state(mint: str = "X", amount_raw: int = 500_000) -> DripState:
    return DripState(
        start_time=0,
        completed_legs=3,
        cycle_state=CycleState.BOUGHT,
        current_route=RouteRef(name="X-USDC", volatile_mint=mint),
        last_buy_amount_raw=amount_raw,
        last_buy_tx_ref="sig-buy",
    )


def test_holding_state_is_sold_once_then_run_restarts(
    make_config, fake_swaps, fake_balances, no_sleep, tmp_path: Path
) -> None:
    store = StateStore(tmp_path / "state.json")
    store.save(_holding_state())
    fake_balances.balances["X"] = 500_000

    result = _prepare(make_config(), store, fake_swaps, fake_balances, no_sleep)

    assert result.action is RecoveryAction.RECOVERED
    assert fake_swaps.quotes == [("X", USDC_MINT, 500_000, 100)]
    assert result.recovery_report is not None
    assert result.recovery_report.recovery is True
    state = result.machine.state
    assert state.cycle_state is CycleState.INIT
    assert state.completed_legs == 0
    assert state.start_time == NOW_MS
    assert store.load() == state


def test_failed_recovery_sell_keeps_holding_state(
    make_config, fake_swaps, fake_balances, no_sleep, tmp_path: Path
) -> None:
    store = StateStore(tmp_path / "state.json")
    store.save(_holding_state())
    fake_balances.balances["X"] = 500_000
    fake_swaps.sell_failures = [ProviderError("rpc down")] * 5

    with pytest.raises(RetryExhaustedError):
        _prepare(make_config(), store, fake_swaps, fake_balances, no_sleep)

    assert store.load().cycle_state is CycleState.BOUGHT
    assert store.load().last_buy_amount_raw == 500_000


def test_resume_continues_unfinished_run(make_config, fake_swaps, fake_balances, no_sleep, tmp_path) -> None:
    store = StateStore(tmp_path / "state.json")
    saved = DripState(start_time=1_234, completed_legs=2, cycle_state=CycleState.SOLD)
    store.save(saved)

    result = _prepare(make_config(resume=True), store, fake_swaps, fake_balances, no_sleep)

    assert result.action is RecoveryAction.RESUMED
    assert result.machine.state == saved
    assert fake_swaps.quotes == []


def test_without_resume_a_new_run_starts(make_config, fake_swaps, fake_balances, no_sleep, tmp_path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.save(DripState(start_time=1_234, completed_legs=2, cycle_state=CycleState.SOLD))

    result = _prepare(make_config(), store, fake_swaps, fake_balances, no_sleep)

    assert result.action is RecoveryAction.FRESH
    assert result.machine.state.completed_legs == 0
    assert result.machine.state.start_time == NOW_MS
    assert store.load().completed_legs == 0


def test_finished_run_is_not_resumed(make_config, fake_swaps, fake_balances, no_sleep, tmp_path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.save(DripState(start_time=1_234, completed_legs=4, cycle_state=CycleState.SOLD))

    result = _prepare(make_config(resume=True, target_legs=4), store, fake_swaps, fake_balances, no_sleep)

    assert result.action is RecoveryAction.FRESH
    assert result.machine.state.completed_legs == 0


def test_missing_state_starts_fresh_and_persists(
    make_config, fake_swaps, fake_balances, no_sleep, tmp_path
) -> None:
    store = StateStore(tmp_path / "state.json")

    result = _prepare(make_config(), store, fake_swaps, fake_balances, no_sleep)

    assert result.action is RecoveryAction.FRESH
    assert result.loaded_state is None
    assert store.load() == DripState.fresh(now_ms=NOW_MS)
