from __future__ import annotations

import pytest

from soldrip.domain.models import DripState, RouteRef
from soldrip.domain.tokens import KNOWN_TOKENS, SOL_MINT, USDC_MINT
from soldrip.services.drip_errors import SafetyViolation, StateCorruptedError
from soldrip.services.safety import check_buy_sanity, require_sell_inputs, resolve_sell_amount


def test_sell_amount_is_the_recorded_buy_amount() -> None:
    resolved = resolve_sell_amount(5_000_000, 5_000_000)

    assert resolved.amount_raw == 5_000_000
    assert resolved.drift_raw == 0


def test_surplus_balance_never_increases_the_sell() -> None:
    resolved = resolve_sell_amount(5_000_000, 9_000_000_000)

    assert resolved.amount_raw == 5_000_000


def test_small_shortfall_sells_the_actual_balance() -> None:
    resolved = resolve_sell_amount(10_000, 9_900)

    assert resolved.amount_raw == 9_900
    assert resolved.drift_raw == 100


def test_shortfall_at_tolerance_stops_the_run() -> None:
    with pytest.raises(SafetyViolation, match="below recorded"):
        resolve_sell_amount(10_000, 9_800)


def test_zero_balance_is_a_violation() -> None:
    with pytest.raises(SafetyViolation):
        resolve_sell_amount(10_000, 0)


def test_dry_run_uses_recorded_amount_without_balance() -> None:
    assert resolve_sell_amount(42, None).amount_raw == 42


def test_require_sell_inputs_rejects_non_holding_state() -> None:
    with pytest.raises(StateCorruptedError, match="INIT"):
        require_sell_inputs(DripState.fresh(now_ms=0))

    bought = DripState.fresh(now_ms=0).after_buy(
        route=RouteRef(name="SOL-USDC", volatile_mint=SOL_MINT), amount_raw=11, tx_ref="sig", now_ms=1
    )
    inputs = require_sell_inputs(bought)
    assert inputs.amount_raw == 11
    assert inputs.route.volatile_mint == SOL_MINT


def test_buy_sanity_flags_implausible_sol_amount() -> None:
    # 1 USDC buys at most 0.05 SOL.
    check_buy_sanity(
        volatile_mint=SOL_MINT, stable_mint=USDC_MINT, stable_in_raw=1_000_000, amount_out_raw=50_000_000
    )
    with pytest.raises(SafetyViolation, match="decimals"):
        check_buy_sanity(
            volatile_mint=SOL_MINT, stable_mint=USDC_MINT, stable_in_raw=1_000_000, amount_out_raw=50_000_001
        )


def test_buy_sanity_skips_tokens_without_ceiling() -> None:
    check_buy_sanity(
        volatile_mint=KNOWN_TOKENS["BONK"].mint,
        stable_mint=USDC_MINT,
        stable_in_raw=1_000_000,
        amount_out_raw=10**15,
    )
    with pytest.raises(SafetyViolation):
        check_buy_sanity(volatile_mint="Other", stable_mint=USDC_MINT, stable_in_raw=1, amount_out_raw=0)
