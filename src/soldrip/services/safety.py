from __future__ import annotations

import logging
from dataclasses import dataclass

from soldrip.domain.models import CycleState, DripState, RouteRef
from soldrip.domain.tokens import decimals_for, to_ui_amount, token_for_mint
from soldrip.services.drip_errors import SafetyViolation, StateCorruptedError

logger = logging.getLogger(__name__)

# Shortfall below 2% of the recorded amount is treated as fee or rounding drift.
SHORTFALL_TOLERANCE_BPS = 200


@dataclass(frozen=True)
class SellInputs:
    route: RouteRef
    amount_raw: int


@dataclass(frozen=True)
class SellAmount:
    amount_raw: int
    recorded_raw: int
    balance_raw: int | None
    drift_raw: int = 0


def require_sell_inputs(state: DripState) -> SellInputs:
    if state.cycle_state is not CycleState.BOUGHT:
        raise StateCorruptedError(f"sell requested in state {state.cycle_state.value}")
    if state.current_route is None or state.last_buy_amount_raw is None:
        raise StateCorruptedError("sell requested without a recorded route and buy amount")
    return SellInputs(route=state.current_route, amount_raw=state.last_buy_amount_raw)


def resolve_sell_amount(recorded_raw: int, balance_raw: int | None) -> SellAmount:
    """Bind a sell to the amount recorded by its paired buy.

    ``balance_raw`` is the wallet's current holding of the volatile asset, or ``None`` when no
    balance was read (dry run). A surplus never increases the sell amount; a shortfall below
    the tolerance sells the actual balance; anything larger stops the run.
    """

    if recorded_raw <= 0:
        raise SafetyViolation(f"recorded sell amount must be positive, got {recorded_raw}")

    amount = recorded_raw
    drift = 0
    if balance_raw is not None and balance_raw < recorded_raw:
        drift = recorded_raw - balance_raw
        if drift * 10_000 >= SHORTFALL_TOLERANCE_BPS * recorded_raw:
            raise SafetyViolation(
                f"balance {balance_raw} is below recorded buy amount {recorded_raw} "
                f"by {drift} (>= {SHORTFALL_TOLERANCE_BPS} bps)"
            )
        amount = balance_raw
        logger.warning(
            "sell_amount_adjusted_to_balance",
            extra={"extra": {"recorded_raw": recorded_raw, "balance_raw": balance_raw, "drift_raw": drift}},
        )

    if amount <= 0:
        raise SafetyViolation("resolved sell amount is zero")
    return SellAmount(amount_raw=amount, recorded_raw=recorded_raw, balance_raw=balance_raw, drift_raw=drift)


def check_buy_sanity(
    *,
    volatile_mint: str,
    stable_mint: str,
    stable_in_raw: int,
    amount_out_raw: int,
) -> None:
    if amount_out_raw <= 0:
        raise SafetyViolation("buy returned a non-positive amount")

    token = token_for_mint(volatile_mint)
    if token is None or token.max_units_per_stable is None:
        return

    received = to_ui_amount(amount_out_raw, token.decimals)
    spent = to_ui_amount(stable_in_raw, decimals_for(stable_mint))
    ceiling = token.max_units_per_stable * spent
    if received > ceiling:
        raise SafetyViolation(
            f"buy of {token.symbol} returned {received} for {spent} stable "
            f"(limit {ceiling}); check decimals configuration"
        )
