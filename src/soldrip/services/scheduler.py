from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass

from soldrip.domain.models import CycleState, DripConfig, DripState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelayPlan:
    delay_ms: int
    remaining_legs: int
    remaining_cycles: int
    remaining_ms: int
    max_delay_ms: float
    reason: str


def plan_delay(config: DripConfig, state: DripState, *, now_ms: int, rng: random.Random) -> DelayPlan:
    """Pace the next leg against the remaining time window.

    Recomputed from scratch before every leg so slow cycles shrink later delays instead of
    accumulating into a missed deadline.
    """

    remaining_legs = config.target_legs - state.completed_legs
    remaining_ms = state.start_time + config.window_ms - now_ms

    def _zero(reason: str, remaining_cycles: int = 0) -> DelayPlan:
        return DelayPlan(
            delay_ms=0,
            remaining_legs=remaining_legs,
            remaining_cycles=remaining_cycles,
            remaining_ms=remaining_ms,
            max_delay_ms=0.0,
            reason=reason,
        )

    if state.cycle_state is CycleState.BOUGHT:
        return _zero("holding")
    if remaining_legs <= 0:
        return _zero("done")

    remaining_cycles = math.ceil(remaining_legs / 2)
    if remaining_ms <= 0:
        logger.warning(
            "scheduler_behind_schedule",
            extra={"extra": {"remaining_ms": remaining_ms, "remaining_legs": remaining_legs}},
        )
        return _zero("behind_schedule", remaining_cycles)

    safe_window_ms = remaining_ms - config.estimated_cycle_exec_ms * remaining_cycles
    if safe_window_ms <= 0:
        logger.warning(
            "scheduler_window_tight",
            extra={
                "extra": {
                    "remaining_ms": remaining_ms,
                    "remaining_cycles": remaining_cycles,
                    "estimated_cycle_exec_ms": config.estimated_cycle_exec_ms,
                }
            },
        )
        return _zero("no_slack", remaining_cycles)

    max_delay_ms = (safe_window_ms / remaining_cycles) * config.safety_factor
    if max_delay_ms < config.min_delay_ms:
        return DelayPlan(
            delay_ms=0,
            remaining_legs=remaining_legs,
            remaining_cycles=remaining_cycles,
            remaining_ms=remaining_ms,
            max_delay_ms=max_delay_ms,
            reason="below_min_delay",
        )

    delay_ms = math.floor(rng.uniform(config.min_delay_ms, max_delay_ms))
    return DelayPlan(
        delay_ms=max(0, min(delay_ms, math.floor(max_delay_ms))),
        remaining_legs=remaining_legs,
        remaining_cycles=remaining_cycles,
        remaining_ms=remaining_ms,
        max_delay_ms=max_delay_ms,
        reason="paced",
    )


def compute_delay_ms(config: DripConfig, state: DripState, *, now_ms: int, rng: random.Random) -> int:
    return plan_delay(config, state, now_ms=now_ms, rng=rng).delay_ms
