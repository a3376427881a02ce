from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from soldrip.domain.models import CycleState, DripConfig, DripState, LegReport, epoch_ms
from soldrip.services.cycle_state_machine import CycleStateMachine
from soldrip.services.state_store import StateStore

logger = logging.getLogger(__name__)


class RecoveryAction(StrEnum):
    FRESH = "fresh"
    RESUMED = "resumed"
    RECOVERED = "recovered"


@dataclass(frozen=True)
class RecoveryResult:
    action: RecoveryAction
    machine: CycleStateMachine
    loaded_state: DripState | None
    recovery_report: LegReport | None = None


class RecoveryManager:
    """Reconciles persisted state before the first scheduled leg.

    A state left in BOUGHT means the process died holding the volatile asset; exactly one
    recovery sell runs, then a brand-new run starts. An INIT/SOLD state is resumed only when
    resume mode is on and the target has not been reached.
    """

    def __init__(
        self,
        *,
        config: DripConfig,
        store: StateStore,
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self.config = config
        self.store = store
        self.clock_ms = clock_ms

    async def prepare(
        self, machine_factory: Callable[[DripState], CycleStateMachine]
    ) -> RecoveryResult:
        loaded = self.store.load()
        logger.info(
            "startup_recovery_started",
            extra={
                "extra": {
                    "path": str(self.store.path),
                    "found": loaded is not None,
                    "cycle_state": loaded.cycle_state.value if loaded is not None else None,
                    "completed_legs": loaded.completed_legs if loaded is not None else None,
                }
            },
        )

        if loaded is not None and loaded.cycle_state is CycleState.BOUGHT:
            machine = machine_factory(loaded)
            logger.warning(
                "recovery_sell_started",
                extra={
                    "extra": {
                        "route": loaded.current_route.name if loaded.current_route else None,
                        "amount_raw": loaded.last_buy_amount_raw,
                        "last_buy_tx_ref": loaded.last_buy_tx_ref,
                    }
                },
            )
            step = await machine.execute_sell(recovery=True)
            machine.start_new_run(now_ms=self.clock_ms())
            return RecoveryResult(
                action=RecoveryAction.RECOVERED,
                machine=machine,
                loaded_state=loaded,
                recovery_report=step.report,
            )

        if (
            loaded is not None
            and self.config.resume
            and loaded.completed_legs < self.config.target_legs
        ):
            logger.info(
                "run_resumed",
                extra={
                    "extra": {
                        "completed_legs": loaded.completed_legs,
                        "target_legs": self.config.target_legs,
                        "start_time": loaded.start_time,
                    }
                },
            )
            return RecoveryResult(
                action=RecoveryAction.RESUMED, machine=machine_factory(loaded), loaded_state=loaded
            )

        now_ms = self.clock_ms()
        machine = machine_factory(loaded if loaded is not None else DripState.fresh(now_ms=now_ms))
        machine.start_new_run(now_ms=now_ms)
        logger.info("run_started", extra={"extra": {"target_legs": self.config.target_legs}})
        return RecoveryResult(action=RecoveryAction.FRESH, machine=machine, loaded_state=loaded)
