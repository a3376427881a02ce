from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from soldrip.domain.models import STATE_VERSION, DripState
from soldrip.services.drip_errors import StateCorruptedError

logger = logging.getLogger(__name__)


def state_path_for(state_dir: Path | str, wallet_label: str) -> Path:
    safe_label = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in wallet_label) or "default"
    return Path(state_dir) / f"drip_state_{safe_label}.json"


class StateStore:
    """Single-writer JSON file holding one wallet's :class:`DripState`.

    ``save`` replaces the file atomically and fsyncs before returning, so a completed save is
    the commit point for the leg that produced it.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> DripState | None:
        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError:
            logger.warning("state_file_unreadable", extra={"extra": {"path": str(self.path)}})
            return None
        if not isinstance(payload, dict):
            logger.warning("state_file_unreadable", extra={"extra": {"path": str(self.path)}})
            return None

        version = payload.get("version")
        if version != STATE_VERSION:
            logger.warning(
                "state_version_mismatch",
                extra={"extra": {"path": str(self.path), "found": version, "expected": STATE_VERSION}},
            )
            return None

        try:
            return DripState.model_validate(payload)
        except ValidationError as exc:
            raise StateCorruptedError(f"persisted state at {self.path} is invalid: {exc}") from exc

    def save(self, state: DripState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(state.to_json_payload(), handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)
        logger.debug(
            "state_saved",
            extra={
                "extra": {
                    "completed_legs": state.completed_legs,
                    "cycle_state": state.cycle_state.value,
                }
            },
        )
