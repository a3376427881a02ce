from __future__ import annotations

import json
from pathlib import Path

import pytest

from soldrip.domain.models import CycleState, DripState, RouteRef
from soldrip.domain.tokens import SOL_MINT
from soldrip.services.drip_errors import StateCorruptedError
from soldrip.services.state_store import StateStore, state_path_for


def test_state_path_is_per_wallet_and_sanitized(tmp_path: Path) -> None:
    assert state_path_for(tmp_path, "wallet_1") == tmp_path / "drip_state_wallet_1.json"
    assert state_path_for(tmp_path, "../evil") == tmp_path / "drip_state____evil.json"


def test_load_missing_file_returns_none(tmp_path: Path) -> None:
    assert StateStore(tmp_path / "missing.json").load() is None


def test_save_then_load_preserves_holding_state(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "nested" / "state.json")
    state = DripState.fresh(now_ms=10).after_buy(
        route=RouteRef(name="SOL-USDC", volatile_mint=SOL_MINT),
        amount_raw=5_000_000,
        tx_ref="sig-1",
        now_ms=20,
    )

    store.save(state)

    assert store.load() == state
    on_disk = json.loads(store.path.read_text(encoding="utf-8"))
    assert on_disk["cycleState"] == "BOUGHT"
    assert on_disk["lastBuyAmountRaw"] == "5000000"
    assert list(store.path.parent.glob("*.tmp")) == []


def test_unparseable_state_is_treated_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{truncated", encoding="utf-8")

    assert StateStore(path).load() is None


def test_version_mismatch_is_treated_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"version": 1, "completedLegs": 3, "startTime": 0}), encoding="utf-8")

    assert StateStore(path).load() is None


def test_invalid_current_version_state_is_corrupted(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    payload = DripState.fresh(now_ms=0).to_json_payload()
    payload["cycleState"] = CycleState.BOUGHT.value
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        StateStore(path).load()
