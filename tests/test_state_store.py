"""Tests for reconciliation state persistence."""

import json

from src.mirror.models import ConnectorRef, LocalPosition, Outcome, SeenPosition
from src.positions.state_store import ReconciliationState, StateStore, UnconfirmedLeg

REF = ConnectorRef(
    market_address="0x" + "a" * 40,
    collateral_token="0x" + "c" * 40,
    collateral_decimals=6,
    condition_id="0x" + "ab" * 32,
)


def populated_state() -> ReconciliationState:
    return ReconciliationState(
        last_seen={"m1": SeenPosition(Outcome.YES, 5_000_000)},
        positions={"m1": LocalPosition(
            market_id="m1", outcome=Outcome.YES, invested_amount=10_000_000,
            ref=REF, token_amount=9_500_000, trade_id="trade_1_abcdefg", title="Will it rain?",
        )},
        unconfirmed={"m2": UnconfirmedLeg(
            market_id="m2", kind="SELL", outcome=Outcome.NO, handle="0xdead",
            ref=REF, amount=4_000_000, token_amount=5_000_000, related_buy_id="trade_2_hijklmn",
            reason="TARGET_CLOSED",
        )},
        initial_sync_complete=True,
    )


class TestStateStore:
    def test_round_trip(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        store.save(populated_state())

        loaded = store.load()

        assert loaded.initial_sync_complete is True
        assert loaded.last_seen == {"m1": SeenPosition(Outcome.YES, 5_000_000)}
        position = loaded.positions["m1"]
        assert position.outcome is Outcome.YES
        assert position.invested_amount == 10_000_000
        assert position.ref == REF
        assert position.trade_id == "trade_1_abcdefg"
        leg = loaded.unconfirmed["m2"]
        assert leg.kind == "SELL"
        assert leg.outcome is Outcome.NO
        assert leg.handle == "0xdead"
        assert leg.related_buy_id == "trade_2_hijklmn"

    def test_saved_layout(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(str(path)).save(populated_state())

        data = json.loads(path.read_text())
        assert data["version"] == "1.0"
        assert "saved_at" in data
        assert data["last_seen"]["m1"] == {"outcome": 1, "balance": 5_000_000}
        assert not (tmp_path / "state.json.tmp").exists()

    def test_missing_file_is_fresh(self, tmp_path):
        state = StateStore(str(tmp_path / "absent.json")).load()
        assert state.initial_sync_complete is False
        assert state.last_seen == {}

    def test_corrupt_file_is_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2")
        state = StateStore(str(path)).load()
        assert state.positions == {}

    def test_in_memory_store(self):
        store = StateStore()
        store.save(populated_state())
        assert store.load().initial_sync_complete is False

    def test_creates_directory(self, tmp_path):
        path = tmp_path / "data" / "state.json"
        StateStore(str(path)).save(ReconciliationState())
        assert path.exists()
