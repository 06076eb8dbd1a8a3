"""Tests for the replication data model."""

import pytest

from src.mirror.models import ConnectorRef, LocalPosition, Outcome, SeenPosition


class TestOutcome:
    @pytest.mark.parametrize("raw,expected", [
        (0, Outcome.NO),
        (1, Outcome.YES),
        ("yes", Outcome.YES),
        (" No ", Outcome.NO),
        ("1", Outcome.YES),
        (Outcome.NO, Outcome.NO),
        (None, None),
        ("maybe", None),
        (2, None),
    ])
    def test_parse(self, raw, expected):
        assert Outcome.parse(raw) is expected

    def test_opposite_and_label(self):
        assert Outcome.YES.opposite is Outcome.NO
        assert Outcome.NO.label == "NO"


class TestConnectorRef:
    def test_tradable_needs_market_and_collateral(self):
        assert ConnectorRef().tradable is False
        assert ConnectorRef(market_address="0xa").tradable is False
        assert ConnectorRef(market_address="0xa", collateral_token="0xc").tradable is True

    def test_from_empty_dict(self):
        assert ConnectorRef.from_dict(None) == ConnectorRef()


class TestSerialization:
    def test_local_position_round_trip(self):
        position = LocalPosition(
            market_id="m1", outcome=Outcome.NO, invested_amount=5,
            ref=ConnectorRef(market_address="0xa", collateral_token="0xc", collateral_decimals=18),
            token_amount=7, trade_id="t1", title="T",
        )
        assert LocalPosition.from_dict(position.to_dict()) == position

    def test_seen_position_round_trip(self):
        seen = SeenPosition(Outcome.YES, 42)
        assert SeenPosition.from_dict(seen.to_dict()) == seen
