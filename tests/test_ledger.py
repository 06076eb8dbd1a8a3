"""Tests for the trade ledger: recording, linking, statistics and persistence."""

import json
import os
import re

import pytest

from src.ledger import trade_ledger
from src.ledger.trade_ledger import TradeLedger, compute_statistics, generate_trade_id
from src.mirror.models import Outcome

USDC = 10 ** 6


def buy(ledger, market_id="m1", outcome=Outcome.YES, amount=10 * USDC, **kwargs):
    return ledger.record_buy(market_id=market_id, outcome=outcome, investment_amount=amount, **kwargs)


# ------------------------------------------------------------------
# Ids
# ------------------------------------------------------------------


class TestTradeId:
    def test_format(self):
        assert re.fullmatch(r"trade_\d{13}_[0-9a-z]{7}", generate_trade_id())

    def test_unique(self):
        assert len({generate_trade_id() for _ in range(200)}) == 200


# ------------------------------------------------------------------
# Recording
# ------------------------------------------------------------------


class TestRecordBuy:
    def test_buy_is_open(self, ledger):
        trade_id = buy(ledger, tokens_received=9 * USDC, tx_hash="0xabc")
        entry = ledger.get_trade(trade_id)

        assert entry.type == trade_ledger.BUY
        assert entry.status == trade_ledger.OPEN
        assert entry.tokens_received == 9 * USDC
        assert ledger.get_open_positions() == [entry]

    def test_second_open_buy_for_market_rejected(self, ledger):
        buy(ledger)
        with pytest.raises(ValueError):
            buy(ledger, outcome=Outcome.NO)

    def test_other_market_allowed(self, ledger):
        buy(ledger, "m1")
        buy(ledger, "m2")
        assert len(ledger.get_open_positions()) == 2


class TestRecordSell:
    def test_sell_closes_linked_buy(self, ledger):
        buy_id = buy(ledger)
        sell_id = ledger.record_sell(
            "m1", Outcome.YES, return_amount=15 * USDC, related_buy_id=buy_id,
            tx_hash="0xsell", exit_price=0.75,
        )

        sell = ledger.get_trade(sell_id)
        closed = ledger.get_trade(buy_id)
        assert sell.status == trade_ledger.CLOSED
        assert sell.invested_amount == 10 * USDC
        assert sell.pnl_amount == 5 * USDC
        assert sell.pnl_percentage == 50.0
        assert closed.status == trade_ledger.CLOSED
        assert closed.realized_pnl == 5 * USDC
        assert closed.close_tx_hash == "0xsell"
        assert closed.exit_price == 0.75
        assert closed.closed_at == sell.timestamp

    def test_sell_matches_by_market_and_outcome(self, ledger):
        buy_id = buy(ledger, outcome=Outcome.NO)
        sell_id = ledger.record_sell("m1", Outcome.NO, return_amount=4 * USDC)

        assert ledger.get_trade(sell_id).related_buy_id == buy_id
        assert ledger.get_trade(sell_id).pnl_amount == -6 * USDC

    def test_sell_without_buy_is_orphaned(self, ledger):
        sell_id = ledger.record_sell("m1", Outcome.YES, return_amount=USDC)
        sell = ledger.get_trade(sell_id)

        assert sell.status == trade_ledger.ORPHANED
        assert sell.related_buy_id is None
        assert sell.pnl_amount is None

    def test_sell_wrong_outcome_is_orphaned(self, ledger):
        buy(ledger, outcome=Outcome.YES)
        sell_id = ledger.record_sell("m1", Outcome.NO, return_amount=USDC)
        assert ledger.get_trade(sell_id).status == trade_ledger.ORPHANED

    def test_buy_closes_exactly_once(self, ledger):
        buy_id = buy(ledger)
        ledger.record_sell("m1", Outcome.YES, return_amount=12 * USDC, related_buy_id=buy_id)
        second = ledger.record_sell("m1", Outcome.YES, return_amount=1, related_buy_id=buy_id)

        assert ledger.get_trade(second).status == trade_ledger.ORPHANED
        assert ledger.get_trade(buy_id).realized_pnl == 2 * USDC

    def test_new_buy_allowed_after_close(self, ledger):
        buy_id = buy(ledger)
        ledger.record_sell("m1", Outcome.YES, return_amount=USDC, related_buy_id=buy_id)
        buy(ledger, outcome=Outcome.NO)
        assert ledger.find_open_buy("m1").outcome is Outcome.NO


class TestCloseTrade:
    def test_close_open_buy(self, ledger):
        buy_id = buy(ledger)
        assert ledger.close_trade(buy_id, {"close_reason": trade_ledger.RECONCILED}) is True

        entry = ledger.get_trade(buy_id)
        assert entry.status == trade_ledger.CLOSED
        assert entry.close_reason == trade_ledger.RECONCILED
        assert entry.realized_pnl is None
        assert entry.closed_at is not None

    def test_close_unknown_or_closed(self, ledger):
        buy_id = buy(ledger)
        ledger.close_trade(buy_id)
        assert ledger.close_trade(buy_id) is False
        assert ledger.close_trade("trade_missing") is False


# ------------------------------------------------------------------
# Queries and statistics
# ------------------------------------------------------------------


class TestQueries:
    def test_recent_trades_newest_first(self, ledger):
        ids = [buy(ledger, f"m{i}") for i in range(5)]
        recent = ledger.get_recent_trades(3)
        assert [t.id for t in recent] == ids[::-1][:3]
        assert ledger.get_recent_trades(0) == []

    def test_trades_by_market(self, ledger):
        buy_id = buy(ledger, "m1")
        buy(ledger, "m2")
        ledger.record_sell("m1", Outcome.YES, return_amount=USDC, related_buy_id=buy_id)
        assert len(ledger.get_trades_by_market("m1")) == 2

    def test_closed_positions(self, ledger):
        buy_id = buy(ledger, "m1")
        buy(ledger, "m2")
        ledger.record_sell("m1", Outcome.YES, return_amount=USDC, related_buy_id=buy_id)
        assert [t.id for t in ledger.get_closed_positions()] == [buy_id]


class TestStatistics:
    def test_empty(self):
        stats = compute_statistics([])
        assert stats.total_trades == 0
        assert stats.win_rate == 0.0

    def test_totals_and_win_rate(self, ledger):
        win = buy(ledger, "win")
        loss = buy(ledger, "loss")
        buy(ledger, "open")
        ledger.record_sell("win", Outcome.YES, return_amount=15 * USDC, related_buy_id=win)
        ledger.record_sell("loss", Outcome.YES, return_amount=0, related_buy_id=loss)

        stats = ledger.get_statistics()
        assert stats.total_trades == 5
        assert stats.total_buys == 3
        assert stats.total_sells == 2
        assert stats.total_invested == 30 * USDC
        assert stats.total_returned == 15 * USDC
        assert stats.total_pnl == -15 * USDC
        assert stats.active_positions == 1
        assert stats.closed_positions == 2
        assert stats.win_rate == 0.5


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


class TestPersistence:
    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "trades.json")
        ledger = TradeLedger(path)
        buy_id = buy(ledger, market_title="Will it rain?")
        ledger.record_sell("m1", Outcome.YES, return_amount=11 * USDC, related_buy_id=buy_id)

        reloaded = TradeLedger(path)
        assert len(reloaded) == 2
        assert reloaded.get_trade(buy_id).status == trade_ledger.CLOSED
        assert reloaded.get_trade(buy_id).outcome is Outcome.YES
        assert reloaded.get_trade(buy_id).market_title == "Will it rain?"

    def test_file_layout(self, tmp_path):
        path = str(tmp_path / "trades.json")
        ledger = TradeLedger(path)
        buy(ledger)

        with open(path) as f:
            data = json.load(f)
        assert data["version"] == "1.0"
        assert data["trades"][0]["outcome"] == 1
        assert data["trades"][0]["outcome_label"] == "YES"
        assert data["stats"]["total_buys"] == 1
        assert not os.path.exists(path + ".tmp")

    def test_creates_missing_directory(self, tmp_path):
        path = str(tmp_path / "nested" / "dir" / "trades.json")
        buy(TradeLedger(path))
        assert os.path.exists(path)

    def test_corrupt_file_moved_aside(self, tmp_path):
        path = tmp_path / "trades.json"
        path.write_text("{not json")

        ledger = TradeLedger(str(path))

        assert len(ledger) == 0
        assert (tmp_path / "trades.json.corrupt").exists()
