"""Tests for the position snapshot differ."""

import logging
from decimal import Decimal

from src.mirror.differ import (
    TIE_BREAK_DEFAULT,
    advance,
    diff,
    dominant_outcome,
    next_seen,
    target_investment,
)
from src.mirror.models import EventType, Outcome, SeenPosition


# ------------------------------------------------------------------
# dominant_outcome
# ------------------------------------------------------------------


class TestDominantOutcome:
    def test_only_yes(self, make_snapshot):
        assert dominant_outcome(make_snapshot(yes=5)) == (Outcome.YES, 5)

    def test_only_no(self, make_snapshot):
        assert dominant_outcome(make_snapshot(no=3)) == (Outcome.NO, 3)

    def test_empty(self, make_snapshot):
        assert dominant_outcome(make_snapshot()) == (None, 0)

    def test_larger_side_wins(self, make_snapshot):
        assert dominant_outcome(make_snapshot(yes=2, no=9)) == (Outcome.NO, 9)

    def test_tie_uses_default(self, make_snapshot, caplog):
        with caplog.at_level(logging.WARNING):
            outcome, balance = dominant_outcome(make_snapshot(yes=4, no=4))
        assert outcome is TIE_BREAK_DEFAULT
        assert balance == 4
        assert "Ambiguous holdings" in caplog.text

    def test_tie_keeps_previous_side(self, make_snapshot):
        outcome, _ = dominant_outcome(make_snapshot(yes=4, no=4), Outcome.NO)
        assert outcome is Outcome.NO


class TestTargetInvestment:
    def test_cost_of_side(self, make_snapshot):
        snap = make_snapshot(yes=5, yes_cost="12.5", no_cost="3")
        assert target_investment(snap, Outcome.YES) == Decimal("12.5")
        assert target_investment(snap, Outcome.NO) == Decimal("3")

    def test_missing_cost_is_zero(self, make_snapshot):
        assert target_investment(make_snapshot(yes=5), Outcome.YES) == Decimal("0")


# ------------------------------------------------------------------
# diff
# ------------------------------------------------------------------


class TestDiff:
    def test_new_market_opened(self, make_snapshot):
        events = diff({}, [make_snapshot("m1", yes=5, yes_cost=5)])

        assert len(events) == 1
        event = events[0]
        assert event.type is EventType.OPENED
        assert event.new_outcome is Outcome.YES
        assert event.target_investment == Decimal("5")
        assert event.balance == 5

    def test_none_previous_treated_as_empty(self, make_snapshot):
        events = diff(None, [make_snapshot("m1", no=1)])
        assert [e.type for e in events] == [EventType.OPENED]

    def test_zero_balances_closed(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 5)}
        events = diff(previous, [make_snapshot("m1")])

        assert events[0].type is EventType.CLOSED
        assert events[0].previous_outcome is Outcome.YES
        assert events[0].is_resolution is False

    def test_zero_balances_unknown_market_no_event(self, make_snapshot):
        assert diff({}, [make_snapshot("m1")]) == []

    def test_switched(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 5)}
        events = diff(previous, [make_snapshot("m1", no=8, no_cost=8)])

        assert events[0].type is EventType.SWITCHED
        assert events[0].previous_outcome is Outcome.YES
        assert events[0].new_outcome is Outcome.NO

    def test_increase_above_threshold(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 100)}
        events = diff(previous, [make_snapshot("m1", yes=111)])

        assert events[0].type is EventType.INCREASED
        assert events[0].increase_ratio == Decimal("0.11")

    def test_increase_at_threshold_is_ignored(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 100)}
        assert diff(previous, [make_snapshot("m1", yes=110)]) == []

    def test_decrease_is_ignored(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 100)}
        assert diff(previous, [make_snapshot("m1", yes=50)]) == []

    def test_custom_threshold(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 100)}
        events = diff(previous, [make_snapshot("m1", yes=105)], increase_threshold=Decimal("0.01"))
        assert [e.type for e in events] == [EventType.INCREASED]

    def test_resolved_known_market_closes_with_winner(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 5)}
        snap = make_snapshot("m1", yes=5, resolved=True, winning_outcome=Outcome.NO)
        events = diff(previous, [snap])

        assert events[0].type is EventType.CLOSED
        assert events[0].winning_outcome is Outcome.NO
        assert events[0].is_resolution is True

    def test_resolved_unknown_market_no_event(self, make_snapshot):
        snap = make_snapshot("m1", yes=5, resolved=True, winning_outcome=Outcome.YES)
        assert diff({}, [snap]) == []

    def test_absent_market_no_event(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 5)}
        assert diff(previous, [make_snapshot("m2")]) == []

    def test_order_follows_current(self, make_snapshot):
        snaps = [make_snapshot(m, yes=1) for m in ("c", "a", "b")]
        assert [e.market_id for e in diff({}, snaps)] == ["c", "a", "b"]

    def test_previous_not_mutated(self, make_snapshot):
        previous = {"m1": SeenPosition(Outcome.YES, 5)}
        diff(previous, [make_snapshot("m1"), make_snapshot("m2", yes=1)])
        assert previous == {"m1": SeenPosition(Outcome.YES, 5)}


# ------------------------------------------------------------------
# next_seen / advance
# ------------------------------------------------------------------


class TestAdvance:
    def test_next_seen_for_holding(self, make_snapshot):
        assert next_seen(make_snapshot(no=4)) == SeenPosition(Outcome.NO, 4)

    def test_next_seen_forgets_empty_and_resolved(self, make_snapshot):
        assert next_seen(make_snapshot()) is None
        assert next_seen(make_snapshot(yes=3, resolved=True)) is None

    def test_advance_applies_all(self, make_snapshot):
        previous = {
            "keep": SeenPosition(Outcome.YES, 1),
            "closed": SeenPosition(Outcome.NO, 2),
        }
        result = advance(previous, [make_snapshot("closed"), make_snapshot("new", yes=7)])

        assert result == {
            "keep": SeenPosition(Outcome.YES, 1),
            "new": SeenPosition(Outcome.YES, 7),
        }

    def test_advance_then_diff_is_empty(self, make_snapshot):
        snaps = [make_snapshot("a", yes=3), make_snapshot("b", no=2)]
        assert diff(advance({}, snaps), snaps) == []
