"""
Position snapshot differ.

Turns (last-seen holdings, current snapshots) into an ordered list of
replication events. Pure: no I/O, no state, output order follows the order
of the current snapshots.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import EventType, Outcome, PositionSnapshot, ReplicationEvent, SeenPosition

logger = logging.getLogger(__name__)

DEFAULT_INCREASE_THRESHOLD = Decimal("0.10")

# Used when both balances are equal and nonzero and there is no previous side
TIE_BREAK_DEFAULT = Outcome.YES


def dominant_outcome(
    snapshot: PositionSnapshot,
    previous_outcome: Optional[Outcome] = None,
) -> Tuple[Optional[Outcome], int]:
    """
    Pick the side the target is holding and its balance.

    Returns (None, 0) when both balances are zero. When both are nonzero the
    larger wins; an exact tie keeps the previous side, else TIE_BREAK_DEFAULT.
    """
    yes = snapshot.yes_balance
    no = snapshot.no_balance

    if yes <= 0 and no <= 0:
        return None, 0
    if yes > 0 and no <= 0:
        return Outcome.YES, yes
    if no > 0 and yes <= 0:
        return Outcome.NO, no
    if yes > no:
        return Outcome.YES, yes
    if no > yes:
        return Outcome.NO, no

    chosen = previous_outcome if previous_outcome is not None else TIE_BREAK_DEFAULT
    logger.warning(
        f"[{snapshot.market_id}] Ambiguous holdings: YES and NO both {yes}, "
        f"resolving to {chosen.label}"
    )
    return chosen, yes


def target_investment(snapshot: PositionSnapshot, outcome: Outcome) -> Decimal:
    """Target's estimated cost basis for a side, 0 when the feed has none."""
    cost = snapshot.cost_of(outcome)
    if cost is None or cost < 0:
        return Decimal("0")
    return Decimal(cost)


def _increase_ratio(last: int, current: int) -> Optional[Decimal]:
    if last <= 0:
        return None
    return Decimal(current - last) / Decimal(last)


def diff(
    previous: Optional[Mapping[str, SeenPosition]],
    current: Iterable[PositionSnapshot],
    increase_threshold: Decimal = DEFAULT_INCREASE_THRESHOLD,
) -> List[ReplicationEvent]:
    """
    Compute replication events between two poll cycles.

    Args:
        previous: market_id -> last seen holding, or None on the first pass.
        current: Snapshots from this poll cycle, one per market.
        increase_threshold: Relative balance growth that counts as INCREASED.

    Returns:
        Events in the order of `current`. At most one event per market.
    """
    previous = previous or {}
    events: List[ReplicationEvent] = []

    for snap in current:
        last = previous.get(snap.market_id)

        if snap.resolved:
            if last is not None:
                events.append(ReplicationEvent(
                    type=EventType.CLOSED,
                    market_id=snap.market_id,
                    previous_outcome=last.outcome,
                    winning_outcome=snap.winning_outcome,
                    snapshot=snap,
                ))
            continue

        outcome, balance = dominant_outcome(snap, last.outcome if last else None)

        if outcome is None:
            if last is not None:
                events.append(ReplicationEvent(
                    type=EventType.CLOSED,
                    market_id=snap.market_id,
                    previous_outcome=last.outcome,
                    snapshot=snap,
                ))
            continue

        if last is None:
            events.append(ReplicationEvent(
                type=EventType.OPENED,
                market_id=snap.market_id,
                new_outcome=outcome,
                target_investment=target_investment(snap, outcome),
                balance=balance,
                snapshot=snap,
            ))
        elif last.outcome is not outcome:
            events.append(ReplicationEvent(
                type=EventType.SWITCHED,
                market_id=snap.market_id,
                previous_outcome=last.outcome,
                new_outcome=outcome,
                target_investment=target_investment(snap, outcome),
                balance=balance,
                snapshot=snap,
            ))
        else:
            ratio = _increase_ratio(last.balance, balance)
            if ratio is not None and ratio > increase_threshold:
                events.append(ReplicationEvent(
                    type=EventType.INCREASED,
                    market_id=snap.market_id,
                    previous_outcome=last.outcome,
                    new_outcome=outcome,
                    target_investment=target_investment(snap, outcome),
                    balance=balance,
                    increase_ratio=ratio,
                    snapshot=snap,
                ))

    return events


def next_seen(
    snapshot: PositionSnapshot,
    last: Optional[SeenPosition] = None,
) -> Optional[SeenPosition]:
    """What last-seen should hold for a market after this snapshot (None = forget it)."""
    if snapshot.resolved:
        return None
    outcome, balance = dominant_outcome(snapshot, last.outcome if last else None)
    if outcome is None:
        return None
    return SeenPosition(outcome=outcome, balance=balance)


def advance(
    previous: Optional[Mapping[str, SeenPosition]],
    current: Iterable[PositionSnapshot],
) -> Dict[str, SeenPosition]:
    """
    Next last-seen map after fully applying `current`.

    Markets absent from `current` keep their previous entry, matching the
    feed's habit of omitting markets rather than reporting zero balances.
    """
    result: Dict[str, SeenPosition] = dict(previous or {})
    for snap in current:
        seen = next_seen(snap, result.get(snap.market_id))
        if seen is None:
            result.pop(snap.market_id, None)
        else:
            result[snap.market_id] = seen
    return result
