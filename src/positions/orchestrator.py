"""
Replication orchestrator - turns target position changes into local trades.

One instance owns the reconciliation state (last-seen target holdings, our
open positions, unconfirmed transactions). Each pass diffs the latest
snapshots against last-seen, runs the resulting legs through the connector
(approve -> estimate -> submit -> confirm), records them in the ledger and
only then advances last-seen for the markets whose legs finished.

Legs of one market never overlap. A failure in one market never stops the
others; the market is simply re-evaluated on the next poll.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from src.execution.connector import (
    Asset,
    ConfirmationResult,
    ExchangeConnector,
    OpKind,
    SubmitResult,
    TradeOp,
    padded_effort,
)
from src.execution.retry import RetryPolicy
from src.ledger import trade_ledger
from src.ledger.trade_ledger import TradeLedger
from src.mirror.config import MirrorConfig
from src.mirror.differ import advance, diff, next_seen
from src.mirror.errors import (
    ApprovalFailure,
    ConfirmationTimeout,
    ConnectorError,
    FeeCeilingExceeded,
    FeedUnavailable,
    InsufficientBalance,
    MirrorError,
    SlippageExceeded,
)
from src.mirror.models import (
    EventType,
    LocalPosition,
    Outcome,
    PositionSnapshot,
    ReplicationEvent,
    SeenPosition,
)
from src.mirror.sizer import format_units, size, to_units
from src.positions.state_store import ReconciliationState, StateStore, UnconfirmedLeg
from src.reporting import events as ev
from src.reporting.events import EventSink, LoggingEventSink

logger = logging.getLogger(__name__)

IncreaseHandler = Callable[[ReplicationEvent], Union[None, Awaitable[None]]]


class MarketState(Enum):
    NONE = "NONE"
    PENDING_OPEN = "PENDING_OPEN"
    OPEN = "OPEN"
    PENDING_CLOSE = "PENDING_CLOSE"


class LegStatus(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


@dataclass
class LegResult:
    kind: str  # open / close / redeem / recheck / increase
    market_id: str
    status: LegStatus
    reason: Optional[str] = None
    trade_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in (LegStatus.COMPLETED, LegStatus.SKIPPED)


@dataclass
class PassReport:
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    cold_start: bool = False
    feed_ok: bool = True
    snapshots: int = 0
    events: List[ReplicationEvent] = field(default_factory=list)
    legs: List[LegResult] = field(default_factory=list)
    trades_submitted: int = 0

    def legs_with(self, status: LegStatus) -> List[LegResult]:
        return [leg for leg in self.legs if leg.status is status]

    @property
    def completed(self) -> List[LegResult]:
        return self.legs_with(LegStatus.COMPLETED)

    @property
    def deferred(self) -> List[LegResult]:
        return self.legs_with(LegStatus.DEFERRED)

    @property
    def failed(self) -> List[LegResult]:
        return self.legs_with(LegStatus.FAILED)

    def __repr__(self):
        return (
            f"<PassReport snapshots={self.snapshots} events={len(self.events)} "
            f"submitted={self.trades_submitted} cold_start={self.cold_start}>"
        )


def apply_bps_floor(amount: int, bps: int) -> int:
    """amount minus `bps` basis points of itself, in integer units."""
    return amount - amount * bps // 10_000


class ReplicationOrchestrator:
    """Drives replication passes against one exchange connector."""

    def __init__(
        self,
        connector: ExchangeConnector,
        ledger: TradeLedger,
        config: Optional[MirrorConfig] = None,
        state_store: Optional[StateStore] = None,
        sink: Optional[EventSink] = None,
        retry: Optional[RetryPolicy] = None,
        increase_handler: Optional[IncreaseHandler] = None,
        replicate_initial: bool = False,
    ):
        """
        Args:
            connector: Exchange connector used for every read and trade.
            ledger: Trade ledger receiving BUY/SELL entries.
            config: Sizing and execution settings. Validated here.
            state_store: Persistence for reconciliation state (in-memory if None).
            sink: Observability sink (defaults to logging).
            retry: Policy for connector reads.
            increase_handler: Called for INCREASED events. Default only logs.
            replicate_initial: Trade the first pass instead of only capturing it.
        """
        self._config = config or MirrorConfig()
        self._config.validate()

        self._connector = connector
        self._ledger = ledger
        self._store = state_store or StateStore()
        self._sink = sink or LoggingEventSink()
        self._retry = retry or RetryPolicy(
            attempts=self._config.read_retry_attempts,
            backoff=self._config.read_retry_backoff_s,
        )
        self._increase_handler = increase_handler
        self._replicate_initial = replicate_initial

        self._state = self._store.load()
        self._pending: Dict[str, MarketState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)

        self._submissions = 0
        self._passes = 0
        self._running = False
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ReconciliationState:
        return self._state

    @property
    def ledger(self) -> TradeLedger:
        return self._ledger

    @property
    def passes(self) -> int:
        return self._passes

    def market_state(self, market_id: str) -> MarketState:
        if market_id in self._pending:
            return self._pending[market_id]
        if market_id in self._state.positions:
            return MarketState.OPEN
        return MarketState.NONE

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def reconcile(self, snapshots: Iterable[PositionSnapshot]) -> PassReport:
        """Run one reconciliation pass over the given snapshots."""
        current: Dict[str, PositionSnapshot] = {}
        for snap in snapshots:
            if snap.market_id in current:
                logger.warning(f"Duplicate snapshot for {snap.market_id}, keeping the latest")
            current[snap.market_id] = snap

        self._passes += 1
        submissions_before = self._submissions
        cold_start = not self._state.initial_sync_complete and not self._replicate_initial
        report = PassReport(cold_start=cold_start, snapshots=len(current))
        self._sink.emit(ev.PASS_STARTED, snapshots=len(current), cold_start=cold_start)

        events = diff(
            self._state.last_seen,
            current.values(),
            increase_threshold=self._config.increase_threshold,
        )
        report.events = events

        if cold_start:
            self._state.last_seen = advance(self._state.last_seen, current.values())
            self._state.initial_sync_complete = True
            self._save_state()
            self._sink.emit(
                ev.COLD_START,
                markets=len(self._state.last_seen),
                events_captured=len(events),
            )
            logger.info(
                f"Initial sync: captured {len(self._state.last_seen)} target positions, "
                f"not replicating existing holdings"
            )
            self._sink.emit(ev.PASS_COMPLETED, events=len(events), submitted=0)
            return report

        by_market = {e.market_id: e for e in events}
        for event in events:
            self._sink.emit(
                ev.EVENT_DETECTED,
                market_id=event.market_id,
                type=event.type.value,
                previous=event.previous_outcome.label if event.previous_outcome is not None else None,
                new=event.new_outcome.label if event.new_outcome is not None else None,
            )

        market_ids = list(current)
        market_ids += [m for m in self._state.unconfirmed if m not in current]

        results = await asyncio.gather(*(
            self._process_market(m, by_market.get(m), current.get(m))
            for m in market_ids
        ))
        for legs in results:
            report.legs.extend(legs)

        if not self._state.initial_sync_complete:
            self._state.initial_sync_complete = True
        self._save_state()

        report.trades_submitted = self._submissions - submissions_before
        self._sink.emit(
            ev.PASS_COMPLETED,
            events=len(events),
            submitted=report.trades_submitted,
            deferred=len(report.deferred),
            failed=len(report.failed),
        )
        return report

    async def run_pass(self, feed, address: str) -> PassReport:
        """Fetch the target's positions and reconcile. A feed outage is an empty pass."""
        try:
            snapshots = await feed.fetch_positions(address)
        except FeedUnavailable as e:
            logger.warning(f"Position feed unavailable: {e} - skipping cycle")
            self._sink.emit(ev.FEED_UNAVAILABLE, reason=str(e))
            return PassReport(feed_ok=False)
        return await self.reconcile(snapshots)

    async def run(
        self,
        feed,
        address: str,
        interval: float,
        on_pass: Optional[Callable[[PassReport], None]] = None,
    ):
        """Poll on a fixed interval until request_stop() is called."""
        self._running = True
        self._stop_event.clear()
        loop = asyncio.get_running_loop()

        while self._running:
            started = loop.time()
            try:
                report = await self.run_pass(feed, address)
                if on_pass is not None:
                    on_pass(report)
            except Exception as e:
                logger.error(f"Error in reconciliation pass: {e}", exc_info=True)

            if not self._running:
                break
            remaining = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

        logger.info("Reconciliation loop stopped")

    def request_stop(self):
        """Stop starting new passes. The in-flight pass runs to completion."""
        self._running = False
        self._stop_event.set()

    def shutdown(self):
        """Flush state and ledger."""
        self._save_state()
        self._ledger.save()
        logger.info(
            f"Orchestrator shutdown: {len(self._state.positions)} open positions, "
            f"{len(self._state.unconfirmed)} unconfirmed"
        )

    # ------------------------------------------------------------------
    # Per-market processing
    # ------------------------------------------------------------------

    def _lock_for(self, market_id: str) -> asyncio.Lock:
        lock = self._locks.get(market_id)
        if lock is None:
            lock = self._locks[market_id] = asyncio.Lock()
        return lock

    async def _process_market(
        self,
        market_id: str,
        event: Optional[ReplicationEvent],
        snapshot: Optional[PositionSnapshot],
    ) -> List[LegResult]:
        async with self._semaphore:
            async with self._lock_for(market_id):
                legs: List[LegResult] = []

                leg = self._state.unconfirmed.get(market_id)
                if leg is not None:
                    result = await self._guard("recheck", market_id, self._recheck_unconfirmed(leg))
                    legs.append(result)
                    if not result.terminal:
                        self._save_state()
                        return legs
                    position = self._state.positions.get(market_id)
                    if position is not None and snapshot is not None and result.trade_id is not None:
                        # last-seen never caught up with the parked buy
                        event = self._event_for_position(position, snapshot)

                if event is not None:
                    legs.extend(await self._apply_event(event))

                if snapshot is not None and all(r.terminal for r in legs):
                    self._advance_market(snapshot)
                self._save_state()
                return legs

    def _advance_market(self, snapshot: PositionSnapshot):
        seen = next_seen(snapshot, self._state.last_seen.get(snapshot.market_id))
        if seen is None:
            self._state.last_seen.pop(snapshot.market_id, None)
        else:
            self._state.last_seen[snapshot.market_id] = seen

    def _event_for_position(
        self,
        position: LocalPosition,
        snapshot: PositionSnapshot,
    ) -> Optional[ReplicationEvent]:
        """Diff the snapshot against what we hold rather than what we last saw."""
        held = {position.market_id: SeenPosition(position.outcome, snapshot.balance_of(position.outcome))}
        events = diff(held, [snapshot], increase_threshold=self._config.increase_threshold)
        return events[0] if events else None

    async def _apply_event(self, event: ReplicationEvent) -> List[LegResult]:
        market_id = event.market_id
        snapshot = event.snapshot
        position = self._state.positions.get(market_id)

        if event.type is EventType.INCREASED:
            return [await self._guard("increase", market_id, self._on_increase(event))]

        if event.type is EventType.CLOSED:
            if position is None:
                return [self._skip("close", market_id, "no local position")]
            if event.is_resolution:
                return [await self._guard("redeem", market_id, self._resolution_leg(position, event))]
            if snapshot is not None and snapshot.resolved:
                return [self._defer("close", market_id, "market resolved without a winning outcome yet")]
            if position.outcome is not event.previous_outcome:
                return [self._skip(
                    "close", market_id,
                    f"local {position.outcome.label} does not match target {event.previous_outcome.label}",
                )]
            return [await self._guard(
                "close", market_id, self._close_leg(position, trade_ledger.TARGET_CLOSED),
            )]

        # OPENED / SWITCHED: end up holding event.new_outcome
        legs: List[LegResult] = []
        if position is not None:
            if position.outcome is event.new_outcome:
                return [self._skip("open", market_id, f"already holding {position.outcome.label}")]
            close = await self._guard(
                "close", market_id, self._close_leg(position, trade_ledger.TARGET_SWITCHED),
            )
            legs.append(close)
            if not close.terminal:
                return legs
        elif event.type is EventType.SWITCHED:
            legs.append(self._skip("close", market_id, "no local position"))

        legs.append(await self._guard("open", market_id, self._open_leg(event)))
        return legs

    async def _guard(self, kind: str, market_id: str, leg: Awaitable[LegResult]) -> LegResult:
        """Run one leg, mapping failures to a LegResult so they stay in this market."""
        try:
            result = await leg
        except (InsufficientBalance, ApprovalFailure) as e:
            result = LegResult(kind, market_id, LegStatus.DEFERRED, reason=f"{type(e).__name__}: {e}")
        except (SlippageExceeded, FeeCeilingExceeded) as e:
            result = LegResult(kind, market_id, LegStatus.FAILED, reason=f"{type(e).__name__}: {e}")
        except ConnectorError as e:
            status = LegStatus.DEFERRED if e.transient else LegStatus.FAILED
            result = LegResult(kind, market_id, status, reason=f"ConnectorError: {e}")
        except MirrorError as e:
            result = LegResult(kind, market_id, LegStatus.FAILED, reason=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"[{market_id}] Unexpected error in {kind} leg: {e}", exc_info=True)
            result = LegResult(kind, market_id, LegStatus.FAILED, reason=f"{type(e).__name__}: {e}")
        finally:
            self._pending.pop(market_id, None)

        self._emit_leg(result)
        return result

    def _skip(self, kind: str, market_id: str, reason: str) -> LegResult:
        result = LegResult(kind, market_id, LegStatus.SKIPPED, reason=reason)
        self._emit_leg(result)
        return result

    def _defer(self, kind: str, market_id: str, reason: str) -> LegResult:
        result = LegResult(kind, market_id, LegStatus.DEFERRED, reason=reason)
        self._emit_leg(result)
        return result

    def _emit_leg(self, result: LegResult):
        kind = {
            LegStatus.COMPLETED: ev.TRADE_CONFIRMED,
            LegStatus.SKIPPED: ev.LEG_SKIPPED,
            LegStatus.DEFERRED: ev.LEG_DEFERRED,
            LegStatus.FAILED: ev.LEG_FAILED,
            LegStatus.UNCONFIRMED: ev.LEG_UNCONFIRMED,
        }[result.status]
        self._sink.emit(
            kind,
            market_id=result.market_id,
            leg=result.kind,
            reason=result.reason,
            trade_id=result.trade_id,
        )

    # ------------------------------------------------------------------
    # Legs
    # ------------------------------------------------------------------

    async def _on_increase(self, event: ReplicationEvent) -> LegResult:
        logger.info(
            f"[{event.market_id}] Target increased {event.new_outcome.label} position "
            f"by {float(event.increase_ratio) * 100:.1f}% (not replicated)"
        )
        self._sink.emit(
            ev.INCREASE_DETECTED,
            market_id=event.market_id,
            outcome=event.new_outcome.label,
            ratio=str(event.increase_ratio),
        )
        if self._increase_handler is not None:
            outcome = self._increase_handler(event)
            if inspect.isawaitable(outcome):
                await outcome
        return LegResult("increase", event.market_id, LegStatus.SKIPPED, reason="informational")

    async def _open_leg(self, event: ReplicationEvent) -> LegResult:
        market_id = event.market_id
        outcome = event.new_outcome
        snapshot = event.snapshot
        ref = snapshot.ref if snapshot is not None else None

        if ref is None or not ref.tradable:
            return LegResult("open", market_id, LegStatus.SKIPPED, reason="market has no tradable contract")

        amount = size(
            event.target_investment,
            self._config.bet_multiplier,
            self._config.min_bet_usdc,
            self._config.max_bet_usdc,
        )
        units = to_units(amount, ref.collateral_decimals) if amount > 0 else 0
        if units <= 0:
            return LegResult("open", market_id, LegStatus.SKIPPED, reason=f"trade size {amount} <= 0")

        self._pending[market_id] = MarketState.PENDING_OPEN

        # An earlier submit may have landed even though it reported an error
        held = await self._read(self._connector.get_balance, ref, Asset.POSITION, outcome)
        if held > 0:
            return self._adopt_holding(event, units, held)

        logger.info(
            f"[{market_id}] OPEN {outcome.label} for {format_units(units, ref.collateral_decimals)} "
            f"(target invested {event.target_investment})"
        )

        balance = await self._read(self._connector.get_balance, ref, Asset.COLLATERAL)
        if balance < units:
            raise InsufficientBalance(
                f"need {units} collateral units, have {balance}", market_id,
            )

        await self._ensure_allowance(market_id, ref, Asset.COLLATERAL, units)

        op = TradeOp(OpKind.BUY, ref, outcome, amount=units, market_id=market_id)
        expected = await self._read(self._connector.estimate_output, op)
        if expected <= 0:
            raise SlippageExceeded(f"no tokens expected for {units} units", market_id)
        min_tokens = apply_bps_floor(expected, self._config.slippage_bps)
        fee_ceiling = await self._fee_ceiling(op)

        submitted = await self._submit(op, min_tokens, fee_ceiling)
        confirmation = await self._confirm(
            submitted, op, related_buy_id=None, title=snapshot.title, reason=None,
        )
        if confirmation is None:
            return LegResult("open", market_id, LegStatus.UNCONFIRMED, reason=f"tx {submitted.handle} unconfirmed")
        if not confirmation.success:
            return LegResult("open", market_id, LegStatus.FAILED, reason=f"tx {submitted.handle} reverted")

        trade_id = self._finalize_open(
            market_id=market_id,
            outcome=outcome,
            invested=submitted.cost or units,
            tokens=confirmation.output_amount,
            ref=ref,
            title=snapshot.title,
            handle=submitted.handle,
            fee_paid=confirmation.fee_paid,
            expected_tokens=expected,
            min_tokens=min_tokens,
            target_action=event.type.value,
        )
        return LegResult("open", market_id, LegStatus.COMPLETED, trade_id=trade_id)

    async def _close_leg(self, position: LocalPosition, reason: str) -> LegResult:
        market_id = position.market_id
        ref = position.ref
        self._pending[market_id] = MarketState.PENDING_CLOSE

        tokens = await self._read(self._connector.get_balance, ref, Asset.POSITION, position.outcome)
        if tokens <= 0:
            return self._reconcile_away(position, "no position tokens left on chain")

        await self._ensure_allowance(market_id, ref, Asset.POSITION, 1)

        estimate_op = TradeOp(OpKind.SELL, ref, position.outcome, token_amount=tokens, market_id=market_id)
        estimate = await self._read(self._connector.estimate_output, estimate_op)
        min_return = apply_bps_floor(estimate, self._config.sell_haircut_bps)
        if min_return <= 0:
            raise SlippageExceeded(f"estimated return {estimate} too small to sell", market_id)

        logger.info(
            f"[{market_id}] CLOSE {position.outcome.label} ({reason}): {tokens} tokens, "
            f"min return {format_units(min_return, ref.collateral_decimals)}"
        )
        op = TradeOp(
            OpKind.SELL, ref, position.outcome,
            amount=min_return, token_amount=tokens, market_id=market_id,
        )
        fee_ceiling = await self._fee_ceiling(op)

        submitted = await self._submit(op, min_return, fee_ceiling)
        confirmation = await self._confirm(
            submitted, op, related_buy_id=position.trade_id, title=position.title, reason=reason,
        )
        if confirmation is None:
            return LegResult("close", market_id, LegStatus.UNCONFIRMED, reason=f"tx {submitted.handle} unconfirmed")
        if not confirmation.success:
            return LegResult("close", market_id, LegStatus.FAILED, reason=f"tx {submitted.handle} reverted")

        trade_id = self._finalize_close(
            position,
            returned=confirmation.output_amount or min_return,
            tokens=tokens,
            handle=submitted.handle,
            fee_paid=confirmation.fee_paid,
            reason=reason,
        )
        return LegResult("close", market_id, LegStatus.COMPLETED, trade_id=trade_id)

    async def _resolution_leg(self, position: LocalPosition, event: ReplicationEvent) -> LegResult:
        market_id = position.market_id
        winner = event.winning_outcome

        if winner is not position.outcome:
            logger.info(f"[{market_id}] Resolved {winner.label}: our {position.outcome.label} lost")
            trade_id = self._ledger.record_sell(
                market_id=market_id,
                outcome=position.outcome,
                return_amount=0,
                tokens_sold=position.token_amount,
                related_buy_id=position.trade_id,
                exit_price=0.0,
                reason=trade_ledger.MARKET_RESOLVED,
                target_action="MARKET_RESOLVED",
            )
            del self._state.positions[market_id]
            return LegResult("redeem", market_id, LegStatus.COMPLETED, reason="lost", trade_id=trade_id)

        ref = position.ref
        self._pending[market_id] = MarketState.PENDING_CLOSE
        tokens = await self._read(self._connector.get_balance, ref, Asset.POSITION, position.outcome)
        if tokens <= 0:
            return self._reconcile_away(position, "winning tokens already redeemed")

        op = TradeOp(OpKind.REDEEM, ref, position.outcome, token_amount=tokens, market_id=market_id)
        expected = await self._read(self._connector.estimate_output, op)
        fee_ceiling = await self._fee_ceiling(op)
        logger.info(f"[{market_id}] Resolved {winner.label}: redeeming {tokens} winning tokens")

        submitted = await self._submit(op, expected, fee_ceiling)
        confirmation = await self._confirm(
            submitted, op, related_buy_id=position.trade_id, title=position.title,
            reason=trade_ledger.MARKET_RESOLVED,
        )
        if confirmation is None:
            return LegResult("redeem", market_id, LegStatus.UNCONFIRMED, reason=f"tx {submitted.handle} unconfirmed")
        if not confirmation.success:
            return LegResult("redeem", market_id, LegStatus.FAILED, reason=f"tx {submitted.handle} reverted")

        trade_id = self._finalize_close(
            position,
            returned=confirmation.output_amount or expected,
            tokens=tokens,
            handle=submitted.handle,
            fee_paid=confirmation.fee_paid,
            reason=trade_ledger.MARKET_RESOLVED,
        )
        return LegResult("redeem", market_id, LegStatus.COMPLETED, reason="won", trade_id=trade_id)

    async def _recheck_unconfirmed(self, leg: UnconfirmedLeg) -> LegResult:
        market_id = leg.market_id
        logger.info(f"[{market_id}] Re-checking unconfirmed {leg.kind} {leg.handle}")
        try:
            confirmation = await self._connector.await_confirmation(leg.handle, self._config.confirmations)
        except ConfirmationTimeout:
            return LegResult("recheck", market_id, LegStatus.UNCONFIRMED, reason=f"tx {leg.handle} still unconfirmed")

        del self._state.unconfirmed[market_id]
        if not confirmation.success:
            logger.warning(f"[{market_id}] Unconfirmed {leg.kind} {leg.handle} reverted, discarding")
            return LegResult("recheck", market_id, LegStatus.COMPLETED, reason="reverted")

        if leg.kind == OpKind.BUY.value:
            trade_id = self._finalize_open(
                market_id=market_id,
                outcome=leg.outcome,
                invested=leg.amount,
                tokens=confirmation.output_amount,
                ref=leg.ref,
                title=leg.title,
                handle=leg.handle,
                fee_paid=confirmation.fee_paid,
                target_action="RECONCILED",
            )
        else:
            position = self._state.positions.get(market_id)
            if position is None:
                logger.warning(f"[{market_id}] Confirmed {leg.kind} has no local position, recording as-is")
                position = LocalPosition(
                    market_id=market_id,
                    outcome=leg.outcome,
                    invested_amount=0,
                    ref=leg.ref,
                    token_amount=leg.token_amount,
                    trade_id=leg.related_buy_id,
                    title=leg.title,
                )
            trade_id = self._finalize_close(
                position,
                returned=confirmation.output_amount or leg.amount,
                tokens=leg.token_amount,
                handle=leg.handle,
                fee_paid=confirmation.fee_paid,
                reason=leg.reason or trade_ledger.TARGET_CLOSED,
            )
        return LegResult("recheck", market_id, LegStatus.COMPLETED, reason="confirmed", trade_id=trade_id)

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    async def _read(self, fn, *args):
        return await self._retry.call(fn, *args)

    async def _ensure_allowance(self, market_id: str, ref, asset: Asset, amount: int):
        current = await self._read(self._connector.get_allowance, ref, asset)
        if current >= amount:
            return

        logger.info(f"[{market_id}] Approving {asset.value} for market {ref.market_address}")
        try:
            approved = await self._connector.approve(ref, asset, amount)
        except MirrorError as e:
            raise ApprovalFailure(f"{asset.value} approval failed: {e}", market_id)
        if not approved:
            raise ApprovalFailure(f"{asset.value} approval was not confirmed", market_id)

        current = await self._read(self._connector.get_allowance, ref, asset)
        if current < amount:
            raise ApprovalFailure(
                f"{asset.value} allowance {current} still below {amount} after approval", market_id,
            )

    async def _fee_ceiling(self, op: TradeOp) -> int:
        effort = await self._read(self._connector.estimate_effort, op)
        return self._config.max_fee_budget_wei // padded_effort(effort)

    async def _submit(self, op: TradeOp, min_output: int, fee_ceiling: int) -> SubmitResult:
        # Never retried: a second submit could spend twice
        submitted = await self._connector.submit(op, min_output, fee_ceiling)
        self._submissions += 1
        self._sink.emit(
            ev.TRADE_SUBMITTED,
            market_id=op.market_id,
            op_kind=op.kind.value,
            outcome=op.outcome.label,
            amount=op.amount,
            tokens=op.token_amount,
            handle=submitted.handle,
        )
        return submitted

    async def _confirm(
        self,
        submitted: SubmitResult,
        op: TradeOp,
        related_buy_id: Optional[str],
        title: Optional[str],
        reason: Optional[str],
    ) -> Optional[ConfirmationResult]:
        """Await confirmation. None means the outcome is unknown and the leg was parked."""
        try:
            return await self._connector.await_confirmation(submitted.handle, self._config.confirmations)
        except (ConfirmationTimeout, ConnectorError) as e:
            logger.warning(
                f"[{op.market_id}] {op.kind.value} {submitted.handle} not confirmed ({e}), "
                f"parking for review on next pass"
            )
            self._state.unconfirmed[op.market_id] = UnconfirmedLeg(
                market_id=op.market_id,
                kind=op.kind.value,
                outcome=op.outcome,
                handle=submitted.handle,
                ref=op.ref,
                amount=submitted.cost or op.amount,
                token_amount=op.token_amount,
                related_buy_id=related_buy_id,
                title=title,
                reason=reason,
            )
            return None

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _finalize_open(
        self,
        market_id: str,
        outcome: Outcome,
        invested: int,
        tokens: int,
        ref,
        title: Optional[str],
        handle: Optional[str],
        fee_paid: int,
        expected_tokens: Optional[int] = None,
        min_tokens: Optional[int] = None,
        target_action: str = "OPENED",
    ) -> str:
        stale = self._ledger.find_open_buy(market_id)
        if stale is not None:
            logger.warning(f"[{market_id}] Closing stale open BUY {stale.id} before recording new one")
            self._ledger.close_trade(stale.id, {"close_reason": trade_ledger.RECONCILED})

        trade_id = self._ledger.record_buy(
            market_id=market_id,
            outcome=outcome,
            investment_amount=invested,
            tokens_received=tokens,
            expected_tokens=expected_tokens,
            min_tokens=min_tokens,
            tx_hash=handle,
            fee_paid=fee_paid,
            market_title=title,
            market_address=ref.market_address,
            condition_id=ref.condition_id,
            collateral_token=ref.collateral_token,
            collateral_decimals=ref.collateral_decimals,
            target_action=target_action,
        )
        self._state.positions[market_id] = LocalPosition(
            market_id=market_id,
            outcome=outcome,
            invested_amount=invested,
            ref=ref,
            token_amount=tokens,
            trade_id=trade_id,
            title=title,
        )
        logger.info(
            f"[{market_id}] Opened {outcome.label}: {format_units(invested, ref.collateral_decimals)} "
            f"-> {tokens} tokens ({handle or 'adopted'})"
        )
        return trade_id

    def _finalize_close(
        self,
        position: LocalPosition,
        returned: int,
        tokens: int,
        handle: str,
        fee_paid: int,
        reason: str,
    ) -> str:
        ref = position.ref
        trade_id = self._ledger.record_sell(
            market_id=position.market_id,
            outcome=position.outcome,
            return_amount=returned,
            tokens_sold=tokens,
            related_buy_id=position.trade_id,
            tx_hash=handle,
            fee_paid=fee_paid,
            exit_price=round(returned / tokens, 6) if tokens else None,
            market_title=position.title,
            market_address=ref.market_address,
            condition_id=ref.condition_id,
            collateral_token=ref.collateral_token,
            collateral_decimals=ref.collateral_decimals,
            reason=reason,
        )
        self._state.positions.pop(position.market_id, None)
        pnl = returned - position.invested_amount
        logger.info(
            f"[{position.market_id}] Closed {position.outcome.label} ({reason}): "
            f"returned {format_units(returned, ref.collateral_decimals)}, "
            f"PnL {'+' if pnl >= 0 else '-'}{format_units(abs(pnl), ref.collateral_decimals)}"
        )
        return trade_id

    def _adopt_holding(self, event: ReplicationEvent, units: int, tokens: int) -> LegResult:
        """Record tokens we already hold as the position instead of buying again."""
        market_id = event.market_id
        snapshot = event.snapshot
        logger.warning(
            f"[{market_id}] Already holding {tokens} {event.new_outcome.label} tokens "
            f"with no local position, adopting instead of buying"
        )
        trade_id = self._finalize_open(
            market_id=market_id,
            outcome=event.new_outcome,
            invested=units,
            tokens=tokens,
            ref=snapshot.ref,
            title=snapshot.title,
            handle=None,
            fee_paid=0,
            target_action="RECONCILED",
        )
        self._sink.emit(ev.POSITION_RECONCILED, market_id=market_id, reason="adopted on-chain holding")
        return LegResult("open", market_id, LegStatus.COMPLETED, reason=trade_ledger.RECONCILED, trade_id=trade_id)

    def _reconcile_away(self, position: LocalPosition, why: str) -> LegResult:
        """Drop a local position whose tokens are gone. Its BUY closes with no PnL."""
        market_id = position.market_id
        logger.warning(f"[{market_id}] {why}, dropping local {position.outcome.label} position")
        if position.trade_id:
            self._ledger.close_trade(position.trade_id, {
                "close_reason": trade_ledger.RECONCILED,
                "realized_pnl": None,
            })
        self._state.positions.pop(market_id, None)
        self._sink.emit(ev.POSITION_RECONCILED, market_id=market_id, reason=why)
        return LegResult("close", market_id, LegStatus.COMPLETED, reason=trade_ledger.RECONCILED)

    def _save_state(self):
        self._store.save(self._state)
