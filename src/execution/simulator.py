"""
Simulated exchange and back-test harness.

SimulatedExchange implements the connector interface over a virtual
collateral balance, so the orchestrator, differ, sizer and ledger run
unchanged and the ledger entries look exactly like live ones.

Pricing is deliberately simple: a buy yields `amount * (1 - slippage)`
tokens, an exit pays the target's mark value for our tokens (or 95% of
cost when unknown) minus the fee, a winning redemption pays the invested
amount minus the fee and a losing one pays nothing.
"""

import itertools
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from src.ledger.trade_ledger import TradeLedger
from src.mirror.config import MirrorConfig
from src.mirror.errors import (
    ConfirmationTimeout,
    FeeCeilingExceeded,
    InsufficientBalance,
    SlippageExceeded,
)
from src.mirror.models import ConnectorRef, Outcome, PositionSnapshot
from src.mirror.sizer import format_units, from_units, to_units
from src.positions.orchestrator import PassReport, ReplicationOrchestrator
from src.reporting.events import EventSink

from .connector import (
    Asset,
    ConfirmationResult,
    ExchangeConnector,
    OpKind,
    SubmitResult,
    TradeOp,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

SIM_EFFORT = 150_000
# 95% of cost when the feed has no mark value
FALLBACK_EXIT_BPS = 9_500
DECIMALS = 6


@dataclass
class _SimHolding:
    outcome: Outcome
    invested: int
    tokens: int
    market_id: Optional[str] = None


@dataclass
class _Pending:
    op: TradeOp
    output: int
    cost: int


class SimulatedExchange(ExchangeConnector):
    """Connector over a virtual balance. All amounts in collateral units."""

    def __init__(
        self,
        starting_balance: int,
        slippage_bps: int = 200,
        fee_bps: int = 100,
        network_fee_per_unit: int = 0,
    ):
        self.starting_balance = starting_balance
        self.balance = starting_balance
        self.slippage_bps = slippage_bps
        self.fee_bps = fee_bps
        self.network_fee_per_unit = network_fee_per_unit

        self._holdings: Dict[str, _SimHolding] = {}
        self._marks: Dict[Tuple[str, Outcome], Decimal] = {}
        self._winners: Dict[str, Outcome] = {}
        self._pending: Dict[str, _Pending] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def observe(self, snapshots: Iterable[PositionSnapshot]):
        """
        Feed the target's snapshots in before a pass. Mark values are stored
        per token (value / balance) so they scale to our own holding.
        """
        for snap in snapshots:
            if snap.resolved and snap.winning_outcome is not None:
                key = self._key(snap.ref)
                self._winners[key] = snap.winning_outcome
                holding = self._holdings.get(key)
                # Losing tokens are worthless, nothing to redeem
                if holding is not None and holding.outcome is not snap.winning_outcome:
                    del self._holdings[key]
            for outcome in Outcome:
                value = snap.value_of(outcome)
                balance = snap.balance_of(outcome)
                if value is not None and balance > 0:
                    per_token = value * (Decimal(10) ** snap.ref.collateral_decimals) / Decimal(balance)
                    self._marks[(self._key(snap.ref), outcome)] = per_token

    def holdings(self) -> Dict[str, Tuple[Outcome, int, int]]:
        return {h.market_id or key: (h.outcome, h.invested, h.tokens) for key, h in self._holdings.items()}

    # ------------------------------------------------------------------
    # Connector interface
    # ------------------------------------------------------------------

    async def get_allowance(self, ref: ConnectorRef, asset: Asset) -> int:
        return self.balance if asset is Asset.COLLATERAL else 1

    async def approve(self, ref: ConnectorRef, asset: Asset, amount: int) -> bool:
        return True

    async def get_balance(self, ref: ConnectorRef, asset: Asset,
                          outcome: Optional[Outcome] = None) -> int:
        if asset is Asset.COLLATERAL:
            return self.balance
        holding = self._holdings.get(self._key(ref))
        if holding is None or holding.outcome is not outcome:
            return 0
        return holding.tokens

    async def estimate_output(self, op: TradeOp) -> int:
        if op.kind is OpKind.BUY:
            return op.amount - op.amount * self.slippage_bps // 10_000
        return self._exit_value(op)

    async def estimate_effort(self, op: TradeOp) -> int:
        return SIM_EFFORT

    async def submit(self, op: TradeOp, min_acceptable_output: int,
                     fee_ceiling: int) -> SubmitResult:
        if self.network_fee_per_unit > fee_ceiling:
            raise FeeCeilingExceeded(
                f"network fee {self.network_fee_per_unit} > ceiling {fee_ceiling}", op.market_id,
            )

        handle = f"sim_{next(self._ids)}"
        market = self._key(op.ref)

        if op.kind is OpKind.BUY:
            if op.amount > self.balance:
                raise InsufficientBalance(f"simulated balance {self.balance} < {op.amount}", op.market_id)
            tokens = await self.estimate_output(op)
            if tokens < min_acceptable_output:
                raise SlippageExceeded(f"{tokens} tokens < min {min_acceptable_output}", op.market_id)
            self.balance -= op.amount
            self._holdings[market] = _SimHolding(op.outcome, op.amount, tokens, op.market_id)
            self._pending[handle] = _Pending(op, tokens, op.amount)
            return SubmitResult(handle=handle, cost=op.amount)

        holding = self._holdings.get(market)
        if holding is None or holding.outcome is not op.outcome:
            raise InsufficientBalance(f"no simulated {op.outcome.label} holding", op.market_id)

        if op.kind is OpKind.SELL:
            value = self._exit_value(op)
            if value < min_acceptable_output:
                raise SlippageExceeded(f"exit value {value} < min {min_acceptable_output}", op.market_id)
            payout = value
        else:
            payout = self._exit_value(op)

        self.balance += payout
        del self._holdings[market]
        self._pending[handle] = _Pending(op, payout, 0)
        return SubmitResult(handle=handle, cost=0)

    async def await_confirmation(self, handle: str, confirmations: int) -> ConfirmationResult:
        pending = self._pending.pop(handle, None)
        if pending is None:
            raise ConfirmationTimeout(f"unknown simulated handle {handle}", handle=handle)
        return ConfirmationResult(success=True, output_amount=pending.output, fee_paid=0)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    @staticmethod
    def _key(ref: ConnectorRef) -> str:
        return ref.market_address or ref.condition_id or ""

    def _exit_value(self, op: TradeOp) -> int:
        market = self._key(op.ref)
        holding = self._holdings.get(market)
        if holding is None:
            return 0

        if op.kind is OpKind.REDEEM:
            winner = self._winners.get(market)
            if winner is None or winner is not holding.outcome:
                return 0
            gross = holding.invested
        else:
            mark = self._marks.get((market, holding.outcome))
            if mark is not None:
                gross = int(mark * holding.tokens)
            else:
                gross = holding.invested * FALLBACK_EXIT_BPS // 10_000

        return gross - gross * self.fee_bps // 10_000


class SimulationHarness:
    """
    Runs the production orchestrator against a SimulatedExchange.

    By default the first pass is replicated (back-test mode), unlike the
    live bot which only captures the target's existing holdings.
    """

    def __init__(
        self,
        config: MirrorConfig,
        ledger: Optional[TradeLedger] = None,
        sink: Optional[EventSink] = None,
        replicate_initial: bool = True,
    ):
        self.config = config
        self.exchange = SimulatedExchange(
            starting_balance=to_units(config.starting_balance_usdc, DECIMALS),
            slippage_bps=config.slippage_bps,
            fee_bps=config.fee_bps,
        )
        self.ledger = ledger or TradeLedger(config.sim_trades_file)
        self.orchestrator = ReplicationOrchestrator(
            connector=self.exchange,
            ledger=self.ledger,
            config=config,
            sink=sink,
            retry=RetryPolicy(attempts=1, backoff=0),
            replicate_initial=replicate_initial,
        )
        self.reports: List[PassReport] = []

    async def step(self, snapshots: List[PositionSnapshot]) -> PassReport:
        self.exchange.observe(snapshots)
        report = await self.orchestrator.reconcile(snapshots)
        self.reports.append(report)
        return report

    async def replay(self, passes: Iterable[List[PositionSnapshot]]):
        for snapshots in passes:
            await self.step(snapshots)
        return self.results()

    async def run_once(self, feed, address: str):
        snapshots = await feed.fetch_positions(address)
        return await self.step(snapshots)

    def results(self) -> dict:
        start = self.exchange.starting_balance
        end = self.exchange.balance
        pnl = end - start
        return {
            "starting_balance": from_units(start, DECIMALS),
            "ending_balance": from_units(end, DECIMALS),
            "pnl": from_units(pnl, DECIMALS),
            "pnl_pct": float(pnl) / start * 100 if start else 0.0,
            "open_positions": self.exchange.holdings(),
            "stats": self.ledger.get_statistics(),
        }

    def log_results(self):
        res = self.results()
        sign = "+" if res["pnl"] >= 0 else ""
        logger.info("=" * 60)
        logger.info("SIMULATION RESULTS")
        logger.info("=" * 60)
        logger.info(f"Starting Balance:  {res['starting_balance']:.2f} USDC")
        logger.info(f"Ending Balance:    {res['ending_balance']:.2f} USDC")
        logger.info(f"Total PnL:         {sign}{res['pnl']:.2f} USDC ({sign}{res['pnl_pct']:.2f}%)")
        logger.info(f"Active Positions:  {len(res['open_positions'])}")
        for market_id, (outcome, invested, _tokens) in res["open_positions"].items():
            logger.info(f"  - [{market_id[:40]}] {outcome.label}: {format_units(invested, DECIMALS)} USDC")
        logger.info("=" * 60)
