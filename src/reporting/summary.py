"""
Reporting - periodic status reports and final summaries from the ledger.

Reads the ledger and orchestrator state only; never mutates them.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING

from src.ledger.trade_ledger import Statistics, TradeLedger
from src.mirror.sizer import from_units

if TYPE_CHECKING:
    from src.positions.orchestrator import ReplicationOrchestrator

logger = logging.getLogger(__name__)


def _signed(units: int, decimals: int) -> str:
    value = from_units(units, decimals)
    return f"{value:+.2f}"


def format_summary(stats: Statistics, decimals: int = 6, title: str = "TRADE LEDGER SUMMARY") -> str:
    """Multi-line summary of ledger statistics, amounts in collateral."""
    invested = from_units(stats.total_invested, decimals)
    returned = from_units(stats.total_returned, decimals)
    return (
        f"\n{'='*60}\n"
        f"{title}\n"
        f"{'='*60}\n"
        f"Total Trades:      {stats.total_trades}\n"
        f"  - Buys:          {stats.total_buys}\n"
        f"  - Sells:         {stats.total_sells}\n"
        f"Active Positions:  {stats.active_positions}\n"
        f"Closed Positions:  {stats.closed_positions}\n"
        f"Win Rate:          {stats.win_rate * 100:.2f}%\n"
        f"Total Invested:    {invested:.2f} USDC\n"
        f"Total Returned:    {returned:.2f} USDC\n"
        f"Total PnL:         {_signed(stats.total_pnl, decimals)} USDC\n"
        f"{'='*60}"
    )


def log_summary(ledger: TradeLedger, decimals: int = 6, title: str = "TRADE LEDGER SUMMARY"):
    logger.info(format_summary(ledger.get_statistics(), decimals, title))


class Reporter:
    """Periodic console reports and the final summary for the mirror bot."""

    def __init__(
        self,
        ledger: TradeLedger,
        orchestrator: Optional["ReplicationOrchestrator"] = None,
        mode_label: str = "LIVE",
        interval: float = 300,
        decimals: int = 6,
    ):
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._mode_label = mode_label
        self._interval = interval
        self._decimals = decimals
        self._start_time = datetime.now(timezone.utc)

    @property
    def runtime_hours(self) -> float:
        return (datetime.now(timezone.utc) - self._start_time).total_seconds() / 3600

    async def periodic_report(self, running_check: Callable[[], bool]):
        """Log a status report every `interval` seconds. Runs as an asyncio task."""
        while running_check():
            await asyncio.sleep(self._interval)
            if not running_check():
                break
            self.print_report()

    def print_report(self):
        stats = self._ledger.get_statistics()
        passes = self._orchestrator.passes if self._orchestrator else 0
        logger.info(format_summary(
            stats, self._decimals,
            title=f"MIRROR REPORT [{self._mode_label}] ({self.runtime_hours:.1f}h runtime, {passes} passes)",
        ))
        self._log_open_positions()

    def print_final_report(self):
        """Print final summary when shutting down."""
        stats = self._ledger.get_statistics()
        logger.info(format_summary(
            stats, self._decimals,
            title=f"FINAL MIRROR REPORT [{self._mode_label}] ({self.runtime_hours:.2f}h runtime)",
        ))
        self._log_open_positions()

        if self._orchestrator and self._orchestrator.state.unconfirmed:
            logger.warning(
                f"{len(self._orchestrator.state.unconfirmed)} unconfirmed transaction(s) need review:"
            )
            for leg in self._orchestrator.state.unconfirmed.values():
                logger.warning(f"   {leg.kind} {leg.outcome.label} | {leg.market_id} | {leg.handle}")

    def _log_open_positions(self):
        if not self._orchestrator:
            return
        positions = list(self._orchestrator.state.positions.values())
        if not positions:
            return
        logger.info(f"OPEN POSITIONS ({len(positions)}):")
        for pos in positions[:8]:
            invested = from_units(pos.invested_amount, pos.ref.collateral_decimals)
            logger.info(
                f"   {pos.outcome.label} | cost ${invested:.2f} | {pos.token_amount} tokens "
                f"| {(pos.title or pos.market_id)[:40]}"
            )
        if len(positions) > 8:
            logger.info(f"   ... and {len(positions) - 8} more")
