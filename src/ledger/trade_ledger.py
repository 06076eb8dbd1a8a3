"""
Trade ledger - append-only record of every replicated BUY and SELL.

Entries are never removed. A BUY carries closure fields that are set exactly
once, when the SELL that ends it is recorded (or when the position is
reconciled away). Statistics are always derived from the entries.
"""

import json
import logging
import os
import random
import string
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import List, Optional

from src.mirror.models import Outcome

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"

BUY = "BUY"
SELL = "SELL"

OPEN = "OPEN"
CLOSED = "CLOSED"
ORPHANED = "ORPHANED"

# Close reasons
TARGET_CLOSED = "TARGET_CLOSED"
TARGET_SWITCHED = "TARGET_SWITCHED"
MARKET_RESOLVED = "MARKET_RESOLVED"
RECONCILED = "RECONCILED"

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_trade_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"trade_{int(time.time() * 1000)}_{suffix}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LedgerEntry:
    id: str
    type: str
    market_id: str
    outcome: Outcome
    timestamp: str = field(default_factory=_now)

    market_title: Optional[str] = None
    market_address: Optional[str] = None
    condition_id: Optional[str] = None
    collateral_token: Optional[str] = None
    collateral_decimals: int = 6

    # BUY amounts (collateral units / token units)
    investment_amount: Optional[int] = None
    expected_tokens: Optional[int] = None
    min_tokens: Optional[int] = None
    tokens_received: Optional[int] = None

    # SELL amounts
    tokens_sold: Optional[int] = None
    return_amount: Optional[int] = None
    invested_amount: Optional[int] = None
    pnl_amount: Optional[int] = None
    pnl_percentage: Optional[float] = None
    related_buy_id: Optional[str] = None

    tx_hash: Optional[str] = None
    fee_paid: Optional[int] = None
    target_action: Optional[str] = None
    reason: Optional[str] = None

    status: str = OPEN

    # BUY closure, set once
    closed_at: Optional[str] = None
    close_tx_hash: Optional[str] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[int] = None
    close_reason: Optional[str] = None

    @property
    def outcome_label(self) -> str:
        return self.outcome.label

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = int(self.outcome)
        data["outcome_label"] = self.outcome_label
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["outcome"] = Outcome(int(data["outcome"]))
        return cls(**kwargs)


@dataclass
class Statistics:
    total_trades: int = 0
    total_buys: int = 0
    total_sells: int = 0
    total_invested: int = 0
    total_returned: int = 0
    total_pnl: int = 0
    active_positions: int = 0
    closed_positions: int = 0
    win_rate: float = 0.0
    last_updated: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def compute_statistics(entries: List[LedgerEntry]) -> Statistics:
    buys = [t for t in entries if t.type == BUY]
    sells = [t for t in entries if t.type == SELL]
    open_buys = [t for t in buys if t.status == OPEN]
    closed_buys = [t for t in buys if t.status == CLOSED]

    total_invested = sum(t.investment_amount or 0 for t in buys)
    total_returned = sum(t.return_amount or 0 for t in sells)

    profitable = [t for t in closed_buys if t.realized_pnl is not None and t.realized_pnl > 0]
    win_rate = len(profitable) / len(closed_buys) if closed_buys else 0.0

    return Statistics(
        total_trades=len(entries),
        total_buys=len(buys),
        total_sells=len(sells),
        total_invested=total_invested,
        total_returned=total_returned,
        total_pnl=total_returned - total_invested,
        active_positions=len(open_buys),
        closed_positions=len(closed_buys),
        win_rate=win_rate,
        last_updated=_now(),
    )


class TradeLedger:
    """Persistent trade ledger. Every mutation rewrites the JSON file atomically."""

    def __init__(self, file_path: str = "data/trades.json"):
        self._file_path = file_path
        self._trades: List[LedgerEntry] = []
        self._stats = Statistics()
        self.load()

    @property
    def file_path(self) -> str:
        return self._file_path

    @property
    def entries(self) -> List[LedgerEntry]:
        return list(self._trades)

    def __len__(self):
        return len(self._trades)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_buy(
        self,
        market_id: str,
        outcome: Outcome,
        investment_amount: int,
        tokens_received: Optional[int] = None,
        expected_tokens: Optional[int] = None,
        min_tokens: Optional[int] = None,
        tx_hash: Optional[str] = None,
        fee_paid: Optional[int] = None,
        market_title: Optional[str] = None,
        market_address: Optional[str] = None,
        condition_id: Optional[str] = None,
        collateral_token: Optional[str] = None,
        collateral_decimals: int = 6,
        target_action: str = "NEW_POSITION",
        reason: str = "Target opened position",
    ) -> str:
        """Append an OPEN BUY. Raises ValueError if the market already has one."""
        existing = self.find_open_buy(market_id)
        if existing is not None:
            raise ValueError(
                f"Market {market_id} already has open BUY {existing.id}"
            )

        entry = LedgerEntry(
            id=generate_trade_id(),
            type=BUY,
            market_id=market_id,
            outcome=outcome,
            market_title=market_title,
            market_address=market_address,
            condition_id=condition_id,
            collateral_token=collateral_token,
            collateral_decimals=collateral_decimals,
            investment_amount=int(investment_amount),
            expected_tokens=expected_tokens,
            min_tokens=min_tokens,
            tokens_received=tokens_received,
            tx_hash=tx_hash,
            fee_paid=fee_paid,
            target_action=target_action,
            reason=reason,
            status=OPEN,
        )
        self._trades.append(entry)
        self.save()

        logger.info(
            f"Recorded BUY: {entry.id} - {market_id} {outcome.label} for {investment_amount} units"
        )
        return entry.id

    def record_sell(
        self,
        market_id: str,
        outcome: Outcome,
        return_amount: int,
        tokens_sold: Optional[int] = None,
        related_buy_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
        fee_paid: Optional[int] = None,
        exit_price: Optional[float] = None,
        market_title: Optional[str] = None,
        market_address: Optional[str] = None,
        condition_id: Optional[str] = None,
        collateral_token: Optional[str] = None,
        collateral_decimals: int = 6,
        target_action: str = "CLOSE_POSITION",
        reason: str = TARGET_CLOSED,
    ) -> str:
        """
        Append a SELL and close the BUY it ends.

        Links `related_buy_id` when given and still OPEN, otherwise the open BUY
        for (market_id, outcome). With no open BUY the SELL is ORPHANED.
        """
        buy = None
        if related_buy_id:
            candidate = self.get_trade(related_buy_id)
            if candidate is not None and candidate.type == BUY and candidate.status == OPEN:
                buy = candidate
            else:
                logger.warning(f"Related BUY {related_buy_id} is not open, matching by market")
        if buy is None:
            buy = self.find_open_buy(market_id, outcome)

        entry = LedgerEntry(
            id=generate_trade_id(),
            type=SELL,
            market_id=market_id,
            outcome=outcome,
            market_title=market_title or (buy.market_title if buy else None),
            market_address=market_address or (buy.market_address if buy else None),
            condition_id=condition_id or (buy.condition_id if buy else None),
            collateral_token=collateral_token or (buy.collateral_token if buy else None),
            collateral_decimals=buy.collateral_decimals if buy else collateral_decimals,
            tokens_sold=tokens_sold,
            return_amount=int(return_amount),
            tx_hash=tx_hash,
            fee_paid=fee_paid,
            exit_price=exit_price,
            target_action=target_action,
            reason=reason,
            status=CLOSED,
        )

        if buy is not None:
            invested = buy.investment_amount or 0
            pnl = entry.return_amount - invested
            entry.related_buy_id = buy.id
            entry.invested_amount = invested
            entry.pnl_amount = pnl
            entry.pnl_percentage = round(pnl / invested * 100, 2) if invested else None
            self._trades.append(entry)
            self._close(buy, {
                "closed_at": entry.timestamp,
                "close_tx_hash": tx_hash,
                "exit_price": exit_price,
                "realized_pnl": pnl,
                "close_reason": reason,
            })
        else:
            entry.status = ORPHANED
            self._trades.append(entry)
            logger.warning(f"SELL {entry.id} for {market_id} {outcome.label} has no open BUY, recorded as ORPHANED")

        self.save()
        logger.info(
            f"Recorded SELL: {entry.id} - {market_id} {outcome.label} for {return_amount} units"
        )
        return entry.id

    def close_trade(self, trade_id: str, closure: Optional[dict] = None) -> bool:
        """
        Close an OPEN BUY without a SELL (e.g. reconciled after an external exit).

        Returns False if the trade is unknown, not a BUY or already closed.
        """
        trade = self.get_trade(trade_id)
        if trade is None:
            logger.warning(f"Trade {trade_id} not found")
            return False
        if trade.type != BUY or trade.status != OPEN:
            logger.warning(f"Trade {trade_id} is not an open BUY (status={trade.status})")
            return False

        self._close(trade, closure or {})
        self.save()
        return True

    def _close(self, trade: LedgerEntry, closure: dict):
        trade.status = CLOSED
        trade.closed_at = closure.get("closed_at") or _now()
        trade.close_tx_hash = closure.get("close_tx_hash")
        trade.exit_price = closure.get("exit_price")
        trade.realized_pnl = closure.get("realized_pnl")
        trade.close_reason = closure.get("close_reason")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_trade(self, trade_id: str) -> Optional[LedgerEntry]:
        for trade in self._trades:
            if trade.id == trade_id:
                return trade
        return None

    def find_open_buy(self, market_id: str, outcome: Optional[Outcome] = None) -> Optional[LedgerEntry]:
        """Most recent OPEN BUY for the market (and outcome, when given)."""
        for trade in reversed(self._trades):
            if (trade.type == BUY and trade.status == OPEN
                    and trade.market_id == market_id
                    and (outcome is None or trade.outcome is outcome)):
                return trade
        return None

    def get_trades_by_market(self, market_id: str) -> List[LedgerEntry]:
        return [t for t in self._trades if t.market_id == market_id]

    def get_open_positions(self) -> List[LedgerEntry]:
        return [t for t in self._trades if t.type == BUY and t.status == OPEN]

    def get_closed_positions(self) -> List[LedgerEntry]:
        return [t for t in self._trades if t.type == BUY and t.status == CLOSED]

    def get_recent_trades(self, count: int = 10) -> List[LedgerEntry]:
        """Last `count` entries, newest first."""
        if count <= 0:
            return []
        return list(reversed(self._trades[-count:]))

    def get_statistics(self) -> Statistics:
        self._stats = compute_statistics(self._trades)
        return self._stats

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self):
        """Write {trades, stats, version} atomically. Failures are logged, not raised."""
        self._stats = compute_statistics(self._trades)
        try:
            directory = os.path.dirname(self._file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            data = {
                "trades": [t.to_dict() for t in self._trades],
                "stats": self._stats.to_dict(),
                "version": LEDGER_VERSION,
            }
            tmp_file = self._file_path + ".tmp"
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_file, self._file_path)
            logger.debug(f"Ledger saved: {len(self._trades)} trades")
        except Exception as e:
            logger.error(f"Failed to save trade ledger: {e}")

    def load(self):
        """Load entries from disk. A corrupt file is moved aside and the ledger starts empty."""
        if not os.path.exists(self._file_path):
            logger.info("No trade ledger found - starting fresh")
            return

        try:
            with open(self._file_path) as f:
                data = json.load(f)
            trades = [LedgerEntry.from_dict(t) for t in data.get("trades", [])]
        except Exception as e:
            logger.error(f"Failed to load trade ledger: {e} - starting fresh")
            try:
                os.replace(self._file_path, self._file_path + ".corrupt")
            except OSError as move_error:
                logger.error(f"Could not move corrupt ledger aside: {move_error}")
            return

        self._trades = trades
        self._stats = compute_statistics(self._trades)
        logger.info(f"Loaded {len(self._trades)} trade records")
