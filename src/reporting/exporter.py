"""
CSV export of ledger entries, one row per entry.
"""

import csv
import logging
import os
from typing import Iterable

from src.ledger.trade_ledger import BUY, LedgerEntry
from src.mirror.sizer import format_units

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "ID", "Type", "Timestamp", "Market", "Outcome",
    "Investment (USDC)", "Return (USDC)", "PnL (USDC)", "PnL %",
    "Status", "Tx Hash", "Market Address",
]


def entry_row(entry: LedgerEntry) -> list:
    decimals = entry.collateral_decimals
    investment = entry.investment_amount if entry.type == BUY else entry.invested_amount
    pnl = entry.pnl_amount if entry.pnl_amount is not None else entry.realized_pnl
    return [
        entry.id,
        entry.type,
        entry.timestamp,
        entry.market_id or "-",
        entry.outcome_label,
        format_units(investment, decimals) if investment is not None else "-",
        format_units(entry.return_amount, decimals) if entry.return_amount is not None else "-",
        (f"{'-' if pnl < 0 else ''}{format_units(abs(pnl), decimals)}" if pnl is not None else "-"),
        f"{entry.pnl_percentage:.2f}%" if entry.pnl_percentage is not None else "-",
        entry.status,
        entry.tx_hash or "-",
        entry.market_address or "-",
    ]


def export_csv(entries: Iterable[LedgerEntry], path: str) -> bool:
    """Write entries to `path`. Returns False (and logs) on failure."""
    entries = list(entries)
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", newline="") as f:
            writer = csv.writer(f, quoting=csv.QUOTE_ALL)
            writer.writerow(CSV_HEADERS)
            for entry in entries:
                writer.writerow(entry_row(entry))
        logger.info(f"Exported {len(entries)} trades to {path}")
        return True
    except Exception as e:
        logger.error(f"Failed to export CSV: {e}")
        return False
