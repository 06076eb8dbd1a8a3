"""
Append-only trade ledger with derived PnL statistics.
"""

from .trade_ledger import LedgerEntry, Statistics, TradeLedger, compute_statistics

__all__ = ["LedgerEntry", "Statistics", "TradeLedger", "compute_statistics"]
