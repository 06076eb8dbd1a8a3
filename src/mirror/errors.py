"""
Error taxonomy for the replication engine.

Per-market leg failures are raised at the connector seam and handled by the
orchestrator, which isolates them to the market they belong to.
"""

from typing import Optional


class MirrorError(Exception):
    """Base class for all replication errors."""

    def __init__(self, message: str = "", market_id: Optional[str] = None):
        super().__init__(message)
        self.market_id = market_id


class FeedUnavailable(MirrorError):
    """Position feed could not be fetched or parsed. Skip the cycle."""


class InsufficientBalance(MirrorError):
    """Not enough collateral for the leg. Skipped, may succeed later."""


class ApprovalFailure(MirrorError):
    """Token approval could not be established. Retried next cycle."""


class SlippageExceeded(MirrorError):
    """Expected output fell below the minimum-acceptable guard."""


class FeeCeilingExceeded(MirrorError):
    """Required network fee is above the configured ceiling."""


class ConfirmationTimeout(MirrorError):
    """Transaction was not confirmed in time. Needs reconciliation review."""

    def __init__(self, message: str = "", market_id: Optional[str] = None,
                 handle: Optional[str] = None):
        super().__init__(message, market_id)
        self.handle = handle


class InvalidConfig(MirrorError):
    """Sizing or replication settings are inconsistent. Fatal at startup."""


class ConnectorError(MirrorError):
    """
    Failure reported by the exchange connector.

    transient=True marks failures of read calls that may be retried
    (RPC hiccups, rate limits); anything else aborts the leg.
    """

    def __init__(self, message: str = "", transient: bool = False,
                 market_id: Optional[str] = None):
        super().__init__(message, market_id)
        self.transient = transient

    def __repr__(self):
        kind = "transient" if self.transient else "fatal"
        return f"<ConnectorError {kind}: {self}>"
