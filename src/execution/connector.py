"""
Exchange connector interface.

The orchestrator talks to exactly one connector: the on-chain AMM connector
for live trading, or the simulated exchange for paper/back-test runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from src.mirror.models import ConnectorRef, Outcome

# Gas padding applied to every effort estimate (limit and fee ceiling)
EFFORT_PAD_PCT = 120
EFFORT_PAD_FIXED = 10_000


class Asset(Enum):
    COLLATERAL = "collateral"
    POSITION = "position"


class OpKind(Enum):
    BUY = "BUY"
    SELL = "SELL"
    REDEEM = "REDEEM"


def padded_effort(effort: int) -> int:
    return effort * EFFORT_PAD_PCT // 100 + EFFORT_PAD_FIXED


@dataclass(frozen=True)
class TradeOp:
    """
    A single exchange operation.

    amount is collateral units: the investment for BUY, the return asked for
    on SELL. token_amount is the position-token balance to give up on SELL
    and REDEEM.
    """
    kind: OpKind
    ref: ConnectorRef
    outcome: Outcome
    amount: int = 0
    token_amount: int = 0
    market_id: Optional[str] = None

    def __repr__(self):
        return (
            f"<TradeOp {self.kind.value} {self.outcome.label} "
            f"amount={self.amount} tokens={self.token_amount} {self.market_id or ''}>"
        )


@dataclass(frozen=True)
class SubmitResult:
    handle: str
    # Collateral committed by this submission (BUY investment, 0 otherwise)
    cost: int = 0


@dataclass(frozen=True)
class ConfirmationResult:
    success: bool
    # Tokens received for BUY, collateral received for SELL/REDEEM
    output_amount: int = 0
    fee_paid: int = 0


class ExchangeConnector(ABC):
    """
    Async exchange seam.

    Read calls raise ConnectorError(transient=True) on failures worth
    retrying. submit() is never retried by the caller.
    """

    @abstractmethod
    async def get_allowance(self, ref: ConnectorRef, asset: Asset) -> int:
        """Allowance granted to the market for `asset`. POSITION is 0 or 1."""
        pass

    @abstractmethod
    async def approve(self, ref: ConnectorRef, asset: Asset, amount: int) -> bool:
        """Grant the market an allowance. Returns True once the approval is confirmed."""
        pass

    @abstractmethod
    async def get_balance(self, ref: ConnectorRef, asset: Asset,
                          outcome: Optional[Outcome] = None) -> int:
        """Our balance of collateral, or of the position token for `outcome`."""
        pass

    @abstractmethod
    async def estimate_output(self, op: TradeOp) -> int:
        """Expected tokens for a BUY, expected collateral for SELL/REDEEM."""
        pass

    @abstractmethod
    async def estimate_effort(self, op: TradeOp) -> int:
        """Network effort (gas) the operation is expected to consume."""
        pass

    @abstractmethod
    async def submit(self, op: TradeOp, min_acceptable_output: int,
                     fee_ceiling: int) -> SubmitResult:
        """
        Submit the operation.

        Raises FeeCeilingExceeded when the per-unit network fee would be
        above fee_ceiling, SlippageExceeded when the guard already fails.
        """
        pass

    @abstractmethod
    async def await_confirmation(self, handle: str, confirmations: int) -> ConfirmationResult:
        """Wait for `confirmations` blocks. Raises ConfirmationTimeout."""
        pass

    async def close(self):
        """Release connector resources."""
        pass
