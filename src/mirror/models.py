"""
Data model for position replication.

Snapshots come from the position feed, events from the differ, and local
positions are owned by the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional


class Outcome(IntEnum):
    """The two sides of a binary market. Values are the on-chain outcome indices."""
    NO = 0
    YES = 1

    @property
    def label(self) -> str:
        return self.name

    @property
    def opposite(self) -> "Outcome":
        return Outcome.YES if self is Outcome.NO else Outcome.NO

    @classmethod
    def parse(cls, value) -> Optional["Outcome"]:
        """Accept an index (0/1), a label ("yes"/"no") or an Outcome."""
        if value is None:
            return None
        if isinstance(value, Outcome):
            return value
        if isinstance(value, str):
            text = value.strip().upper()
            if text in cls.__members__:
                return cls[text]
            if text.isdigit():
                value = int(text)
            else:
                return None
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return None


class EventType(str, Enum):
    OPENED = "OPENED"
    CLOSED = "CLOSED"
    SWITCHED = "SWITCHED"
    INCREASED = "INCREASED"


@dataclass(frozen=True)
class ConnectorRef:
    """Everything the connector needs to trade (and later close) a market."""
    market_address: Optional[str] = None
    collateral_token: Optional[str] = None
    collateral_decimals: int = 6
    condition_id: Optional[str] = None

    @property
    def tradable(self) -> bool:
        return bool(self.market_address and self.collateral_token)

    def to_dict(self) -> dict:
        return {
            "market_address": self.market_address,
            "collateral_token": self.collateral_token,
            "collateral_decimals": self.collateral_decimals,
            "condition_id": self.condition_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ConnectorRef":
        data = data or {}
        return cls(
            market_address=data.get("market_address"),
            collateral_token=data.get("collateral_token"),
            collateral_decimals=int(data.get("collateral_decimals", 6)),
            condition_id=data.get("condition_id"),
        )


@dataclass(frozen=True)
class PositionSnapshot:
    """A target wallet's holding in one market, captured in one poll cycle."""
    market_id: str
    no_balance: int = 0
    yes_balance: int = 0
    resolved: bool = False
    winning_outcome: Optional[Outcome] = None
    title: Optional[str] = None
    ref: ConnectorRef = field(default_factory=ConnectorRef)
    # Cost basis and mark value per outcome, in collateral (not units)
    no_cost: Optional[Decimal] = None
    yes_cost: Optional[Decimal] = None
    no_value: Optional[Decimal] = None
    yes_value: Optional[Decimal] = None

    def balance_of(self, outcome: Outcome) -> int:
        return self.yes_balance if outcome is Outcome.YES else self.no_balance

    def cost_of(self, outcome: Outcome) -> Optional[Decimal]:
        return self.yes_cost if outcome is Outcome.YES else self.no_cost

    def value_of(self, outcome: Outcome) -> Optional[Decimal]:
        return self.yes_value if outcome is Outcome.YES else self.no_value


@dataclass(frozen=True)
class SeenPosition:
    """Last observed target holding for a market."""
    outcome: Outcome
    balance: int

    def to_dict(self) -> dict:
        return {"outcome": int(self.outcome), "balance": self.balance}

    @classmethod
    def from_dict(cls, data: dict) -> "SeenPosition":
        return cls(outcome=Outcome(int(data["outcome"])), balance=int(data.get("balance", 0)))


@dataclass(frozen=True)
class ReplicationEvent:
    """A semantic change in the target's holdings, consumed within one pass."""
    type: EventType
    market_id: str
    previous_outcome: Optional[Outcome] = None
    new_outcome: Optional[Outcome] = None
    target_investment: Decimal = Decimal("0")
    balance: int = 0
    winning_outcome: Optional[Outcome] = None
    increase_ratio: Optional[Decimal] = None
    snapshot: Optional[PositionSnapshot] = None

    @property
    def is_resolution(self) -> bool:
        return self.type is EventType.CLOSED and self.winning_outcome is not None

    def __repr__(self):
        prev = self.previous_outcome.label if self.previous_outcome is not None else "-"
        new = self.new_outcome.label if self.new_outcome is not None else "-"
        return f"<ReplicationEvent {self.type.value} {self.market_id} {prev}->{new}>"


@dataclass
class LocalPosition:
    """Our replicated holding in a market. At most one per market_id."""
    market_id: str
    outcome: Outcome
    invested_amount: int
    ref: ConnectorRef
    token_amount: int = 0
    trade_id: Optional[str] = None
    title: Optional[str] = None
    opened_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "outcome": int(self.outcome),
            "invested_amount": self.invested_amount,
            "token_amount": self.token_amount,
            "ref": self.ref.to_dict(),
            "trade_id": self.trade_id,
            "title": self.title,
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocalPosition":
        return cls(
            market_id=data["market_id"],
            outcome=Outcome(int(data["outcome"])),
            invested_amount=int(data.get("invested_amount", 0)),
            token_amount=int(data.get("token_amount", 0)),
            ref=ConnectorRef.from_dict(data.get("ref")),
            trade_id=data.get("trade_id"),
            title=data.get("title"),
            opened_at=data.get("opened_at") or datetime.now(timezone.utc).isoformat(),
        )
