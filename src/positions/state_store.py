"""
Reconciliation state and its JSON persistence.

The state is owned by one orchestrator instance. It survives restarts so
that an already-synced bot does not treat its next pass as a cold start and
so that unconfirmed transactions are re-checked instead of resubmitted.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from src.mirror.models import ConnectorRef, LocalPosition, Outcome, SeenPosition

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0"


@dataclass
class UnconfirmedLeg:
    """A submitted transaction whose confirmation timed out."""
    market_id: str
    kind: str  # BUY / SELL / REDEEM
    outcome: Outcome
    handle: str
    ref: ConnectorRef
    amount: int = 0
    token_amount: int = 0
    related_buy_id: Optional[str] = None
    title: Optional[str] = None
    reason: Optional[str] = None
    submitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "kind": self.kind,
            "outcome": int(self.outcome),
            "handle": self.handle,
            "ref": self.ref.to_dict(),
            "amount": self.amount,
            "token_amount": self.token_amount,
            "related_buy_id": self.related_buy_id,
            "title": self.title,
            "reason": self.reason,
            "submitted_at": self.submitted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UnconfirmedLeg":
        return cls(
            market_id=data["market_id"],
            kind=data["kind"],
            outcome=Outcome(int(data["outcome"])),
            handle=data["handle"],
            ref=ConnectorRef.from_dict(data.get("ref")),
            amount=int(data.get("amount", 0)),
            token_amount=int(data.get("token_amount", 0)),
            related_buy_id=data.get("related_buy_id"),
            title=data.get("title"),
            reason=data.get("reason"),
            submitted_at=data.get("submitted_at") or datetime.now(timezone.utc).isoformat(),
        )


@dataclass
class ReconciliationState:
    last_seen: Dict[str, SeenPosition] = field(default_factory=dict)
    positions: Dict[str, LocalPosition] = field(default_factory=dict)
    unconfirmed: Dict[str, UnconfirmedLeg] = field(default_factory=dict)
    initial_sync_complete: bool = False

    def to_dict(self) -> dict:
        return {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "initial_sync_complete": self.initial_sync_complete,
            "last_seen": {k: v.to_dict() for k, v in self.last_seen.items()},
            "positions": {k: v.to_dict() for k, v in self.positions.items()},
            "unconfirmed": {k: v.to_dict() for k, v in self.unconfirmed.items()},
            "version": STATE_VERSION,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReconciliationState":
        return cls(
            last_seen={k: SeenPosition.from_dict(v) for k, v in data.get("last_seen", {}).items()},
            positions={k: LocalPosition.from_dict(v) for k, v in data.get("positions", {}).items()},
            unconfirmed={k: UnconfirmedLeg.from_dict(v) for k, v in data.get("unconfirmed", {}).items()},
            initial_sync_complete=bool(data.get("initial_sync_complete", False)),
        )


class StateStore:
    """Loads and atomically saves ReconciliationState. A None path keeps state in memory only."""

    def __init__(self, file_path: Optional[str] = None):
        self._file_path = file_path

    @property
    def file_path(self) -> Optional[str]:
        return self._file_path

    def save(self, state: ReconciliationState):
        if not self._file_path:
            return
        try:
            directory = os.path.dirname(self._file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_file = self._file_path + ".tmp"
            with open(tmp_file, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_file, self._file_path)
            logger.debug(
                f"State saved: {len(state.positions)} positions, "
                f"{len(state.last_seen)} tracked markets"
            )
        except Exception as e:
            logger.error(f"Failed to save state: {e}")

    def load(self) -> ReconciliationState:
        if not self._file_path or not os.path.exists(self._file_path):
            logger.info("No saved state found - starting fresh")
            return ReconciliationState()

        try:
            with open(self._file_path) as f:
                data = json.load(f)
            state = ReconciliationState.from_dict(data)
        except Exception as e:
            logger.error(f"Failed to load state: {e} - starting fresh")
            return ReconciliationState()

        logger.info(
            f"Loaded state: {len(state.positions)} open positions, "
            f"{len(state.last_seen)} tracked markets, "
            f"{len(state.unconfirmed)} unconfirmed"
        )
        return state
