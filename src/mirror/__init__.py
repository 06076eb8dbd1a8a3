"""
Core replication model: data types, snapshot differ, trade sizer, errors and config.
"""

from .differ import advance, diff, dominant_outcome
from .errors import (
    ApprovalFailure,
    ConfirmationTimeout,
    ConnectorError,
    FeeCeilingExceeded,
    FeedUnavailable,
    InsufficientBalance,
    InvalidConfig,
    MirrorError,
    SlippageExceeded,
)
from .models import (
    ConnectorRef,
    EventType,
    LocalPosition,
    Outcome,
    PositionSnapshot,
    ReplicationEvent,
    SeenPosition,
)
from .sizer import from_units, size, to_units

__all__ = [
    "advance",
    "diff",
    "dominant_outcome",
    "size",
    "to_units",
    "from_units",
    "ConnectorRef",
    "EventType",
    "LocalPosition",
    "Outcome",
    "PositionSnapshot",
    "ReplicationEvent",
    "SeenPosition",
    "MirrorError",
    "FeedUnavailable",
    "InsufficientBalance",
    "ApprovalFailure",
    "SlippageExceeded",
    "FeeCeilingExceeded",
    "ConfirmationTimeout",
    "InvalidConfig",
    "ConnectorError",
]
