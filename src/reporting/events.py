"""
Observability sink for replication events.

The orchestrator reports every decision (trade, skip, defer, failure)
through a sink instead of printing. The default sink writes to logging.
"""

import logging
from datetime import datetime, timezone
from typing import List, Protocol

logger = logging.getLogger(__name__)

# Event kinds
PASS_STARTED = "pass_started"
PASS_COMPLETED = "pass_completed"
COLD_START = "cold_start"
FEED_UNAVAILABLE = "feed_unavailable"
EVENT_DETECTED = "event_detected"
TRADE_SUBMITTED = "trade_submitted"
TRADE_CONFIRMED = "trade_confirmed"
LEG_SKIPPED = "leg_skipped"
LEG_DEFERRED = "leg_deferred"
LEG_FAILED = "leg_failed"
LEG_UNCONFIRMED = "leg_unconfirmed"
POSITION_RECONCILED = "position_reconciled"
INCREASE_DETECTED = "increase_detected"

_WARNING_KINDS = {FEED_UNAVAILABLE, LEG_DEFERRED, LEG_UNCONFIRMED}
_ERROR_KINDS = {LEG_FAILED}


class EventSink(Protocol):
    def emit(self, kind: str, **fields) -> None:
        ...


class LoggingEventSink:
    """Writes each event as one log line: `kind | key=value ...`."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def emit(self, kind: str, **fields) -> None:
        detail = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
        if kind in _ERROR_KINDS:
            level = logging.ERROR
        elif kind in _WARNING_KINDS:
            level = logging.WARNING
        else:
            level = logging.INFO
        self._log.log(level, f"{kind} | {detail}" if detail else kind)


class RecordingEventSink:
    """Keeps events in memory. Used by tests and the simulation report."""

    def __init__(self, forward: EventSink = None):
        self.events: List[dict] = []
        self._forward = forward

    def emit(self, kind: str, **fields) -> None:
        self.events.append({"kind": kind, "at": datetime.now(timezone.utc).isoformat(), **fields})
        if self._forward is not None:
            self._forward.emit(kind, **fields)

    def of_kind(self, kind: str) -> List[dict]:
        return [e for e in self.events if e["kind"] == kind]

    def kinds(self) -> List[str]:
        return [e["kind"] for e in self.events]

    def clear(self):
        self.events.clear()
