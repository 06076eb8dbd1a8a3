"""
Reporting: observability sink, console summaries and CSV export.
"""

from .events import EventSink, LoggingEventSink, RecordingEventSink
from .exporter import export_csv
from .summary import Reporter, format_summary, log_summary

__all__ = [
    "EventSink",
    "LoggingEventSink",
    "RecordingEventSink",
    "export_csv",
    "Reporter",
    "format_summary",
    "log_summary",
]
