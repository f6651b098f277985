"""Run contracts and alert routing."""

from .alerting import (
    AlertRouter,
    AlertSink,
    ConsoleAlertSink,
    FileAlertSink,
    LoggingAlertSink,
    MemoryAlertSink,
)
from .contracts import (
    AlertEvent,
    AlertSeverity,
    ErrorKind,
    SyncOutcome,
    SyncResult,
    now_utc,
)

__all__ = [
    "AlertEvent",
    "AlertRouter",
    "AlertSeverity",
    "AlertSink",
    "ConsoleAlertSink",
    "ErrorKind",
    "FileAlertSink",
    "LoggingAlertSink",
    "MemoryAlertSink",
    "SyncOutcome",
    "SyncResult",
    "now_utc",
]
