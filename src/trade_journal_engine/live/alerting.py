"""Alert routing for sync failures and operator notices."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path

from .contracts import AlertEvent, AlertSeverity

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


class AlertSink(ABC):
    """Abstract sink for alert events."""

    @abstractmethod
    def send(self, event: AlertEvent) -> None:
        """Deliver one alert event."""


class ConsoleAlertSink(AlertSink):
    def send(self, event: AlertEvent) -> None:
        payload = event.to_dict()
        print(
            f"[{payload['timestamp']}] [{payload['severity'].upper()}] "
            f"{payload['source']}: {payload['message']} details={payload['details']}"
        )


class FileAlertSink(AlertSink):
    """Append alerts as JSONL for later review."""

    def __init__(self, output_path: str | Path) -> None:
        self.output_path = Path(output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def send(self, event: AlertEvent) -> None:
        with self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_dict(), default=str) + "\n")


class LoggingAlertSink(AlertSink):
    """Forward alerts to a `logging` logger at a severity-matched level."""

    def __init__(self, logger_name: str = "trade_journal_engine.alerts") -> None:
        self.logger = logging.getLogger(logger_name)

    def send(self, event: AlertEvent) -> None:
        self.logger.log(
            _LOG_LEVELS.get(event.severity, logging.INFO),
            "%s: %s %s",
            event.source,
            event.message,
            event.details,
        )


class MemoryAlertSink(AlertSink):
    def __init__(self) -> None:
        self.events: list[AlertEvent] = []

    def send(self, event: AlertEvent) -> None:
        self.events.append(event)

    def by_severity(self, severity: AlertSeverity) -> list[AlertEvent]:
        return [event for event in self.events if event.severity == severity]


@dataclass(slots=True)
class AlertRouter:
    """
    Routes alert events by severity to configured sinks.

    default_sinks are always used; severity_sinks are additive.
    """

    default_sinks: list[AlertSink] = field(default_factory=list)
    severity_sinks: dict[AlertSeverity, list[AlertSink]] = field(default_factory=dict)

    def route(self, event: AlertEvent) -> None:
        sinks: list[AlertSink] = list(self.default_sinks)
        sinks.extend(self.severity_sinks.get(event.severity, []))
        for sink in sinks:
            sink.send(event)

    def _emit(self, severity: AlertSeverity, source: str, message: str, details: dict | None) -> None:
        self.route(AlertEvent(severity=severity, source=source, message=message, details=details or {}))

    def info(self, source: str, message: str, details: dict | None = None) -> None:
        self._emit(AlertSeverity.INFO, source, message, details)

    def warning(self, source: str, message: str, details: dict | None = None) -> None:
        self._emit(AlertSeverity.WARNING, source, message, details)

    def critical(self, source: str, message: str, details: dict | None = None) -> None:
        self._emit(AlertSeverity.CRITICAL, source, message, details)

    @staticmethod
    def with_logging(file_path: str | Path | None = None) -> "AlertRouter":
        sinks: list[AlertSink] = [LoggingAlertSink()]
        if file_path:
            sinks.append(FileAlertSink(file_path))
        return AlertRouter(default_sinks=sinks)

    @staticmethod
    def with_console_and_file(file_path: str | Path) -> "AlertRouter":
        return AlertRouter(default_sinks=[ConsoleAlertSink(), FileAlertSink(file_path)])
