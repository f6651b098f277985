"""Contracts shared by the sync pipeline and its alerting layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4


def now_utc() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SyncOutcome(StrEnum):
    CREATED = "created"
    MERGED = "merged"
    NO_NEW_TRADES = "no_new_trades"
    NO_NEW_ORDERS = "no_new_orders"
    NO_CREDENTIAL = "no_credential"
    FAILED = "failed"


class ErrorKind(StrEnum):
    NO_CREDENTIAL = "NoCredential"
    ADAPTER_FAILURE = "AdapterFailure"
    FEED_TRUNCATED = "FeedTruncated"
    SYNC_ABORTED = "SyncAborted"


@dataclass(slots=True)
class AlertEvent:
    """Structured alert event for routing to channels."""

    severity: AlertSeverity
    source: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": str(self.severity),
            "source": self.source,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class SyncResult:
    """
    Outcome of one sync run for a (user, source, day).

    `to_dict` renders the caller-facing response: `created` with the number
    of new trades, `noNewTrades`, or an `error` naming the failure kind.
    """

    outcome: SyncOutcome
    user_id: str
    source_id: str
    date: str | None = None
    ledger_id: str | None = None
    new_trade_keys: list[str] = field(default_factory=list)
    fetched: int = 0
    new_orders: int = 0
    malformed: int = 0
    error: ErrorKind | None = None
    message: str = ""
    attempts: int = 1
    run_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def new_trade_count(self) -> int:
        return len(self.new_trade_keys)

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": str(self.error)}
        if self.outcome in (SyncOutcome.CREATED, SyncOutcome.MERGED):
            return {"created": True, "newTradeCount": self.new_trade_count}
        return {"noNewTrades": True}

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "outcome": str(self.outcome),
            "user_id": self.user_id,
            "source_id": self.source_id,
            "date": self.date,
            "ledger_id": self.ledger_id,
            "new_trade_keys": list(self.new_trade_keys),
            "fetched": self.fetched,
            "new_orders": self.new_orders,
            "malformed": self.malformed,
            "error": None if self.error is None else str(self.error),
            "message": self.message,
            "attempts": self.attempts,
        }
