"""Core domain datatypes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Side(StrEnum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderStatus(StrEnum):
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    OTHER = "OTHER"


@dataclass(frozen=True, slots=True)
class Order:
    """Canonical, source-agnostic fill record."""

    external_id: str
    symbol: str
    side: Side
    quantity: float
    price: float
    timestamp: datetime
    raw_status: str
    status: OrderStatus = OrderStatus.COMPLETE
    source: str = ""

    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.external_id)

    def to_leg(self, quantity: float | None = None) -> "OrderLeg":
        return OrderLeg(
            external_id=self.external_id,
            symbol=self.symbol,
            side=self.side,
            quantity=self.quantity if quantity is None else quantity,
            price=self.price,
            timestamp=self.timestamp,
        )


@dataclass(frozen=True, slots=True)
class MalformedOrder:
    """Raw record that could not be normalized; dropped from the batch."""

    source: str
    reason: str
    external_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OrderLeg:
    external_id: str
    symbol: str
    side: Side
    quantity: float
    price: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.external_id,
            "tradingsymbol": self.symbol,
            "transaction_type": str(self.side),
            "quantity": self.quantity,
            "average_price": self.price,
            "order_timestamp": self.timestamp.isoformat(),
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OrderLeg":
        return OrderLeg(
            external_id=str(payload["id"]),
            symbol=str(payload.get("tradingsymbol", "")),
            side=Side(str(payload["transaction_type"]).upper()),
            quantity=float(payload["quantity"]),
            price=float(payload["average_price"]),
            timestamp=datetime.fromisoformat(str(payload["order_timestamp"])),
        )


ANNOTATION_FIELDS = (
    "stop_loss",
    "target_price",
    "feelings",
    "strategy",
    "mistake",
    "chart_image",
    "description",
    "insights",
)


@dataclass(slots=True)
class RoundTripTrade:
    """Closed position: opposing legs whose quantities fully offset."""

    key: str
    symbol: str
    legs: list[OrderLeg]
    stop_loss: float = 0.0
    target_price: float = 0.0
    feelings: str = ""
    strategy: str = ""
    mistake: str = ""
    chart_image: str = ""
    description: str = ""
    insights: list[str] = field(default_factory=list)

    def quantity(self, side: Side) -> float:
        return sum(leg.quantity for leg in self.legs if leg.side == side)

    @property
    def is_balanced(self) -> bool:
        return abs(self.quantity(Side.BUY) - self.quantity(Side.SELL)) <= 1e-9

    def external_ids(self) -> set[str]:
        return {leg.external_id for leg in self.legs}

    def to_dict(self) -> dict[str, Any]:
        return {
            "orders": [leg.to_dict() for leg in self.legs],
            "stop_loss": self.stop_loss,
            "target_price": self.target_price,
            "feelings": self.feelings,
            "strategy": self.strategy,
            "mistake": self.mistake,
            "chartImage": self.chart_image,
            "description": self.description,
            "insights": list(self.insights),
        }

    @staticmethod
    def from_dict(key: str, payload: dict[str, Any]) -> "RoundTripTrade":
        legs = [OrderLeg.from_dict(row) for row in payload.get("orders", [])]
        feelings = payload.get("feelings", "")
        if isinstance(feelings, list):
            feelings = feelings[0] if feelings else ""
        return RoundTripTrade(
            key=key,
            symbol=legs[0].symbol if legs else "",
            legs=legs,
            stop_loss=float(payload.get("stop_loss") or 0.0),
            target_price=float(payload.get("target_price") or 0.0),
            feelings=str(feelings or ""),
            # Older documents carry the misspelled "startegy" key.
            strategy=str(payload.get("strategy") or payload.get("startegy") or ""),
            mistake=str(payload.get("mistake") or ""),
            chart_image=str(payload.get("chartImage") or ""),
            description=str(payload.get("description") or ""),
            insights=list(payload.get("insights") or []),
        )


@dataclass(slots=True)
class DailyLedger:
    """Per-user, per-day collection of round-trip trades."""

    date: str
    trades: dict[str, RoundTripTrade] = field(default_factory=dict)

    def trade_keys(self) -> list[str]:
        return sorted(self.trades, key=trade_key_number)

    def last_trade_key(self) -> str | None:
        keys = self.trade_keys()
        return keys[-1] if keys else None

    def external_ids(self) -> set[str]:
        out: set[str] = set()
        for trade in self.trades.values():
            out |= trade.external_ids()
        return out

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"date": self.date}
        for key in self.trade_keys():
            out[key] = self.trades[key].to_dict()
        return out

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "DailyLedger":
        trades = {
            key: RoundTripTrade.from_dict(key, value)
            for key, value in payload.items()
            if key != "date" and isinstance(value, dict)
        }
        return DailyLedger(date=str(payload.get("date") or ""), trades=trades)


def format_trade_key(number: int, prefix: str = "TRADE_", width: int = 3) -> str:
    return f"{prefix}{number:0{width}d}"


def trade_key_number(key: str) -> int:
    """Return the numeric suffix of a `TRADE_NNN` key."""
    _, _, suffix = key.rpartition("_")
    try:
        return int(suffix)
    except ValueError as exc:
        raise ValueError(f"Not a trade key: {key!r}") from exc


def next_trade_number(last_key: str | None) -> int:
    return trade_key_number(last_key) + 1 if last_key else 1
