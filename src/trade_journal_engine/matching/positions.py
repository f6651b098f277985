"""Open-position state carried between sync runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from trade_journal_engine.types import OrderLeg, Side


@dataclass(frozen=True, slots=True)
class OpenLot:
    """Unmatched remainder of one fill, plus closing legs collected against it."""

    external_id: str
    symbol: str
    side: Side
    price: float
    timestamp: datetime
    remaining: float
    closing_legs: tuple[OrderLeg, ...] = ()

    @property
    def matched_quantity(self) -> float:
        return sum(leg.quantity for leg in self.closing_legs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.external_id,
            "tradingsymbol": self.symbol,
            "transaction_type": str(self.side),
            "average_price": self.price,
            "order_timestamp": self.timestamp.isoformat(),
            "remaining": self.remaining,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OpenLot":
        return OpenLot(
            external_id=str(payload["id"]),
            symbol=str(payload["tradingsymbol"]),
            side=Side(str(payload["transaction_type"])),
            price=float(payload["average_price"]),
            timestamp=datetime.fromisoformat(str(payload["order_timestamp"])),
            remaining=float(payload["remaining"]),
        )


@dataclass(frozen=True, slots=True)
class OpenPosition:
    """Per-symbol open quantity, with the fills that still contribute to it."""

    symbol: str
    side: Side
    lots: tuple[OpenLot, ...] = field(default_factory=tuple)

    @property
    def remaining_qty(self) -> float:
        return sum(lot.remaining for lot in self.lots)

    @property
    def contributing_fills(self) -> list[str]:
        return [lot.external_id for lot in self.lots]

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": str(self.side),
            "remaining_qty": self.remaining_qty,
            "lots": [lot.to_dict() for lot in self.lots],
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OpenPosition":
        return OpenPosition(
            symbol=str(payload["symbol"]),
            side=Side(str(payload["side"])),
            lots=tuple(OpenLot.from_dict(row) for row in payload.get("lots", [])),
        )


def positions_to_dict(positions: dict[str, OpenPosition]) -> dict[str, Any]:
    return {symbol: position.to_dict() for symbol, position in sorted(positions.items())}


def positions_from_dict(payload: dict[str, Any] | None) -> dict[str, OpenPosition]:
    return {symbol: OpenPosition.from_dict(row) for symbol, row in (payload or {}).items()}


def position_fill_ids(positions: dict[str, OpenPosition]) -> set[str]:
    out: set[str] = set()
    for position in positions.values():
        out.update(position.contributing_fills)
    return out
