"""Per-trade and aggregate P&L, weighted prices and stop-loss checks."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
import logging
import math
from typing import Any

from trade_journal_engine.errors import InvalidStopLoss
from trade_journal_engine.types import DailyLedger, OrderLeg, Side

logger = logging.getLogger(__name__)

QTY_TOLERANCE = 1e-9


class PnLType(StrEnum):
    PROFIT = "PROFIT"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"
    INVALID = "INVALID"


class Direction(StrEnum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(slots=True)
class LegTotals:
    buy_qty: float = 0.0
    buy_value: float = 0.0
    sell_qty: float = 0.0
    sell_value: float = 0.0

    @staticmethod
    def of(legs: Iterable[OrderLeg]) -> "LegTotals":
        totals = LegTotals()
        for leg in legs:
            if leg.side == Side.BUY:
                totals.buy_qty += leg.quantity
                totals.buy_value += leg.quantity * leg.price
            else:
                totals.sell_qty += leg.quantity
                totals.sell_value += leg.quantity * leg.price
        return totals

    @property
    def balanced(self) -> bool:
        return abs(self.buy_qty - self.sell_qty) <= QTY_TOLERANCE


@dataclass(slots=True)
class TradePnL:
    total_buy: float
    total_sell: float
    total_qty: float
    pnl: float
    type: PnLType

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": {"totalBuy": self.total_buy, "totalSell": self.total_sell, "totalQty": self.total_qty},
            "pnl": self.pnl,
            "type": str(self.type),
        }


@dataclass(slots=True)
class QuantityMismatch:
    """Buy and sell totals of a round trip disagree; P&L is undefined."""

    buy_qty: float
    sell_qty: float
    trade_key: str | None = None
    pnl: None = None
    type: PnLType = PnLType.INVALID

    @property
    def message(self) -> str:
        prefix = f"{self.trade_key}: " if self.trade_key else ""
        return f"{prefix}quantity mismatch BUY {self.buy_qty} != SELL {self.sell_qty}"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "amount": None, "pnl": None, "type": str(self.type)}


@dataclass(slots=True)
class TradeDetails:
    direction: Direction
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    is_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": str(self.direction),
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "pnl": self.pnl,
            "is_open": self.is_open,
        }


@dataclass(slots=True)
class OverallPnL:
    total_buy: float = 0.0
    total_sell: float = 0.0
    total_qty: float = 0.0
    pnl: float = 0.0
    type: PnLType = PnLType.BREAKEVEN
    trade_count: int = 0
    skipped: list[QuantityMismatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": {"totalBuy": self.total_buy, "totalSell": self.total_sell, "totalQty": self.total_qty},
            "pnl": self.pnl,
            "type": str(self.type),
            "tradeCount": self.trade_count,
            "skipped": [item.message for item in self.skipped],
        }


@dataclass(slots=True)
class RewardRisk:
    direction: Direction
    entry_price: float
    stop_loss: float | None
    target_price: float | None
    reward_per_unit: float | None
    risk_per_unit: float | None
    ratio: float | None


def _classify(pnl: float) -> PnLType:
    if pnl > 0:
        return PnLType.PROFIT
    if pnl < 0:
        return PnLType.LOSS
    return PnLType.BREAKEVEN


def calculate_pnl_for_trade(
    legs: Sequence[OrderLeg],
    decimals: int = 2,
    trade_key: str | None = None,
) -> TradePnL | QuantityMismatch:
    """Realized P&L of one round trip: total sell value minus total buy value."""
    totals = LegTotals.of(legs)
    if not totals.balanced:
        return QuantityMismatch(buy_qty=totals.buy_qty, sell_qty=totals.sell_qty, trade_key=trade_key)
    pnl = round(totals.sell_value - totals.buy_value, decimals)
    return TradePnL(
        total_buy=round(totals.buy_value, decimals),
        total_sell=round(totals.sell_value, decimals),
        total_qty=totals.buy_qty,
        pnl=pnl,
        type=_classify(pnl),
    )


def trade_direction(legs: Sequence[OrderLeg]) -> Direction:
    if not legs:
        raise ValueError("Trade has no legs.")
    return Direction.LONG if legs[0].side == Side.BUY else Direction.SHORT


def _round(value: float, decimals: int | None) -> float:
    return value if decimals is None else round(value, decimals)


def calculate_details(legs: Sequence[OrderLeg], decimals: int | None = 2) -> TradeDetails | None:
    """
    Weighted entry/exit prices and signed P&L for one trade.

    `decimals=None` leaves prices unrounded, for comparisons against user input.

    Direction comes from the first leg. When only one side is present the
    trade is still open: exit price and P&L are reported as zero. P&L is
    computed over `min(buy_qty, sell_qty)`.
    """
    if not legs:
        return None
    totals = LegTotals.of(legs)

    if totals.buy_qty <= QTY_TOLERANCE or totals.sell_qty <= QTY_TOLERANCE:
        if totals.buy_qty > QTY_TOLERANCE:
            direction, qty, value = Direction.LONG, totals.buy_qty, totals.buy_value
        else:
            direction, qty, value = Direction.SHORT, totals.sell_qty, totals.sell_value
        return TradeDetails(
            direction=direction,
            entry_price=_round(value / qty, decimals) if qty else 0.0,
            exit_price=0.0,
            quantity=qty,
            pnl=0.0,
            is_open=True,
        )

    direction = trade_direction(legs)
    avg_buy = totals.buy_value / totals.buy_qty
    avg_sell = totals.sell_value / totals.sell_qty
    if direction == Direction.LONG:
        entry, exit_ = avg_buy, avg_sell
    else:
        entry, exit_ = avg_sell, avg_buy
    quantity = min(totals.buy_qty, totals.sell_qty)
    # Long and short both realize (sell - buy) per unit.
    pnl = (avg_sell - avg_buy) * quantity
    return TradeDetails(
        direction=direction,
        entry_price=_round(entry, decimals),
        exit_price=_round(exit_, decimals),
        quantity=quantity,
        pnl=_round(pnl, decimals),
    )


def calculate_overall_pnl(ledgers: Iterable[DailyLedger], decimals: int = 2) -> OverallPnL:
    """Aggregate P&L across all trades; mismatched trades are skipped and reported."""
    out = OverallPnL()
    total_buy = total_sell = 0.0
    for ledger in ledgers:
        for key in ledger.trade_keys():
            result = calculate_pnl_for_trade(ledger.trades[key].legs, decimals=12, trade_key=key)
            if isinstance(result, QuantityMismatch):
                logger.warning("Skipping trade in %s: %s", ledger.date or "ledger", result.message)
                out.skipped.append(result)
                continue
            total_buy += result.total_buy
            total_sell += result.total_sell
            out.total_qty += result.total_qty
            out.trade_count += 1
    out.total_buy = round(total_buy, decimals)
    out.total_sell = round(total_sell, decimals)
    out.pnl = round(total_sell - total_buy, decimals)
    out.type = _classify(out.pnl)
    return out


def _is_unset(value: float | None) -> bool:
    return value is None or value == 0


def validate_stop_loss(legs: Sequence[OrderLeg], stop_loss: float | None) -> float | None:
    """
    Check a user-supplied stop-loss against the trade's entry price.

    Longs need `stop_loss <= entry`, shorts need `stop_loss >= entry`.
    `None` and `0` mean "not set" and pass through as None.
    """
    if _is_unset(stop_loss):
        return None
    stop = float(stop_loss)
    if math.isnan(stop) or stop < 0:
        raise ValueError(f"stop_loss must be a non-negative number, got {stop_loss!r}")
    details = calculate_details(legs, decimals=None)
    if details is None:
        raise ValueError("Cannot validate a stop-loss for a trade without legs.")
    direction = trade_direction(legs)
    entry = details.entry_price
    if direction == Direction.LONG and stop > entry:
        raise InvalidStopLoss(str(direction), entry, stop)
    if direction == Direction.SHORT and stop < entry:
        raise InvalidStopLoss(str(direction), entry, stop)
    return stop


def evaluate_reward_risk(
    legs: Sequence[OrderLeg],
    stop_loss: float | None,
    target_price: float | None = None,
) -> RewardRisk:
    """Reward:risk per unit; reward is measured to the target, else to the realized exit."""
    if not legs:
        raise ValueError("Trade has no legs.")
    stop = validate_stop_loss(legs, stop_loss)
    details = calculate_details(legs, decimals=None)
    entry = details.entry_price
    target = None if _is_unset(target_price) else float(target_price)

    reference = target if target is not None else (details.exit_price or None)
    reward = abs(reference - entry) if reference is not None else None
    risk = abs(entry - stop) if stop is not None else None
    ratio: float | None = None
    if reward is not None and risk is not None:
        ratio = reward / risk if risk > 0 else math.inf
    return RewardRisk(
        direction=details.direction,
        entry_price=entry,
        stop_loss=stop,
        target_price=target,
        reward_per_unit=reward,
        risk_per_unit=risk,
        ratio=ratio,
    )
