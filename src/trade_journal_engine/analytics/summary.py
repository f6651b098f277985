"""Tabular trade summaries and journal performance statistics."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import numpy as np
import pandas as pd

from trade_journal_engine.types import DailyLedger

from .metrics import QuantityMismatch, calculate_details, calculate_pnl_for_trade

SUMMARY_COLUMNS = [
    "date",
    "trade_key",
    "symbol",
    "direction",
    "entry_price",
    "exit_price",
    "quantity",
    "pnl",
    "pnl_type",
    "opened_at",
    "closed_at",
    "holding_minutes",
    "stop_loss",
    "target_price",
    "strategy",
    "mistake",
    "feelings",
]


def summarize_trades(ledgers: Iterable[DailyLedger], decimals: int = 2) -> pd.DataFrame:
    """
    One row per recorded round trip.

    Trades failing the quantity invariant keep their row with `pnl` NaN and
    `pnl_type` INVALID so they stay visible in the journal.
    """
    rows: list[dict[str, Any]] = []
    for ledger in ledgers:
        for key in ledger.trade_keys():
            trade = ledger.trades[key]
            if not trade.legs:
                continue
            details = calculate_details(trade.legs, decimals=decimals)
            pnl = calculate_pnl_for_trade(trade.legs, decimals=decimals, trade_key=key)
            timestamps = [leg.timestamp for leg in trade.legs]
            rows.append(
                {
                    "date": ledger.date,
                    "trade_key": key,
                    "symbol": trade.symbol,
                    "direction": str(details.direction) if details else None,
                    "entry_price": details.entry_price if details else np.nan,
                    "exit_price": details.exit_price if details else np.nan,
                    "quantity": details.quantity if details else np.nan,
                    "pnl": np.nan if isinstance(pnl, QuantityMismatch) else pnl.pnl,
                    "pnl_type": str(pnl.type),
                    "opened_at": min(timestamps),
                    "closed_at": max(timestamps),
                    "stop_loss": trade.stop_loss or np.nan,
                    "target_price": trade.target_price or np.nan,
                    "strategy": trade.strategy,
                    "mistake": trade.mistake,
                    "feelings": trade.feelings,
                }
            )
    if not rows:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)
    frame = pd.DataFrame(rows)
    frame["opened_at"] = pd.to_datetime(frame["opened_at"], utc=True)
    frame["closed_at"] = pd.to_datetime(frame["closed_at"], utc=True)
    frame["holding_minutes"] = (frame["closed_at"] - frame["opened_at"]).dt.total_seconds() / 60.0
    return frame[SUMMARY_COLUMNS].sort_values(["date", "closed_at", "trade_key"]).reset_index(drop=True)


def _grouped_pnl(frame: pd.DataFrame, column: str) -> dict[str, float]:
    labelled = frame.assign(**{column: frame[column].replace("", "unlabelled").fillna("unlabelled")})
    grouped = labelled.groupby(column)["pnl"].sum().sort_values(ascending=False)
    return {str(k): float(v) for k, v in grouped.items()}


def performance_summary(frame: pd.DataFrame, decimals: int = 2) -> dict[str, Any]:
    """Win/loss statistics over the valid (non-mismatched) rows of a summary frame."""
    valid = frame[frame["pnl"].notna()] if not frame.empty else frame
    if valid.empty:
        return {
            "trade_count": 0,
            "wins": 0,
            "losses": 0,
            "win_rate": np.nan,
            "total_pnl": 0.0,
            "average_win": np.nan,
            "average_loss": np.nan,
            "max_profit": np.nan,
            "max_loss": np.nan,
            "profit_factor": np.nan,
            "expectancy": np.nan,
            "invalid_trades": int(len(frame)),
            "pnl_by_symbol": {},
            "pnl_by_strategy": {},
            "pnl_by_weekday": {},
            "pnl_by_direction": {},
        }
    pnl = valid["pnl"].astype(float)
    winners = pnl[pnl > 0]
    losers = pnl[pnl < 0]
    gross_loss = float(losers.sum())
    return {
        "trade_count": int(len(pnl)),
        "wins": int(len(winners)),
        "losses": int(len(losers)),
        "win_rate": float((pnl > 0).mean()),
        "total_pnl": float(np.round(pnl.sum(), decimals)),
        "average_win": float(winners.mean()) if len(winners) else np.nan,
        "average_loss": float(losers.mean()) if len(losers) else np.nan,
        "max_profit": float(pnl.max()),
        "max_loss": float(pnl.min()),
        "profit_factor": float(winners.sum() / abs(gross_loss)) if gross_loss != 0 else np.nan,
        "expectancy": float(pnl.mean()),
        "invalid_trades": int(len(frame) - len(valid)),
        "pnl_by_symbol": _grouped_pnl(valid, "symbol"),
        "pnl_by_strategy": _grouped_pnl(valid, "strategy"),
        "pnl_by_weekday": _grouped_pnl(valid.assign(weekday=pd.to_datetime(valid["date"]).dt.day_name()), "weekday"),
        "pnl_by_direction": _grouped_pnl(valid, "direction"),
    }
