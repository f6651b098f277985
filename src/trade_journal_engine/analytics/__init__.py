"""Read-side P&L metrics and journal summaries."""

from .metrics import (
    Direction,
    OverallPnL,
    PnLType,
    QuantityMismatch,
    RewardRisk,
    TradeDetails,
    TradePnL,
    calculate_details,
    calculate_overall_pnl,
    calculate_pnl_for_trade,
    evaluate_reward_risk,
    trade_direction,
    validate_stop_loss,
)
from .summary import performance_summary, summarize_trades

__all__ = [
    "Direction",
    "OverallPnL",
    "PnLType",
    "QuantityMismatch",
    "RewardRisk",
    "TradeDetails",
    "TradePnL",
    "calculate_details",
    "calculate_overall_pnl",
    "calculate_pnl_for_trade",
    "evaluate_reward_risk",
    "performance_summary",
    "summarize_trades",
    "trade_direction",
    "validate_stop_loss",
]
