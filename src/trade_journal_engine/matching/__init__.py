"""Delta filtering, FIFO matching and open-position state."""

from .delta import SyncSnapshot, build_snapshot, diff
from .fifo import (
    MatchResult,
    SymbolBook,
    apply_order,
    flush_partial,
    match_orders,
    pop_front,
    push_back,
    push_front,
)
from .positions import (
    OpenLot,
    OpenPosition,
    position_fill_ids,
    positions_from_dict,
    positions_to_dict,
)

__all__ = [
    "MatchResult",
    "OpenLot",
    "OpenPosition",
    "SymbolBook",
    "SyncSnapshot",
    "apply_order",
    "build_snapshot",
    "diff",
    "flush_partial",
    "match_orders",
    "pop_front",
    "position_fill_ids",
    "positions_from_dict",
    "positions_to_dict",
    "push_back",
    "push_front",
]
