"""Delta/dedup filtering of freshly fetched orders against recorded ones."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from trade_journal_engine.types import DailyLedger, Order, OrderStatus

from .positions import OpenPosition, position_fill_ids


@dataclass(frozen=True, slots=True)
class SyncSnapshot:
    """External ids already recorded for a user, read before any write."""

    external_ids: frozenset[str] = field(default_factory=frozenset)

    def __contains__(self, external_id: object) -> bool:
        return external_id in self.external_ids

    def __len__(self) -> int:
        return len(self.external_ids)


def build_snapshot(
    ledgers: Iterable[DailyLedger],
    open_positions: dict[str, OpenPosition] | None = None,
) -> SyncSnapshot:
    ids: set[str] = set()
    for ledger in ledgers:
        ids |= ledger.external_ids()
    if open_positions:
        ids |= position_fill_ids(open_positions)
    return SyncSnapshot(frozenset(ids))


def diff(previous_external_ids: Iterable[str], current_orders: Iterable[Order]) -> list[Order]:
    """
    Return current orders that are neither recorded nor cancelled.

    Identity is the upstream external id, not the order's values; a repeated
    id inside `current_orders` is kept only once: the first COMPLETE row,
    else the first row. A later COMPLETE row takes the place of an earlier
    partial one.
    """
    recorded = set(previous_external_ids)
    slots: dict[str, int] = {}
    out: list[Order] = []
    for order in current_orders:
        if order.status == OrderStatus.CANCELLED or order.external_id in recorded:
            continue
        index = slots.get(order.external_id)
        if index is None:
            slots[order.external_id] = len(out)
            out.append(order)
        elif order.status == OrderStatus.COMPLETE and out[index].status != OrderStatus.COMPLETE:
            out[index] = order
    return out
