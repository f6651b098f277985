"""Create-or-merge persistence of matched trades into the daily ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any

from trade_journal_engine.analytics.metrics import validate_stop_loss
from trade_journal_engine.config import EngineConfig
from trade_journal_engine.matching.fifo import MatchResult, match_orders
from trade_journal_engine.matching.positions import OpenPosition
from trade_journal_engine.types import DailyLedger, Order, next_trade_number

from .store import LedgerStore, PositionsUpdate, StoredLedger, StoredPositions

logger = logging.getLogger(__name__)


class WriteOutcome(StrEnum):
    CREATED = "created"
    MERGED = "merged"
    NOTHING = "nothing"


@dataclass(slots=True)
class WriteResult:
    outcome: WriteOutcome
    ledger_id: str | None = None
    date: str | None = None
    trade_keys: list[str] = field(default_factory=list)
    positions_saved: bool = False


class LedgerWriter:
    """
    Matches a delta batch and persists it in one atomic write.

    Without a ledger for the day a new one is created with keys starting at 1;
    otherwise keys continue after the highest existing key and the trades are
    applied as an additive merge patch. Updated open positions travel in the
    same write.
    """

    def __init__(self, store: LedgerStore, config: EngineConfig | None = None) -> None:
        self.store = store
        self.config = config or EngineConfig()

    def match(
        self,
        orders: list[Order],
        existing: StoredLedger | None,
        positions: dict[str, OpenPosition],
    ) -> MatchResult:
        start = 1 if existing is None else next_trade_number(existing.ledger.last_trade_key())
        return match_orders(
            orders,
            start_number=start,
            open_positions=positions if self.config.carry_open_positions else None,
            timezone=self.config.timezone,
            key_prefix=self.config.trade_key_prefix,
            key_width=self.config.trade_key_width,
        )

    def _positions_update(self, result: MatchResult, stored: StoredPositions) -> PositionsUpdate | None:
        if not self.config.carry_open_positions:
            return None
        return PositionsUpdate(positions=result.open_positions, expected_version=stored.version)

    async def write(
        self,
        user_id: str,
        orders: list[Order],
        existing: StoredLedger | None,
        positions: StoredPositions,
    ) -> WriteResult:
        result = self.match(orders, existing, positions.positions)
        update = self._positions_update(result, positions)

        if result.date is None:
            return WriteResult(outcome=WriteOutcome.NOTHING)

        if result.is_empty:
            # Fills only opened or extended positions; record them so they are not re-fed.
            if update is not None and result.open_positions != positions.positions:
                await self.store.save_open_positions(user_id, update)
                logger.info("Carried %d open position(s) for %s", len(result.open_positions), user_id)
                return WriteResult(outcome=WriteOutcome.NOTHING, date=result.date, positions_saved=True)
            return WriteResult(outcome=WriteOutcome.NOTHING, date=result.date)

        keys = list(result.trades)
        if existing is None:
            ledger = DailyLedger(date=result.date, trades=result.trades)
            ledger_id = await self.store.create_ledger(user_id, ledger, update)
            logger.info("Created ledger %s for %s on %s with %d trade(s)", ledger_id, user_id, result.date, len(keys))
            return WriteResult(
                outcome=WriteOutcome.CREATED,
                ledger_id=ledger_id,
                date=result.date,
                trade_keys=keys,
                positions_saved=update is not None,
            )

        await self.store.merge_patch(existing.ledger_id, result.trades, existing.version, update)
        logger.info("Merged %d trade(s) into ledger %s (%s..%s)", len(keys), existing.ledger_id, keys[0], keys[-1])
        return WriteResult(
            outcome=WriteOutcome.MERGED,
            ledger_id=existing.ledger_id,
            date=existing.date or result.date,
            trade_keys=keys,
            positions_saved=update is not None,
        )

    async def annotate(self, ledger_id: str, trade_key: str, **fields: Any) -> int:
        """Update journal annotations of one trade; the stop-loss is validated first."""
        stored = await self.store.get_ledger(ledger_id)
        trade = stored.ledger.trades.get(trade_key)
        if trade is None:
            raise KeyError(f"Unknown trade {trade_key} in ledger {ledger_id}")
        if "stop_loss" in fields:
            stop = validate_stop_loss(trade.legs, fields["stop_loss"])
            fields["stop_loss"] = 0.0 if stop is None else stop
        return await self.store.update_annotations(ledger_id, trade_key, fields)
