from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from trade_journal_engine.errors import InvalidStopLoss, PersistenceConflict
from trade_journal_engine.ledger import (
    InMemoryLedgerStore,
    LedgerWriter,
    PositionsUpdate,
    SQLiteLedgerStore,
    StoredPositions,
    WriteOutcome,
    build_ledger_store,
)
from trade_journal_engine.matching import OpenLot, OpenPosition
from trade_journal_engine.types import DailyLedger, Order, OrderLeg, RoundTripTrade, Side

T0 = datetime(2025, 8, 18, 4, 0, tzinfo=timezone.utc)


def _leg(external_id: str, side: Side, quantity: float = 10.0, price: float = 100.0, minutes: int = 0) -> OrderLeg:
    return OrderLeg(external_id, "INFY", side, quantity, price, T0 + timedelta(minutes=minutes))


def _trade(key: str, buy_id: str, sell_id: str) -> RoundTripTrade:
    return RoundTripTrade(key=key, symbol="INFY", legs=[_leg(buy_id, Side.BUY), _leg(sell_id, Side.SELL, minutes=1)])


def _order(external_id: str, side: Side, minutes: int, quantity: float = 10.0, price: float = 100.0) -> Order:
    return Order(external_id, "INFY", side, quantity, price, T0 + timedelta(minutes=minutes), "COMPLETE")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryLedgerStore()
    return SQLiteLedgerStore(tmp_path / "journal.db")


def test_create_and_read_back(store) -> None:
    async def scenario() -> None:
        ledger = DailyLedger(date="2025-08-18", trades={"TRADE_001": _trade("TRADE_001", "B1", "S1")})
        ledger_id = await store.create_ledger("u1", ledger)
        stored = await store.get_today_ledger("u1", "2025-08-18")
        assert stored is not None
        assert stored.ledger_id == ledger_id
        assert stored.version == 1
        assert stored.ledger.external_ids() == {"B1", "S1"}
        assert await store.get_today_ledger("u1", "2025-08-19") is None
        assert await store.get_today_ledger("u2", "2025-08-18") is None
        with pytest.raises(PersistenceConflict):
            await store.create_ledger("u1", DailyLedger(date="2025-08-18"))

    asyncio.run(scenario())


def test_merge_is_additive_and_version_checked(store) -> None:
    async def scenario() -> None:
        ledger = DailyLedger(date="2025-08-18", trades={"TRADE_001": _trade("TRADE_001", "B1", "S1")})
        ledger_id = await store.create_ledger("u1", ledger)
        await store.update_annotations(ledger_id, "TRADE_001", {"feelings": "calm", "chart_image": "c.png"})
        before = (await store.get_ledger(ledger_id)).document["TRADE_001"]

        version = await store.merge_patch(ledger_id, {"TRADE_002": _trade("TRADE_002", "B2", "S2")}, expected_version=2)
        assert version == 3
        stored = await store.get_ledger(ledger_id)
        assert stored.document["TRADE_001"] == before
        assert stored.document["TRADE_001"]["chartImage"] == "c.png"
        assert stored.ledger.trade_keys() == ["TRADE_001", "TRADE_002"]

        with pytest.raises(PersistenceConflict):
            await store.merge_patch(ledger_id, {"TRADE_003": _trade("TRADE_003", "B3", "S3")}, expected_version=2)
        with pytest.raises(PersistenceConflict):
            await store.merge_patch(ledger_id, {"TRADE_002": _trade("TRADE_002", "B9", "S9")}, expected_version=3)
        after = await store.get_ledger(ledger_id)
        assert after.version == 3
        assert after.ledger.trade_keys() == ["TRADE_001", "TRADE_002"]

    asyncio.run(scenario())


def test_open_positions_commit_with_the_ledger(store) -> None:
    lot = OpenLot("B5", "INFY", Side.BUY, 100.0, T0, 3.0)
    positions = {"INFY": OpenPosition("INFY", Side.BUY, (lot,))}

    async def scenario() -> None:
        ledger = DailyLedger(date="2025-08-18", trades={"TRADE_001": _trade("TRADE_001", "B1", "S1")})
        await store.create_ledger("u1", ledger, PositionsUpdate(positions, expected_version=0))
        stored = await store.get_open_positions("u1")
        assert stored.version == 1
        assert stored.positions == positions

        with pytest.raises(PersistenceConflict):
            await store.save_open_positions("u1", PositionsUpdate({}, expected_version=0))
        assert await store.save_open_positions("u1", PositionsUpdate({}, expected_version=1)) == 2
        assert (await store.get_open_positions("u1")).positions == {}

    asyncio.run(scenario())


def test_rejected_merge_leaves_positions_untouched(store) -> None:
    async def scenario() -> None:
        ledger_id = await store.create_ledger("u1", DailyLedger(date="2025-08-18", trades={"TRADE_001": _trade("TRADE_001", "B1", "S1")}))
        lot = OpenLot("B7", "INFY", Side.BUY, 100.0, T0, 1.0)
        update = PositionsUpdate({"INFY": OpenPosition("INFY", Side.BUY, (lot,))}, expected_version=5)
        with pytest.raises(PersistenceConflict):
            await store.merge_patch(ledger_id, {"TRADE_002": _trade("TRADE_002", "B2", "S2")}, 1, update)
        assert (await store.get_ledger(ledger_id)).ledger.trade_keys() == ["TRADE_001"]
        assert (await store.get_open_positions("u1")).positions == {}

    asyncio.run(scenario())


def test_update_annotations_rejects_leg_fields(store) -> None:
    async def scenario() -> None:
        ledger_id = await store.create_ledger("u1", DailyLedger(date="2025-08-18", trades={"TRADE_001": _trade("TRADE_001", "B1", "S1")}))
        with pytest.raises(ValueError):
            await store.update_annotations(ledger_id, "TRADE_001", {"orders": []})
        with pytest.raises(KeyError):
            await store.update_annotations(ledger_id, "TRADE_404", {"feelings": "x"})

    asyncio.run(scenario())


def test_writer_creates_then_merges_with_continuing_keys() -> None:
    store = InMemoryLedgerStore()
    writer = LedgerWriter(store)

    async def scenario() -> None:
        first = await writer.write("u1", [_order("B1", Side.BUY, 0), _order("S1", Side.SELL, 5)], None, StoredPositions())
        assert first.outcome == WriteOutcome.CREATED
        assert first.trade_keys == ["TRADE_001"]

        existing = await store.get_today_ledger("u1", first.date)
        positions = await store.get_open_positions("u1")
        second = await writer.write("u1", [_order("B2", Side.BUY, 30), _order("S2", Side.SELL, 35)], existing, positions)
        assert second.outcome == WriteOutcome.MERGED
        assert second.trade_keys == ["TRADE_002"]
        assert store.write_count == 2

    asyncio.run(scenario())


def test_writer_records_open_only_fills_as_positions() -> None:
    store = InMemoryLedgerStore()
    writer = LedgerWriter(store)

    async def scenario() -> None:
        result = await writer.write("u1", [_order("B1", Side.BUY, 0)], None, StoredPositions())
        assert result.outcome == WriteOutcome.NOTHING
        assert result.positions_saved
        assert await store.list_ledgers("u1") == []
        assert (await store.get_open_positions("u1")).positions["INFY"].contributing_fills == ["B1"]

    asyncio.run(scenario())


def test_writer_annotate_validates_stop_loss() -> None:
    store = InMemoryLedgerStore()
    writer = LedgerWriter(store)

    async def scenario() -> None:
        result = await writer.write("u1", [_order("B1", Side.BUY, 0), _order("S1", Side.SELL, 5, price=110.0)], None, StoredPositions())
        with pytest.raises(InvalidStopLoss):
            await writer.annotate(result.ledger_id, "TRADE_001", stop_loss=105.0)
        await writer.annotate(result.ledger_id, "TRADE_001", stop_loss=95.0, strategy="ORB", mistake="late entry")
        trade = (await store.get_ledger(result.ledger_id)).ledger.trades["TRADE_001"]
        assert trade.stop_loss == 95.0
        assert trade.strategy == "ORB"
        assert trade.mistake == "late entry"

    asyncio.run(scenario())


def test_build_ledger_store_factory(tmp_path) -> None:
    assert isinstance(build_ledger_store("memory"), InMemoryLedgerStore)
    assert isinstance(build_ledger_store("SQLite", str(tmp_path / "j.db")), SQLiteLedgerStore)
    with pytest.raises(ValueError):
        build_ledger_store("sqlite")
    with pytest.raises(ValueError):
        build_ledger_store("firestore")
