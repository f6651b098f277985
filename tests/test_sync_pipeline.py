from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json

from trade_journal_engine.config import EngineConfig, FetchConfig, PersistenceConfig
from trade_journal_engine.errors import AdapterFailure, FeedTruncated, PersistenceConflict
from trade_journal_engine.ingest import OrderFeed, SourceCredential, StaticOrderFeed
from trade_journal_engine.ledger import InMemoryLedgerStore, SQLiteLedgerStore
from trade_journal_engine.live import AlertRouter, AlertSeverity, ErrorKind, MemoryAlertSink, SyncOutcome
from trade_journal_engine.orchestration import SyncPipeline

NOW = datetime(2025, 8, 18, 12, 0, tzinfo=timezone.utc)
CREDENTIAL = SourceCredential(source="zerodha", access_token="tok", api_key="key")


def _row(order_id: str, side: str, qty: int, price: float, ts: str, symbol: str = "INFY", status: str = "COMPLETE") -> dict:
    return {
        "order_id": order_id,
        "tradingsymbol": symbol,
        "transaction_type": side,
        "filled_quantity": qty,
        "average_price": price,
        "exchange_update_timestamp": ts,
        "status": status,
    }


MORNING = [
    _row("B1", "BUY", 10, 100.0, "2025-08-18 09:00:00"),
    _row("B2", "BUY", 5, 100.0, "2025-08-18 09:05:00"),
    _row("S1", "SELL", 12, 110.0, "2025-08-18 09:10:00"),
    _row("S2", "SELL", 3, 108.0, "2025-08-18 09:15:00"),
]


class _FailingFeed(OrderFeed):
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def fetch_orders(self, credential):
        raise self.exc


class _SlowFeed(OrderFeed):
    async def fetch_orders(self, credential):
        await asyncio.sleep(5)
        return []


def _pipeline(feed: OrderFeed, store=None, config: EngineConfig | None = None):
    sink = MemoryAlertSink()
    pipeline = SyncPipeline(
        store=store or InMemoryLedgerStore(),
        feeds={"zerodha": feed},
        config=config or EngineConfig(),
        alert_router=AlertRouter(default_sinks=[sink]),
    )
    return pipeline, sink


def test_first_sync_creates_ledger_and_second_is_a_no_op() -> None:
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", MORNING), store)

    async def scenario() -> None:
        first = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert first.outcome == SyncOutcome.CREATED
        assert first.to_dict() == {"created": True, "newTradeCount": 2}
        assert first.new_trade_keys == ["TRADE_001", "TRADE_002"]
        writes_after_first = store.write_count

        second = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert second.outcome == SyncOutcome.NO_NEW_ORDERS
        assert second.to_dict() == {"noNewTrades": True}
        assert store.write_count == writes_after_first

    asyncio.run(scenario())


def test_new_fills_merge_without_touching_annotations(tmp_path) -> None:
    store = SQLiteLedgerStore(tmp_path / "journal.db")
    feed = StaticOrderFeed("zerodha", MORNING)
    pipeline, _ = _pipeline(feed, store)

    async def scenario() -> None:
        created = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        await pipeline.writer.annotate(
            created.ledger_id,
            "TRADE_001",
            stop_loss=95.0,
            feelings="confident",
            strategy="breakout",
            mistake="",
            chart_image="https://img/1.png",
            description="clean setup",
        )
        before = json.dumps((await store.get_ledger(created.ledger_id)).document["TRADE_001"], sort_keys=True)

        feed.extend(
            [
                _row("T1", "SELL", 4, 3420.0, "2025-08-18 13:00:00", symbol="TCS"),
                _row("T2", "BUY", 4, 3400.0, "2025-08-18 13:30:00", symbol="TCS"),
            ]
        )
        merged = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert merged.outcome == SyncOutcome.MERGED
        assert merged.ledger_id == created.ledger_id
        assert merged.new_trade_keys == ["TRADE_003"]

        document = (await store.get_ledger(created.ledger_id)).document
        assert json.dumps(document["TRADE_001"], sort_keys=True) == before
        assert [leg["id"] for leg in document["TRADE_003"]["orders"]] == ["T1", "T2"]

    asyncio.run(scenario())


def test_cancelled_rows_are_never_recorded() -> None:
    rows = [
        _row("B1", "BUY", 5, 100.0, "2025-08-18 09:00:00"),
        _row("S1", "SELL", 5, 101.0, "2025-08-18 09:01:00", status="CANCELLED"),
        _row("S2", "SELL", 5, 102.0, "2025-08-18 09:02:00"),
    ]
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", rows), store)

    async def scenario() -> None:
        result = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        ledger = (await store.get_ledger(result.ledger_id)).ledger
        assert ledger.external_ids() == {"B1", "S2"}

    asyncio.run(scenario())


def test_open_only_fills_report_no_new_trades_then_close_later() -> None:
    feed = StaticOrderFeed("zerodha", [_row("B1", "BUY", 5, 100.0, "2025-08-18 09:00:00")])
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(feed, store)

    async def scenario() -> None:
        opened = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert opened.outcome == SyncOutcome.NO_NEW_TRADES
        assert opened.to_dict() == {"noNewTrades": True}

        again = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert again.outcome == SyncOutcome.NO_NEW_ORDERS

        feed.extend([_row("S1", "SELL", 5, 104.0, "2025-08-18 14:00:00")])
        closed = await pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW)
        assert closed.outcome == SyncOutcome.CREATED
        assert closed.new_trade_keys == ["TRADE_001"]
        overall = await pipeline.overall_pnl("u1")
        assert overall.pnl == 20.0

    asyncio.run(scenario())


def test_missing_credential_is_distinct_from_failure() -> None:
    feed = StaticOrderFeed("zerodha", MORNING)
    pipeline, sink = _pipeline(feed)
    result = asyncio.run(pipeline.sync("u1", "zerodha", None, now=NOW))
    assert result.outcome == SyncOutcome.NO_CREDENTIAL
    assert result.to_dict() == {"error": str(ErrorKind.NO_CREDENTIAL)}
    assert feed.calls == 0
    assert sink.by_severity(AlertSeverity.WARNING)


def test_adapter_failure_aborts_before_any_write() -> None:
    store = InMemoryLedgerStore()
    pipeline, sink = _pipeline(_FailingFeed(AdapterFailure("zerodha", "HTTP 500")), store)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.outcome == SyncOutcome.FAILED
    assert result.error == ErrorKind.ADAPTER_FAILURE
    assert store.write_count == 0
    assert sink.by_severity(AlertSeverity.CRITICAL)


def test_truncated_feed_fails_closed() -> None:
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(_FailingFeed(FeedTruncated("zerodha", "no data field")), store)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.error == ErrorKind.FEED_TRUNCATED
    assert store.write_count == 0


def test_fetch_timeout_becomes_adapter_failure() -> None:
    config = EngineConfig(fetch=FetchConfig(timeout_seconds=0.05))
    pipeline, _ = _pipeline(_SlowFeed(), config=config)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.error == ErrorKind.ADAPTER_FAILURE
    assert "timed out" in result.message


def test_unregistered_source_fails_without_fetching() -> None:
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", MORNING))
    result = asyncio.run(pipeline.sync("u1", "dhan", CREDENTIAL, now=NOW))
    assert result.error == ErrorKind.ADAPTER_FAILURE


class _ConflictingStore(InMemoryLedgerStore):
    """Simulates another writer landing between snapshot and write."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def create_ledger(self, user_id, ledger, positions=None):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise PersistenceConflict("concurrent create")
        return await super().create_ledger(user_id, ledger, positions)


def test_conflicts_are_retried_from_a_fresh_read() -> None:
    store = _ConflictingStore(conflicts=1)
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", MORNING), store)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.outcome == SyncOutcome.CREATED
    assert result.attempts == 2


def test_persistent_conflicts_abort_the_sync() -> None:
    store = _ConflictingStore(conflicts=10)
    config = EngineConfig(persistence=PersistenceConfig(max_conflict_retries=2))
    pipeline, sink = _pipeline(StaticOrderFeed("zerodha", MORNING), store, config)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.outcome == SyncOutcome.FAILED
    assert result.error == ErrorKind.SYNC_ABORTED
    assert result.attempts == 3
    assert "concurrent create" in result.message
    assert store.write_count == 0
    assert sink.by_severity(AlertSeverity.CRITICAL)


def test_concurrent_runs_for_the_same_day_do_not_double_insert() -> None:
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", MORNING), store)

    async def scenario():
        return await asyncio.gather(
            pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW),
            pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW),
        )

    results = asyncio.run(scenario())
    assert sorted(str(result.outcome) for result in results) == sorted(
        [str(SyncOutcome.CREATED), str(SyncOutcome.NO_NEW_ORDERS)]
    )
    ledgers = asyncio.run(store.list_ledgers("u1"))
    assert len(ledgers) == 1
    assert ledgers[0].ledger.trade_keys() == ["TRADE_001", "TRADE_002"]
    assert pipeline._locks == {}


def test_other_days_orders_are_left_out_of_todays_ledger() -> None:
    rows = [
        _row("Y1", "BUY", 5, 100.0, "2025-08-17 15:00:00"),
        _row("Y2", "SELL", 5, 101.0, "2025-08-17 15:10:00"),
        *MORNING,
    ]
    store = InMemoryLedgerStore()
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", rows), store)
    result = asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    assert result.date == "2025-08-18"
    ledger = asyncio.run(store.get_ledger(result.ledger_id)).ledger
    assert "Y1" not in ledger.external_ids()


def test_overall_pnl_uses_configured_price_decimals() -> None:
    rows = [
        _row("P1", "BUY", 1, 100.0, "2025-08-18 09:00:00"),
        _row("P2", "SELL", 1, 100.1234, "2025-08-18 09:30:00"),
    ]
    config = EngineConfig(price_decimals=4)
    pipeline, _ = _pipeline(StaticOrderFeed("zerodha", rows), config=config)
    asyncio.run(pipeline.sync("u1", "zerodha", CREDENTIAL, now=NOW))
    overall = asyncio.run(pipeline.overall_pnl("u1"))
    assert overall.pnl == 0.1234
    stats = asyncio.run(pipeline.performance("u1"))
    assert stats["total_pnl"] == 0.1234
