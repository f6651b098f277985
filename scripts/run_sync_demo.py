"""Demonstrate a paper sync: two runs against a SQLite ledger, then journal metrics."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

from trade_journal_engine.config import EngineConfig, configure_logging
from trade_journal_engine.ingest import SourceCredential, StaticOrderFeed
from trade_journal_engine.ledger import SQLiteLedgerStore
from trade_journal_engine.live import AlertRouter
from trade_journal_engine.orchestration import SyncPipeline


def _row(order_id: str, symbol: str, side: str, qty: int, price: float, ts: str, status: str = "COMPLETE") -> dict:
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
    _row("B1", "INFY", "BUY", 10, 1500.0, "2025-08-18 09:20:00"),
    _row("B2", "INFY", "BUY", 5, 1502.5, "2025-08-18 09:25:00"),
    _row("S1", "INFY", "SELL", 12, 1510.0, "2025-08-18 09:40:00"),
    _row("X1", "TCS", "BUY", 0, 0.0, "2025-08-18 09:41:00", status="CANCELLED"),
    _row("S2", "INFY", "SELL", 3, 1498.0, "2025-08-18 09:55:00"),
    _row("T1", "TCS", "SELL", 4, 3420.0, "2025-08-18 10:02:00"),
]

AFTERNOON = [
    _row("T2", "TCS", "BUY", 4, 3401.0, "2025-08-18 13:15:00"),
]


async def _run(db_path: Path) -> None:
    config = EngineConfig()
    configure_logging(config.logging)
    store = SQLiteLedgerStore(db_path)
    feed = StaticOrderFeed("zerodha", MORNING)
    pipeline = SyncPipeline(
        store=store,
        feeds={"zerodha": feed},
        config=config,
        alert_router=AlertRouter.with_console_and_file("outputs/sync_alerts.jsonl"),
    )
    credential = SourceCredential(source="zerodha", access_token="paper", api_key="paper")
    now = datetime(2025, 8, 18, 9, 0, tzinfo=timezone.utc)

    first = await pipeline.sync("demo-user", "zerodha", credential, now=now)
    print("Run 1:", first.to_dict(), first.new_trade_keys)
    repeat = await pipeline.sync("demo-user", "zerodha", credential, now=now)
    print("Run 2 (unchanged feed):", repeat.to_dict(), repeat.outcome)

    feed.extend(AFTERNOON)
    merged = await pipeline.sync("demo-user", "zerodha", credential, now=now)
    print("Run 3 (afternoon fills):", merged.to_dict(), merged.new_trade_keys)

    missing = await pipeline.sync("demo-user", "zerodha", None, now=now)
    print("Run 4 (no session):", missing.to_dict())

    overall = await pipeline.overall_pnl("demo-user")
    print("Overall P&L:", overall.to_dict())
    print("Performance:", await pipeline.performance("demo-user"))


def main() -> None:
    db_path = Path("outputs/demo_journal.db")
    if db_path.exists():
        db_path.unlink()
    asyncio.run(_run(db_path))


if __name__ == "__main__":
    main()
