from __future__ import annotations

from datetime import datetime, timezone

import pytest

from trade_journal_engine.errors import FeedTruncated
from trade_journal_engine.ingest import (
    DhanAdapter,
    FyersAdapter,
    GrowwAdapter,
    KotakNeoAdapter,
    OrderNormalizer,
    ZerodhaAdapter,
    build_source_adapter,
    classify,
    validate_status_table,
)
from trade_journal_engine.types import MalformedOrder, Order, OrderStatus, Side


def _kite_row(**overrides) -> dict:
    row = {
        "order_id": "250818000001",
        "tradingsymbol": "INFY",
        "transaction_type": "BUY",
        "filled_quantity": 10,
        "average_price": 1500.5,
        "exchange_update_timestamp": "2025-08-18 09:20:00",
        "status": "COMPLETE",
    }
    row.update(overrides)
    return row


@pytest.mark.parametrize("raw", ["COMPLETE", "traded", "Filled", " placed ", "closed"])
def test_classify_complete_aliases_case_insensitive(raw: str) -> None:
    assert classify(raw) == OrderStatus.COMPLETE


def test_classify_cancelled_and_other() -> None:
    assert classify("cancelled") == OrderStatus.CANCELLED
    assert classify("CANCELED") == OrderStatus.CANCELLED
    assert classify("OPEN") == OrderStatus.OTHER
    assert classify(None) == OrderStatus.OTHER


def test_status_overrides_take_precedence_and_are_validated() -> None:
    assert classify("executed", {"EXECUTED": "COMPLETE"}) == OrderStatus.COMPLETE
    assert classify("PLACED", {"placed": "OTHER"}) == OrderStatus.OTHER
    with pytest.raises(ValueError):
        validate_status_table({"EXECUTED": "DONE"})


def test_zerodha_row_normalizes_to_canonical_order() -> None:
    order = ZerodhaAdapter().to_order(_kite_row())
    assert isinstance(order, Order)
    assert order.external_id == "250818000001"
    assert order.side == Side.BUY
    assert order.quantity == 10.0
    assert order.status == OrderStatus.COMPLETE
    # Naive broker times are exchange-local (IST, UTC+5:30).
    assert order.timestamp == datetime(2025, 8, 18, 3, 50, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"tradingsymbol": None}, "missing_symbol"),
        ({"filled_quantity": None}, "missing_quantity"),
        ({"average_price": ""}, "missing_price"),
        ({"average_price": "abc"}, "non_numeric_quantity_or_price"),
        ({"exchange_update_timestamp": "yesterday-ish"}, "bad_timestamp"),
        ({"transaction_type": "HOLD"}, "unknown_side"),
    ],
)
def test_malformed_rows_are_reported_not_raised(overrides: dict, reason: str) -> None:
    result = ZerodhaAdapter().to_order(_kite_row(**overrides))
    assert isinstance(result, MalformedOrder)
    assert result.reason.startswith(reason)
    assert result.external_id == "250818000001"


def test_normalize_batch_continues_past_bad_rows_and_skips_unfilled() -> None:
    normalizer = OrderNormalizer()
    rows = [
        _kite_row(order_id="A"),
        _kite_row(order_id="B", tradingsymbol=""),
        _kite_row(order_id="C", status="CANCELLED", filled_quantity=0, exchange_update_timestamp=None),
        _kite_row(order_id="D", transaction_type="SELL", average_price=1510.0),
    ]
    batch = normalizer.normalize_batch("zerodha", rows)
    assert [order.external_id for order in batch.orders] == ["A", "D"]
    assert [row.external_id for row in batch.malformed] == ["B"]
    assert batch.ignored == 1
    assert len(batch.completed()) == 2


def test_fyers_numeric_sides_and_implied_status() -> None:
    adapter = FyersAdapter()
    row = {
        "tradeNumber": "T-9",
        "symbol": "NSE:SBIN-EQ",
        "side": -1,
        "tradedQty": 25,
        "tradePrice": 812.4,
        "orderDateTime": "18-Aug-2025 10:04:02",
    }
    order = adapter.to_order(row)
    assert isinstance(order, Order)
    assert order.side == Side.SELL
    assert order.status == OrderStatus.COMPLETE
    assert order.timestamp == datetime(2025, 8, 18, 4, 34, 2, tzinfo=timezone.utc)


def test_groww_status_table_maps_executed() -> None:
    order = GrowwAdapter().to_order(
        {
            "groww_order_id": "GMK1",
            "trading_symbol": "TATAMOTORS",
            "transaction_type": "SELL",
            "filled_quantity": 3,
            "average_fill_price": 990.0,
            "created_at": "2025-08-18T11:00:00",
            "order_status": "EXECUTED",
        }
    )
    assert isinstance(order, Order)
    assert order.status == OrderStatus.COMPLETE


def test_kotak_single_letter_sides() -> None:
    order = KotakNeoAdapter().to_order(
        {
            "nOrdNo": "K1",
            "sym": "HDFCBANK",
            "trnsTp": "B",
            "fldQty": "4",
            "avgPrc": "1650.10",
            "ordDtTm": "18-Aug-2025 09:16:30",
            "ordSt": "complete",
        }
    )
    assert isinstance(order, Order)
    assert order.side == Side.BUY
    assert order.price == pytest.approx(1650.10)


def test_envelopes_fail_closed_on_truncated_payloads() -> None:
    assert ZerodhaAdapter().extract_records({"status": "success", "data": []}) == []
    with pytest.raises(FeedTruncated):
        ZerodhaAdapter().extract_records({"status": "error", "message": "TokenException"})
    with pytest.raises(FeedTruncated):
        ZerodhaAdapter().extract_records({"status": "success"})
    with pytest.raises(FeedTruncated):
        DhanAdapter().extract_records({"status": "failure", "remarks": "invalid token"})
    with pytest.raises(FeedTruncated):
        FyersAdapter().extract_records({"s": "ok", "tradeBook": "oops"})


def test_build_source_adapter_rejects_unknown_sources() -> None:
    assert isinstance(build_source_adapter("Kotak Neo"), KotakNeoAdapter)
    with pytest.raises(ValueError):
        build_source_adapter("robinhood")
