"""Per-broker source adapters producing the canonical Order."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
import hashlib
import hmac
import math
import time
from typing import Any
import urllib.parse

from trade_journal_engine.errors import FeedTruncated
from trade_journal_engine.time_utils import parse_fill_timestamp
from trade_journal_engine.types import MalformedOrder, Order, OrderStatus, Side

from .status import classify, validate_status_table


class SourceKind(StrEnum):
    ZERODHA = "zerodha"
    UPSTOX = "upstox"
    DHAN = "dhan"
    FYERS = "fyers"
    ANGEL_ONE = "angel_one"
    GROWW = "groww"
    KOTAK_NEO = "kotak_neo"
    DELTA_EXCHANGE = "delta_exchange"


@dataclass(slots=True)
class SourceCredential:
    """Session material handed over by the auth collaborator."""

    source: str
    access_token: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    client_id: str | None = None
    session_id: str | None = None
    session_token: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class FieldMap:
    """Raw field names for the canonical order attributes."""

    external_id: str
    symbol: str
    side: str
    quantity: str
    price: str
    timestamp: str
    status: str | None


DEFAULT_SIDE_CODES: dict[str, Side] = {
    "BUY": Side.BUY,
    "SELL": Side.SELL,
    "B": Side.BUY,
    "S": Side.SELL,
}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return isinstance(value, float) and math.isnan(value)


class BaseSourceAdapter:
    """Maps one broker's order-book schema onto the canonical Order."""

    kind: SourceKind
    field_map: FieldMap
    orders_url: str = ""
    naive_timezone: str = "Asia/Kolkata"
    side_codes: Mapping[str, Side] = DEFAULT_SIDE_CODES
    status_table: Mapping[str, OrderStatus] = {}
    # Status assumed when the feed only lists executed fills.
    implied_status: str | None = None

    def __init__(
        self,
        status_overrides: Mapping[str, str] | None = None,
        naive_timezone: str | None = None,
    ) -> None:
        table = dict(self.status_table)
        if status_overrides:
            table.update(validate_status_table(status_overrides))
        self.statuses = table
        if naive_timezone is not None:
            self.naive_timezone = naive_timezone

    @property
    def source_id(self) -> str:
        return str(self.kind)

    # -- response envelope -------------------------------------------------

    def extract_records(self, payload: Any) -> list[dict[str, Any]]:
        """Return the raw order rows from a decoded order-book response."""
        rows = self._extract_rows(payload)
        if rows is None:
            return []
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise FeedTruncated(self.source_id, "order list missing or not a list of objects")
        return rows

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict):
            raise FeedTruncated(self.source_id, "unexpected response envelope")
        status = str(payload.get("status", "")).lower()
        if status != "success":
            raise FeedTruncated(self.source_id, f"response status {payload.get('status')!r}")
        if "data" not in payload:
            raise FeedTruncated(self.source_id, "response has no 'data' field")
        return payload["data"]

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential.access_token}"}

    # -- record mapping ----------------------------------------------------

    def raw_status(self, raw: Mapping[str, Any]) -> str:
        if self.field_map.status is None:
            return self.implied_status or ""
        value = raw.get(self.field_map.status)
        if _is_missing(value) and self.implied_status is not None:
            return self.implied_status
        return "" if value is None else str(value)

    def classify_status(self, raw_status: str) -> OrderStatus:
        return classify(raw_status, self.statuses)

    def parse_side(self, value: Any) -> Side | None:
        if _is_missing(value):
            return None
        return self.side_codes.get(str(value).strip().upper())

    def is_unfilled(self, raw: Mapping[str, Any]) -> bool:
        """True for non-complete rows that carry no executed quantity."""
        if self.classify_status(self.raw_status(raw)) == OrderStatus.COMPLETE:
            return False
        value = raw.get(self.field_map.quantity)
        if _is_missing(value):
            return True
        try:
            return float(value) <= 0.0
        except (TypeError, ValueError):
            return False

    def to_order(self, raw: Mapping[str, Any]) -> Order | MalformedOrder:
        fmap = self.field_map
        raw_id = raw.get(fmap.external_id)
        external_id = None if _is_missing(raw_id) else str(raw_id)

        def malformed(reason: str) -> MalformedOrder:
            return MalformedOrder(source=self.source_id, reason=reason, external_id=external_id, raw=dict(raw))

        if external_id is None:
            return malformed("missing_external_id")
        symbol = raw.get(fmap.symbol)
        if _is_missing(symbol):
            return malformed("missing_symbol")
        side = self.parse_side(raw.get(fmap.side))
        if side is None:
            return malformed(f"unknown_side:{raw.get(fmap.side)!r}")

        raw_qty, raw_price = raw.get(fmap.quantity), raw.get(fmap.price)
        if _is_missing(raw_qty):
            return malformed("missing_quantity")
        if _is_missing(raw_price):
            return malformed("missing_price")
        try:
            quantity = float(raw_qty)
            price = float(raw_price)
        except (TypeError, ValueError):
            return malformed("non_numeric_quantity_or_price")
        if not math.isfinite(quantity) or quantity <= 0.0:
            return malformed("non_positive_quantity")
        if not math.isfinite(price) or price < 0.0:
            return malformed("negative_price")

        try:
            timestamp = parse_fill_timestamp(raw.get(fmap.timestamp), self.naive_timezone)
        except ValueError as exc:
            return malformed(f"bad_timestamp:{exc}")

        raw_status = self.raw_status(raw)
        return Order(
            external_id=external_id,
            symbol=str(symbol).strip(),
            side=side,
            quantity=quantity,
            price=price,
            timestamp=timestamp,
            raw_status=raw_status,
            status=self.classify_status(raw_status),
            source=self.source_id,
        )


class ZerodhaAdapter(BaseSourceAdapter):
    """Kite Connect order book."""

    kind = SourceKind.ZERODHA
    orders_url = "https://api.kite.trade/orders"
    field_map = FieldMap(
        external_id="order_id",
        symbol="tradingsymbol",
        side="transaction_type",
        quantity="filled_quantity",
        price="average_price",
        timestamp="exchange_update_timestamp",
        status="status",
    )

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {
            "X-Kite-Version": "3",
            "Authorization": f"token {credential.api_key}:{credential.access_token}",
        }


class UpstoxAdapter(BaseSourceAdapter):
    kind = SourceKind.UPSTOX
    orders_url = "https://api.upstox.com/v2/order/retrieve-all"
    field_map = FieldMap(
        external_id="order_ref_id",
        symbol="tradingsymbol",
        side="transaction_type",
        quantity="filled_quantity",
        price="average_price",
        timestamp="exchange_timestamp",
        status="status",
    )


class DhanAdapter(BaseSourceAdapter):
    """Dhan v2 returns a bare JSON list of orders."""

    kind = SourceKind.DHAN
    orders_url = "https://api.dhan.co/v2/orders"
    field_map = FieldMap(
        external_id="orderId",
        symbol="tradingSymbol",
        side="transactionType",
        quantity="filledQty",
        price="averageTradedPrice",
        timestamp="exchangeTime",
        status="orderStatus",
    )

    def _extract_rows(self, payload: Any) -> Any:
        if isinstance(payload, dict):
            if str(payload.get("status", "")).lower() in {"failure", "error"}:
                raise FeedTruncated(self.source_id, str(payload.get("remarks") or payload.get("errorMessage")))
            raise FeedTruncated(self.source_id, "expected a list of orders")
        return payload

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {"access-token": str(credential.access_token)}


class FyersAdapter(BaseSourceAdapter):
    """Fyers tradebook: executed trades only, side encoded as 1 / -1."""

    kind = SourceKind.FYERS
    orders_url = "https://api-t1.fyers.in/api/v3/tradebook"
    implied_status = "COMPLETE"
    side_codes = {**DEFAULT_SIDE_CODES, "1": Side.BUY, "-1": Side.SELL}
    field_map = FieldMap(
        external_id="tradeNumber",
        symbol="symbol",
        side="side",
        quantity="tradedQty",
        price="tradePrice",
        timestamp="orderDateTime",
        status=None,
    )

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get("s") != "ok":
            raise FeedTruncated(self.source_id, "tradebook response not ok")
        if "tradeBook" not in payload:
            raise FeedTruncated(self.source_id, "response has no 'tradeBook' field")
        return payload["tradeBook"]

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {"Authorization": f"{credential.client_id}:{credential.access_token}"}


class AngelOneAdapter(BaseSourceAdapter):
    kind = SourceKind.ANGEL_ONE
    orders_url = "https://apiconnect.angelone.in/rest/secure/angelbroking/order/v1/getOrderBook"
    field_map = FieldMap(
        external_id="orderid",
        symbol="tradingsymbol",
        side="transactiontype",
        quantity="filledshares",
        price="averageprice",
        timestamp="updatetime",
        status="status",
    )

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get("status") is not True:
            raise FeedTruncated(self.source_id, "order book response not successful")
        if "data" not in payload:
            raise FeedTruncated(self.source_id, "response has no 'data' field")
        # An empty book is reported as data=null.
        return payload["data"]

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "X-PrivateKey": str(credential.api_key),
            "X-UserType": "USER",
            "X-SourceID": "WEB",
        }


class GrowwAdapter(BaseSourceAdapter):
    kind = SourceKind.GROWW
    orders_url = "https://api.groww.in/v1/order/list"
    status_table = {
        "EXECUTED": OrderStatus.COMPLETE,
        "COMPLETED": OrderStatus.COMPLETE,
    }
    field_map = FieldMap(
        external_id="groww_order_id",
        symbol="trading_symbol",
        side="transaction_type",
        quantity="filled_quantity",
        price="average_fill_price",
        timestamp="created_at",
        status="order_status",
    )

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or str(payload.get("status", "")).upper() != "SUCCESS":
            raise FeedTruncated(self.source_id, "order list response not successful")
        body = payload.get("payload")
        if not isinstance(body, dict) or "order_list" not in body:
            raise FeedTruncated(self.source_id, "response has no 'payload.order_list'")
        return body["order_list"]

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "X-API-VERSION": "1.0",
        }


class KotakNeoAdapter(BaseSourceAdapter):
    """Kotak Neo order report; side encoded as B / S."""

    kind = SourceKind.KOTAK_NEO
    orders_url = "https://gw-napi.kotaksecurities.com/Orders/2.0/quick/user/orders?sld=server1"
    field_map = FieldMap(
        external_id="nOrdNo",
        symbol="sym",
        side="trnsTp",
        quantity="fldQty",
        price="avgPrc",
        timestamp="ordDtTm",
        status="ordSt",
    )

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or str(payload.get("stat", "")).lower() != "ok":
            raise FeedTruncated(self.source_id, "order report response not ok")
        if "data" not in payload:
            raise FeedTruncated(self.source_id, "response has no 'data' field")
        return payload["data"]

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Sid": str(credential.session_id),
            "Auth": str(credential.session_token),
            "neo-fin-key": "neotradeapi",
        }


class DeltaExchangeAdapter(BaseSourceAdapter):
    """Delta Exchange fills endpoint; fills are executed by definition."""

    kind = SourceKind.DELTA_EXCHANGE
    orders_url = "https://api.india.delta.exchange/v2/fills"
    naive_timezone = "UTC"
    implied_status = "CLOSED"
    field_map = FieldMap(
        external_id="id",
        symbol="product_symbol",
        side="side",
        quantity="size",
        price="price",
        timestamp="created_at",
        status=None,
    )

    def _extract_rows(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get("success") is not True:
            raise FeedTruncated(self.source_id, "fills response not successful")
        if "result" not in payload:
            raise FeedTruncated(self.source_id, "response has no 'result' field")
        return payload["result"]

    def sign(self, secret: str, method: str, timestamp: str, path: str, query: str = "", body: str = "") -> str:
        message = f"{method.upper()}{timestamp}{path}{query}{body}".encode("utf-8")
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def auth_headers(self, credential: SourceCredential) -> dict[str, str]:
        timestamp = str(int(time.time()))
        path = urllib.parse.urlparse(self.orders_url).path
        return {
            "api-key": str(credential.api_key),
            "timestamp": timestamp,
            "signature": self.sign(str(credential.api_secret), "GET", timestamp, path),
        }


_ADAPTERS: dict[SourceKind, type[BaseSourceAdapter]] = {
    SourceKind.ZERODHA: ZerodhaAdapter,
    SourceKind.UPSTOX: UpstoxAdapter,
    SourceKind.DHAN: DhanAdapter,
    SourceKind.FYERS: FyersAdapter,
    SourceKind.ANGEL_ONE: AngelOneAdapter,
    SourceKind.GROWW: GrowwAdapter,
    SourceKind.KOTAK_NEO: KotakNeoAdapter,
    SourceKind.DELTA_EXCHANGE: DeltaExchangeAdapter,
}


def build_source_adapter(
    kind: SourceKind | str,
    status_overrides: Mapping[str, str] | None = None,
    naive_timezone: str | None = None,
) -> BaseSourceAdapter:
    """Factory for source-specific adapters."""
    try:
        source = SourceKind(str(kind).strip().lower().replace(" ", "_"))
    except ValueError as exc:
        raise ValueError(f"Unsupported source kind: {kind}") from exc
    return _ADAPTERS[source](status_overrides=status_overrides, naive_timezone=naive_timezone)
