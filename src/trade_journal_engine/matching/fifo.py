"""FIFO matching of completed fills into round-trip trades."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from trade_journal_engine.time_utils import ledger_date
from trade_journal_engine.types import (
    Order,
    OrderLeg,
    OrderStatus,
    RoundTripTrade,
    Side,
    format_trade_key,
)

from .positions import OpenLot, OpenPosition

QTY_EPSILON = 1e-9

LotQueue = tuple[OpenLot, ...]


def push_back(queue: LotQueue, lot: OpenLot) -> LotQueue:
    return queue + (lot,)


def push_front(queue: LotQueue, lot: OpenLot) -> LotQueue:
    return (lot,) + queue


def pop_front(queue: LotQueue) -> tuple[OpenLot, LotQueue]:
    if not queue:
        raise IndexError("pop from empty lot queue")
    return queue[0], queue[1:]


def _is_zero(quantity: float) -> bool:
    return abs(quantity) <= QTY_EPSILON


@dataclass(frozen=True, slots=True)
class SymbolBook:
    """Open buy/sell lot queues for one symbol. Never both non-empty between orders."""

    symbol: str
    open_buys: LotQueue = ()
    open_sells: LotQueue = ()

    def queue(self, side: Side) -> LotQueue:
        return self.open_buys if side == Side.BUY else self.open_sells

    def with_queue(self, side: Side, queue: LotQueue) -> "SymbolBook":
        if side == Side.BUY:
            return replace(self, open_buys=queue)
        return replace(self, open_sells=queue)

    @staticmethod
    def from_position(position: OpenPosition) -> "SymbolBook":
        book = SymbolBook(symbol=position.symbol)
        return book.with_queue(position.side, tuple(position.lots))

    def to_position(self) -> OpenPosition | None:
        for side in (Side.BUY, Side.SELL):
            lots = self.queue(side)
            if lots:
                return OpenPosition(
                    symbol=self.symbol,
                    side=side,
                    lots=tuple(replace(lot, closing_legs=()) for lot in lots),
                )
        return None


def _closed_legs(opening: OpenLot) -> tuple[OrderLeg, ...]:
    opening_leg = OrderLeg(
        external_id=opening.external_id,
        symbol=opening.symbol,
        side=opening.side,
        quantity=opening.matched_quantity,
        price=opening.price,
        timestamp=opening.timestamp,
    )
    return (opening_leg, *opening.closing_legs)


def apply_order(book: SymbolBook, order: Order) -> tuple[SymbolBook, list[tuple[OrderLeg, ...]]]:
    """
    Enqueue one order and match it against the opposite side.

    The head of the already-open side is the opening lot; every match adds a
    closing leg to it. A round trip is returned once the opening lot's
    remaining quantity reaches zero.
    """
    incoming = OpenLot(
        external_id=order.external_id,
        symbol=order.symbol,
        side=order.side,
        price=order.price,
        timestamp=order.timestamp,
        remaining=order.quantity,
    )
    closing_side = order.side
    opening_side = order.side.opposite
    book = book.with_queue(closing_side, push_back(book.queue(closing_side), incoming))
    closed: list[tuple[OrderLeg, ...]] = []

    while book.open_buys and book.open_sells:
        opening, opening_rest = pop_front(book.queue(opening_side))
        closing, closing_rest = pop_front(book.queue(closing_side))
        matched = min(opening.remaining, closing.remaining)

        leg = OrderLeg(
            external_id=closing.external_id,
            symbol=closing.symbol,
            side=closing.side,
            quantity=matched,
            price=closing.price,
            timestamp=closing.timestamp,
        )
        opening = replace(
            opening,
            remaining=opening.remaining - matched,
            closing_legs=opening.closing_legs + (leg,),
        )
        closing = replace(closing, remaining=closing.remaining - matched)

        if _is_zero(opening.remaining):
            closed.append(_closed_legs(opening))
        else:
            opening_rest = push_front(opening_rest, opening)
        if not _is_zero(closing.remaining):
            closing_rest = push_front(closing_rest, closing)
        book = book.with_queue(opening_side, opening_rest).with_queue(closing_side, closing_rest)

    return book, closed


def flush_partial(book: SymbolBook) -> tuple[SymbolBook, tuple[OrderLeg, ...] | None]:
    """Close out the matched part of a partially closed head lot."""
    for side in (Side.BUY, Side.SELL):
        lots = book.queue(side)
        if lots and lots[0].closing_legs:
            head, rest = pop_front(lots)
            legs = _closed_legs(head)
            return book.with_queue(side, push_front(rest, replace(head, closing_legs=()))), legs
    return book, None


@dataclass(slots=True)
class MatchResult:
    date: str | None
    trades: dict[str, RoundTripTrade] = field(default_factory=dict)
    open_positions: dict[str, OpenPosition] = field(default_factory=dict)
    next_number: int = 1

    @property
    def is_empty(self) -> bool:
        return not self.trades


def match_orders(
    orders: Iterable[Order],
    start_number: int = 1,
    open_positions: dict[str, OpenPosition] | None = None,
    timezone: str = "Asia/Kolkata",
    key_prefix: str = "TRADE_",
    key_width: int = 3,
) -> MatchResult:
    """
    FIFO-pair completed orders per symbol into round-trip trades.

    Orders are processed in `(timestamp, external_id)` order; keys continue
    from `start_number`. `open_positions` seeds the books with lots left over
    from earlier runs; the remaining lots are returned in the result.
    """
    positions = dict(open_positions or {})
    completed = sorted(
        (order for order in orders if order.status == OrderStatus.COMPLETE),
        key=Order.sort_key,
    )
    if not completed:
        return MatchResult(date=None, open_positions=positions, next_number=start_number)

    books: dict[str, SymbolBook] = {
        symbol: SymbolBook.from_position(position) for symbol, position in positions.items()
    }
    closed: list[tuple[str, tuple[OrderLeg, ...]]] = []
    for order in completed:
        book = books.get(order.symbol) or SymbolBook(symbol=order.symbol)
        book, legs_list = apply_order(book, order)
        books[order.symbol] = book
        closed.extend((order.symbol, legs) for legs in legs_list)

    partials: list[tuple[str, tuple[OrderLeg, ...]]] = []
    for symbol in list(books):
        books[symbol], legs = flush_partial(books[symbol])
        if legs is not None:
            partials.append((symbol, legs))
    partials.sort(key=lambda item: (item[1][-1].timestamp, item[1][-1].external_id))
    closed.extend(partials)

    trades: dict[str, RoundTripTrade] = {}
    number = start_number
    for symbol, legs in closed:
        key = format_trade_key(number, prefix=key_prefix, width=key_width)
        trades[key] = RoundTripTrade(key=key, symbol=symbol, legs=list(legs))
        number += 1

    remaining: dict[str, OpenPosition] = {}
    for symbol, book in books.items():
        position = book.to_position()
        if position is not None:
            remaining[symbol] = position

    return MatchResult(
        date=ledger_date(completed[0].timestamp, timezone),
        trades=trades,
        open_positions=remaining,
        next_number=number,
    )
