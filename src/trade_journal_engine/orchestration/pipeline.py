"""End-to-end sync: fetch, normalize, dedup, match and persist one user's fills."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from trade_journal_engine.analytics import (
    OverallPnL,
    calculate_overall_pnl,
    performance_summary,
    summarize_trades,
)
from trade_journal_engine.config import EngineConfig
from trade_journal_engine.errors import (
    AdapterFailure,
    FeedTruncated,
    MissingCredential,
    PersistenceConflict,
    SyncAborted,
)
from trade_journal_engine.ingest import (
    NormalizedBatch,
    OrderFeed,
    OrderNormalizer,
    SourceCredential,
)
from trade_journal_engine.ledger import (
    LedgerStore,
    LedgerWriter,
    StoredPositions,
    WriteOutcome,
    build_ledger_store,
)
from trade_journal_engine.live import AlertRouter, ErrorKind, SyncOutcome, SyncResult
from trade_journal_engine.matching import build_snapshot, diff
from trade_journal_engine.time_utils import ledger_date, today_in
from trade_journal_engine.types import Order, OrderStatus

logger = logging.getLogger(__name__)

ALERT_SOURCE = "sync_pipeline"


@dataclass(slots=True)
class _KeyedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass(slots=True)
class PipelineContext:
    """Per-run state passed between the sync stages."""

    user_id: str
    source_id: str
    date: str
    batch: NormalizedBatch = field(default_factory=NormalizedBatch)
    todays_orders: list[Order] = field(default_factory=list)
    attempts: int = 0


class SyncPipeline:
    """
    Reconciles one source's order book into the user's daily ledger.

    A run for a given (user, day) is a critical section: an in-process lock
    serializes runs, and the store's version check rejects writes based on a
    stale snapshot. Rejected writes are retried from a fresh read.
    """

    def __init__(
        self,
        store: LedgerStore | None = None,
        feeds: dict[str, OrderFeed] | None = None,
        config: EngineConfig | None = None,
        normalizer: OrderNormalizer | None = None,
        alert_router: AlertRouter | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store or build_ledger_store(
            self.config.persistence.backend,
            self.config.persistence.sqlite_path,
        )
        self.feeds: dict[str, OrderFeed] = dict(feeds or {})
        self.normalizer = normalizer or OrderNormalizer(status_overrides=self.config.status_overrides)
        self.alert_router = alert_router or AlertRouter.with_logging(self.config.logging.alert_log_path)
        self.writer = LedgerWriter(self.store, self.config)
        self._locks: dict[tuple[str, str], _KeyedLock] = {}

    def register_feed(self, source_id: str, feed: OrderFeed) -> None:
        self.feeds[source_id] = feed

    @asynccontextmanager
    async def _locked(self, user_id: str, date: str) -> AsyncIterator[None]:
        """Serialize runs for one (user, day); the entry is dropped once nobody holds or awaits it."""
        key = (user_id, date)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    def _failed(self, ctx: PipelineContext, kind: ErrorKind, message: str) -> SyncResult:
        outcome = SyncOutcome.NO_CREDENTIAL if kind == ErrorKind.NO_CREDENTIAL else SyncOutcome.FAILED
        return SyncResult(
            outcome=outcome,
            user_id=ctx.user_id,
            source_id=ctx.source_id,
            date=ctx.date,
            error=kind,
            message=message,
            attempts=ctx.attempts,
        )

    async def _fetch(self, source_id: str, credential: SourceCredential | None) -> list[dict[str, Any]]:
        feed = self.feeds.get(source_id)
        if feed is None:
            raise AdapterFailure(source_id, "no order feed registered")
        if credential is None:
            raise MissingCredential(f"No active session for {source_id}.")
        try:
            return await asyncio.wait_for(
                feed.fetch_orders(credential),
                timeout=self.config.fetch.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise AdapterFailure(
                source_id,
                f"order fetch timed out after {self.config.fetch.timeout_seconds}s",
            ) from exc

    def _normalize(self, ctx: PipelineContext, records: list[dict[str, Any]]) -> None:
        ctx.batch = self.normalizer.normalize_batch(ctx.source_id, records)
        if ctx.batch.malformed:
            self.alert_router.warning(
                ALERT_SOURCE,
                f"Dropped {len(ctx.batch.malformed)} malformed order row(s).",
                {
                    "user_id": ctx.user_id,
                    "source_id": ctx.source_id,
                    "reasons": sorted({row.reason for row in ctx.batch.malformed}),
                },
            )
        tz = self.config.timezone
        ctx.todays_orders = [order for order in ctx.batch.orders if ledger_date(order.timestamp, tz) == ctx.date]

    async def sync(
        self,
        user_id: str,
        source_id: str,
        credential: SourceCredential | None,
        now: datetime | None = None,
    ) -> SyncResult:
        """Run one sync. Failures are returned as results, never half-applied."""
        ctx = PipelineContext(
            user_id=user_id,
            source_id=source_id,
            date=today_in(self.config.timezone, now),
        )
        try:
            records = await self._fetch(source_id, credential)
        except MissingCredential as exc:
            self.alert_router.warning(ALERT_SOURCE, "No active credential; re-authentication needed.", {
                "user_id": user_id,
                "source_id": source_id,
            })
            return self._failed(ctx, ErrorKind.NO_CREDENTIAL, str(exc))
        except FeedTruncated as exc:
            self.alert_router.critical(ALERT_SOURCE, "Order feed truncated; sync aborted.", {
                "user_id": user_id,
                "source_id": source_id,
                "error": str(exc),
            })
            return self._failed(ctx, ErrorKind.FEED_TRUNCATED, str(exc))
        except AdapterFailure as exc:
            self.alert_router.critical(ALERT_SOURCE, "Order fetch failed; sync aborted.", {
                "user_id": user_id,
                "source_id": source_id,
                "error": str(exc),
            })
            return self._failed(ctx, ErrorKind.ADAPTER_FAILURE, str(exc))

        self._normalize(ctx, records)
        try:
            async with self._locked(user_id, ctx.date):
                result = await self._reconcile(ctx)
        except SyncAborted as exc:
            self.alert_router.critical(ALERT_SOURCE, "Sync aborted after repeated ledger conflicts.", {
                "user_id": user_id,
                "date": ctx.date,
                "attempts": ctx.attempts,
                "error": str(exc),
            })
            return self._failed(ctx, ErrorKind.SYNC_ABORTED, str(exc))
        result.fetched = len(records)
        result.malformed = len(ctx.batch.malformed)
        logger.info("Sync %s/%s on %s: %s", user_id, source_id, ctx.date, result.summary())
        return result

    async def _reconcile(self, ctx: PipelineContext) -> SyncResult:
        max_attempts = self.config.persistence.max_conflict_retries + 1
        last_error = ""
        while ctx.attempts < max_attempts:
            ctx.attempts += 1
            ledgers = await self.store.list_ledgers(ctx.user_id)
            positions = (
                await self.store.get_open_positions(ctx.user_id)
                if self.config.carry_open_positions
                else StoredPositions()
            )
            snapshot = build_snapshot([stored.ledger for stored in ledgers], positions.positions)
            delta = [order for order in diff(snapshot.external_ids, ctx.todays_orders) if order.status == OrderStatus.COMPLETE]
            if not delta:
                logger.info("No new orders for %s on %s (%d already recorded).", ctx.user_id, ctx.date, len(snapshot))
                return SyncResult(
                    outcome=SyncOutcome.NO_NEW_ORDERS,
                    user_id=ctx.user_id,
                    source_id=ctx.source_id,
                    date=ctx.date,
                    attempts=ctx.attempts,
                )

            existing = next((stored for stored in ledgers if stored.date == ctx.date), None)
            try:
                written = await self.writer.write(ctx.user_id, delta, existing, positions)
            except PersistenceConflict as exc:
                last_error = str(exc)
                logger.warning("Ledger write conflict for %s (attempt %d/%d): %s", ctx.user_id, ctx.attempts, max_attempts, exc)
                continue

            if written.outcome == WriteOutcome.NOTHING:
                return SyncResult(
                    outcome=SyncOutcome.NO_NEW_TRADES,
                    user_id=ctx.user_id,
                    source_id=ctx.source_id,
                    date=ctx.date,
                    new_orders=len(delta),
                    attempts=ctx.attempts,
                    message="positions carried" if written.positions_saved else "",
                )
            outcome = SyncOutcome.CREATED if written.outcome == WriteOutcome.CREATED else SyncOutcome.MERGED
            self.alert_router.info(ALERT_SOURCE, f"Recorded {len(written.trade_keys)} new trade(s).", {
                "user_id": ctx.user_id,
                "ledger_id": written.ledger_id,
                "trade_keys": written.trade_keys,
            })
            return SyncResult(
                outcome=outcome,
                user_id=ctx.user_id,
                source_id=ctx.source_id,
                date=written.date or ctx.date,
                ledger_id=written.ledger_id,
                new_trade_keys=written.trade_keys,
                new_orders=len(delta),
                attempts=ctx.attempts,
            )

        raise SyncAborted(f"{ctx.attempts} conflicting write(s) for {ctx.user_id} on {ctx.date}: {last_error}")

    async def overall_pnl(self, user_id: str) -> OverallPnL:
        ledgers = await self.store.list_ledgers(user_id)
        return calculate_overall_pnl((stored.ledger for stored in ledgers), decimals=self.config.price_decimals)

    async def performance(self, user_id: str) -> dict[str, Any]:
        ledgers = await self.store.list_ledgers(user_id)
        decimals = self.config.price_decimals
        return performance_summary(summarize_trades((stored.ledger for stored in ledgers), decimals), decimals)
