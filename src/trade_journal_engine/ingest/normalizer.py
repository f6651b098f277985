"""Batch normalization of raw broker rows into canonical orders."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import logging
from typing import Any

from trade_journal_engine.types import MalformedOrder, Order, OrderStatus

from .adapters import BaseSourceAdapter, build_source_adapter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NormalizedBatch:
    orders: list[Order] = field(default_factory=list)
    malformed: list[MalformedOrder] = field(default_factory=list)
    ignored: int = 0

    def completed(self) -> list[Order]:
        return [order for order in self.orders if order.status == OrderStatus.COMPLETE]


class OrderNormalizer:
    """Dispatches raw records to the adapter registered for their source."""

    def __init__(
        self,
        adapters: Iterable[BaseSourceAdapter] | None = None,
        status_overrides: Mapping[str, Mapping[str, str]] | None = None,
        naive_timezone: str | None = None,
    ) -> None:
        self._adapters: dict[str, BaseSourceAdapter] = {}
        self._status_overrides = dict(status_overrides or {})
        self._naive_timezone = naive_timezone
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: BaseSourceAdapter) -> None:
        self._adapters[adapter.source_id] = adapter

    def adapter_for(self, source_id: str) -> BaseSourceAdapter:
        key = str(source_id).strip().lower().replace(" ", "_")
        if key not in self._adapters:
            self.register(
                build_source_adapter(
                    key,
                    status_overrides=self._status_overrides.get(key),
                    naive_timezone=self._naive_timezone,
                )
            )
        return self._adapters[key]

    def normalize(self, source_id: str, raw: Mapping[str, Any]) -> Order | MalformedOrder:
        return self.adapter_for(source_id).to_order(raw)

    def normalize_batch(self, source_id: str, records: Iterable[Mapping[str, Any]]) -> NormalizedBatch:
        """Normalize every row; bad rows are reported, never fatal."""
        adapter = self.adapter_for(source_id)
        batch = NormalizedBatch()
        for raw in records:
            if adapter.is_unfilled(raw):
                batch.ignored += 1
                continue
            result = adapter.to_order(raw)
            if isinstance(result, MalformedOrder):
                logger.warning(
                    "Dropping malformed %s order %s: %s",
                    result.source,
                    result.external_id,
                    result.reason,
                )
                batch.malformed.append(result)
                continue
            batch.orders.append(result)
        if batch.ignored:
            logger.debug("Skipped %d unfilled %s rows", batch.ignored, adapter.source_id)
        return batch
