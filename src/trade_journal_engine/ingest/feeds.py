"""Upstream order-book feeds."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import copy
import json
import logging
import random
import time
from typing import Any, Callable
import urllib.error
import urllib.request

from trade_journal_engine.config import RetryPolicy
from trade_journal_engine.errors import AdapterFailure, MissingCredential

from .adapters import BaseSourceAdapter, SourceCredential

logger = logging.getLogger(__name__)


class OrderFeed(ABC):
    """Fetches the raw order book of one upstream source."""

    source_id: str

    @abstractmethod
    async def fetch_orders(self, credential: SourceCredential | None) -> list[dict[str, Any]]:
        """Return raw order rows or raise AdapterFailure / MissingCredential."""


class StaticOrderFeed(OrderFeed):
    """In-process feed serving a fixed (mutable) list of rows; used for paper runs and tests."""

    def __init__(self, source_id: str, records: list[dict[str, Any]] | None = None) -> None:
        self.source_id = source_id
        self.records: list[dict[str, Any]] = list(records or [])
        self.calls = 0

    def extend(self, records: list[dict[str, Any]]) -> None:
        self.records.extend(records)

    async def fetch_orders(self, credential: SourceCredential | None) -> list[dict[str, Any]]:
        self.calls += 1
        if credential is None:
            raise MissingCredential(f"No credential for {self.source_id}.")
        return copy.deepcopy(self.records)


class HTTPOrderFeed(OrderFeed):
    """REST order-book client: per-source headers and envelope, retried with backoff."""

    def __init__(
        self,
        adapter: BaseSourceAdapter,
        url: str | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 8.0,
        opener: Callable[..., Any] | None = None,
    ) -> None:
        self.adapter = adapter
        self.source_id = adapter.source_id
        self.url = url or adapter.orders_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._open = opener or urllib.request.urlopen

    def _request_json(self, headers: dict[str, str]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            request = urllib.request.Request(url=self.url, method="GET", headers=headers)
            try:
                with self._open(request, timeout=self.timeout_seconds) as response:
                    status = int(getattr(response, "status", 200))
                    text = response.read().decode("utf-8")
                    if status in self.retry_policy.retriable_status_codes and attempt < self.retry_policy.max_attempts:
                        raise urllib.error.HTTPError(self.url, status, f"retryable {status}", hdrs=None, fp=None)
                    return json.loads(text) if text else None
            except urllib.error.HTTPError as exc:
                if exc.code in (401, 403):
                    raise MissingCredential(f"{self.source_id}: session rejected ({exc.code}).") from exc
                if exc.code not in self.retry_policy.retriable_status_codes or attempt >= self.retry_policy.max_attempts:
                    raise AdapterFailure(self.source_id, f"HTTP {exc.code}") from exc
            except urllib.error.URLError as exc:
                if attempt >= self.retry_policy.max_attempts:
                    raise AdapterFailure(self.source_id, f"connection failed: {exc.reason}") from exc
            except json.JSONDecodeError as exc:
                raise AdapterFailure(self.source_id, "response is not valid JSON") from exc

            delay = self.retry_policy.delay_for(attempt) + random.uniform(0.0, self.retry_policy.jitter_seconds)
            logger.info("Retrying %s order fetch in %.2fs (attempt %d)", self.source_id, delay, attempt)
            time.sleep(delay)

    def _fetch_blocking(self, credential: SourceCredential) -> list[dict[str, Any]]:
        headers = {"Accept": "application/json", **self.adapter.auth_headers(credential)}
        payload = self._request_json(headers)
        return self.adapter.extract_records(payload)

    async def fetch_orders(self, credential: SourceCredential | None) -> list[dict[str, Any]]:
        if credential is None or not (credential.access_token or credential.api_key):
            raise MissingCredential(f"No active session for {self.source_id}.")
        return await asyncio.to_thread(self._fetch_blocking, credential)
