"""Datetime normalization helpers."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import re

import pandas as pd

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# e.g. "18-Aug-2025 10:04:02"
_DD_MON_YYYY = re.compile(
    r"^\s*(\d{1,2})-([A-Za-z]{3})-(\d{4})\s+(\d{1,2}):(\d{2}):(\d{2})\s*$"
)

_TO_DATE_ACCESSORS = ("to_date", "toDate", "to_datetime", "to_pydatetime")

# pandas resolves these to the wall clock; never valid as a fill time.
_RELATIVE_KEYWORDS = frozenset({"now", "today", "tomorrow", "yesterday"})


def to_utc_timestamp(value: object) -> pd.Timestamp:
    """Normalize datetime-like values to UTC pandas Timestamp."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def _localize(ts: pd.Timestamp, naive_timezone: str) -> datetime:
    if ts.tzinfo is None:
        ts = ts.tz_localize(naive_timezone)
    return ts.tz_convert("UTC").to_pydatetime()


def _from_epoch(seconds: float, nanoseconds: float = 0.0) -> datetime:
    return datetime.fromtimestamp(float(seconds) + float(nanoseconds) / 1e9, tz=timezone.utc)


def parse_fill_timestamp(value: object, naive_timezone: str = "UTC") -> datetime:
    """
    Parse a broker timestamp into a timezone-aware UTC datetime.

    Accepted shapes:
      - objects with a to-date accessor (`to_date()`, `toDate()`, ...)
      - epoch-seconds wrappers: `{"seconds": s, "nanoseconds": n}` or `.seconds`
      - `datetime` / `pandas.Timestamp`
      - `DD-Mon-YYYY HH:MM:SS`
      - ISO-8601-like strings

    Naive values are interpreted in `naive_timezone`. Raises ValueError
    when the value cannot be parsed.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("missing timestamp")

    if isinstance(value, (datetime, pd.Timestamp)):
        return _localize(pd.Timestamp(value), naive_timezone)

    for accessor in _TO_DATE_ACCESSORS:
        method = getattr(value, accessor, None)
        if callable(method):
            return parse_fill_timestamp(method(), naive_timezone)

    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
            return _from_epoch(seconds, nanos)
        raise ValueError(f"unsupported timestamp mapping: {dict(value)!r}")

    seconds = getattr(value, "seconds", None)
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        return _from_epoch(seconds, getattr(value, "nanoseconds", 0) or 0)

    if not isinstance(value, str):
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")

    match = _DD_MON_YYYY.match(value)
    if match:
        day, mon, year, hour, minute, second = match.groups()
        month = _MONTHS.get(mon.lower())
        if month is None:
            raise ValueError(f"unknown month in timestamp: {value!r}")
        naive = pd.Timestamp(
            year=int(year), month=month, day=int(day),
            hour=int(hour), minute=int(minute), second=int(second),
        )
        return _localize(naive, naive_timezone)

    if value.strip().lower() in _RELATIVE_KEYWORDS:
        raise ValueError(f"relative timestamp keyword: {value!r}")
    try:
        parsed = pd.Timestamp(value.strip())
    except (ValueError, TypeError) as exc:
        raise ValueError(f"unparsable timestamp: {value!r}") from exc
    if parsed is pd.NaT:
        raise ValueError(f"unparsable timestamp: {value!r}")
    return _localize(parsed, naive_timezone)


def ledger_date(timestamp: datetime, tz: str) -> str:
    """Calendar date (YYYY-MM-DD) of `timestamp` in exchange timezone `tz`."""
    return to_utc_timestamp(timestamp).tz_convert(tz).strftime("%Y-%m-%d")


def today_in(tz: str, now: datetime | None = None) -> str:
    return ledger_date(now or datetime.now(timezone.utc), tz)
