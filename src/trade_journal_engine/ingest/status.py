"""Canonical fill-status classification."""

from __future__ import annotations

from collections.abc import Mapping

from trade_journal_engine.types import OrderStatus

COMPLETE_ALIASES = frozenset({"COMPLETE", "TRADED", "FILLED", "PLACED", "CLOSED"})
CANCELLED_ALIASES = frozenset({"CANCELLED", "CANCELED"})


def _normalize_token(raw_status: object) -> str:
    if raw_status is None:
        return ""
    return str(raw_status).strip().upper()


def classify(
    raw_status: object,
    overrides: Mapping[str, OrderStatus | str] | None = None,
) -> OrderStatus:
    """
    Map a free-text broker status to COMPLETE / CANCELLED / OTHER.

    `overrides` is a per-source table consulted before the shared aliases;
    its keys are matched case-insensitively.
    """
    token = _normalize_token(raw_status)
    if overrides:
        for key, value in overrides.items():
            if _normalize_token(key) == token:
                return OrderStatus(str(value).upper())
    if token in COMPLETE_ALIASES:
        return OrderStatus.COMPLETE
    if token in CANCELLED_ALIASES:
        return OrderStatus.CANCELLED
    return OrderStatus.OTHER


def validate_status_table(table: Mapping[str, str]) -> dict[str, OrderStatus]:
    """Validate a configured override table; unknown targets raise ValueError."""
    out: dict[str, OrderStatus] = {}
    for raw, target in table.items():
        try:
            out[_normalize_token(raw)] = OrderStatus(str(target).upper())
        except ValueError as exc:
            raise ValueError(f"Unknown canonical status {target!r} for raw status {raw!r}.") from exc
    return out
