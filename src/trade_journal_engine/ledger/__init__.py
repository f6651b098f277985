"""Ledger stores and the create-or-merge writer."""

from .store import (
    InMemoryLedgerStore,
    LedgerStore,
    PositionsUpdate,
    SQLiteLedgerStore,
    StoredLedger,
    StoredPositions,
    annotation_patch,
    apply_merge,
)
from .writer import LedgerWriter, WriteOutcome, WriteResult

__all__ = [
    "InMemoryLedgerStore",
    "LedgerStore",
    "LedgerWriter",
    "PositionsUpdate",
    "SQLiteLedgerStore",
    "StoredLedger",
    "StoredPositions",
    "WriteOutcome",
    "WriteResult",
    "annotation_patch",
    "apply_merge",
    "build_ledger_store",
]


def build_ledger_store(backend: str = "memory", sqlite_path: str | None = None) -> LedgerStore:
    """Factory for configured ledger store backends."""
    normalized = backend.strip().lower()
    if normalized == "memory":
        return InMemoryLedgerStore()
    if normalized == "sqlite":
        if not sqlite_path:
            raise ValueError("sqlite backend requires sqlite_path.")
        return SQLiteLedgerStore(sqlite_path)
    raise ValueError(f"Unsupported ledger store backend: {backend}")
