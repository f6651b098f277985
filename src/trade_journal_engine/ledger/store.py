"""Ledger document stores with atomic, versioned merge writes."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Iterator
from contextlib import closing, contextmanager
import copy
from dataclasses import dataclass, field
import json
from pathlib import Path
import sqlite3
from typing import Any
from uuid import uuid4

from trade_journal_engine.errors import PersistenceConflict
from trade_journal_engine.live.contracts import now_utc
from trade_journal_engine.matching.positions import OpenPosition, positions_from_dict, positions_to_dict
from trade_journal_engine.types import ANNOTATION_FIELDS, DailyLedger, RoundTripTrade

_DOC_FIELD_NAMES = {"chart_image": "chartImage"}


@dataclass(slots=True)
class StoredLedger:
    ledger_id: str
    user_id: str
    version: int
    document: dict[str, Any]

    @property
    def ledger(self) -> DailyLedger:
        return DailyLedger.from_dict(self.document)

    @property
    def date(self) -> str:
        return str(self.document.get("date") or "")


@dataclass(slots=True)
class PositionsUpdate:
    """Replacement open-position set, guarded by the version it was derived from."""

    positions: dict[str, OpenPosition]
    expected_version: int


@dataclass(slots=True)
class StoredPositions:
    positions: dict[str, OpenPosition] = field(default_factory=dict)
    version: int = 0


def annotation_patch(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate annotation attribute names to document keys; reject anything else."""
    unknown = sorted(set(fields) - set(ANNOTATION_FIELDS))
    if unknown:
        raise ValueError(f"Not annotation fields: {unknown}")
    return {_DOC_FIELD_NAMES.get(name, name): value for name, value in fields.items()}


def apply_merge(document: dict[str, Any], trades: dict[str, RoundTripTrade]) -> dict[str, Any]:
    """Additive merge: new keys are added, an existing key is a conflict."""
    clashes = sorted(key for key in trades if key in document)
    if clashes:
        raise PersistenceConflict(f"Trade keys already present in ledger: {clashes}")
    merged = dict(document)
    for key, trade in trades.items():
        merged[key] = trade.to_dict()
    return merged


class LedgerStore(ABC):
    """Key-value document store for per-user, per-day ledgers."""

    @abstractmethod
    async def get_today_ledger(self, user_id: str, date: str) -> StoredLedger | None:
        """Return the ledger for (user, date), or None."""

    @abstractmethod
    async def get_ledger(self, ledger_id: str) -> StoredLedger:
        """Return a ledger by id; KeyError when unknown."""

    @abstractmethod
    async def list_ledgers(self, user_id: str) -> list[StoredLedger]:
        """Return all ledgers of a user ordered by date."""

    @abstractmethod
    async def create_ledger(
        self,
        user_id: str,
        ledger: DailyLedger,
        positions: PositionsUpdate | None = None,
    ) -> str:
        """Create a ledger (and replace open positions) atomically; return its id."""

    @abstractmethod
    async def merge_patch(
        self,
        ledger_id: str,
        trades: dict[str, RoundTripTrade],
        expected_version: int,
        positions: PositionsUpdate | None = None,
    ) -> int:
        """Add new trades in one atomic write; return the new version."""

    @abstractmethod
    async def get_open_positions(self, user_id: str) -> StoredPositions:
        """Return open positions carried between runs."""

    @abstractmethod
    async def save_open_positions(self, user_id: str, positions: PositionsUpdate) -> int:
        """Replace open positions (version-checked); return the new version."""

    @abstractmethod
    async def update_annotations(self, ledger_id: str, trade_key: str, fields: dict[str, Any]) -> int:
        """Update journal annotation fields of one trade; return the new version."""


class InMemoryLedgerStore(LedgerStore):
    """Process-local store; every mutation completes without yielding to the loop."""

    def __init__(self) -> None:
        self._ledgers: dict[str, dict[str, Any]] = {}
        self._positions: dict[str, StoredPositions] = {}
        self.write_count = 0

    def _stored(self, ledger_id: str) -> StoredLedger:
        row = self._ledgers[ledger_id]
        return StoredLedger(
            ledger_id=ledger_id,
            user_id=row["user_id"],
            version=row["version"],
            document=copy.deepcopy(row["document"]),
        )

    def _check_positions(self, user_id: str, update: PositionsUpdate | None) -> None:
        if update is None:
            return
        current = self._positions.get(user_id, StoredPositions())
        if current.version != update.expected_version:
            raise PersistenceConflict(
                f"Open positions for {user_id} changed (version {current.version} != {update.expected_version})."
            )

    def _write_positions(self, user_id: str, update: PositionsUpdate | None) -> int:
        if update is None:
            return self._positions.get(user_id, StoredPositions()).version
        version = update.expected_version + 1
        stored = positions_from_dict(positions_to_dict(update.positions))
        self._positions[user_id] = StoredPositions(positions=stored, version=version)
        return version

    async def get_today_ledger(self, user_id: str, date: str) -> StoredLedger | None:
        for ledger_id, row in self._ledgers.items():
            if row["user_id"] == user_id and row["document"].get("date") == date:
                return self._stored(ledger_id)
        return None

    async def get_ledger(self, ledger_id: str) -> StoredLedger:
        if ledger_id not in self._ledgers:
            raise KeyError(f"Unknown ledger: {ledger_id}")
        return self._stored(ledger_id)

    async def list_ledgers(self, user_id: str) -> list[StoredLedger]:
        rows = [self._stored(lid) for lid, row in self._ledgers.items() if row["user_id"] == user_id]
        return sorted(rows, key=lambda item: item.date)

    async def create_ledger(
        self,
        user_id: str,
        ledger: DailyLedger,
        positions: PositionsUpdate | None = None,
    ) -> str:
        if not ledger.date:
            raise ValueError("Refusing to persist a ledger without a date.")
        for row in self._ledgers.values():
            if row["user_id"] == user_id and row["document"].get("date") == ledger.date:
                raise PersistenceConflict(f"Ledger for {user_id} on {ledger.date} already exists.")
        self._check_positions(user_id, positions)
        ledger_id = f"ledger-{uuid4().hex}"
        self._ledgers[ledger_id] = {
            "user_id": user_id,
            "version": 1,
            "document": ledger.to_dict(),
            "created_at": now_utc().isoformat(),
        }
        self._write_positions(user_id, positions)
        self.write_count += 1
        return ledger_id

    async def merge_patch(
        self,
        ledger_id: str,
        trades: dict[str, RoundTripTrade],
        expected_version: int,
        positions: PositionsUpdate | None = None,
    ) -> int:
        row = self._ledgers.get(ledger_id)
        if row is None:
            raise KeyError(f"Unknown ledger: {ledger_id}")
        if row["version"] != expected_version:
            raise PersistenceConflict(
                f"Ledger {ledger_id} changed (version {row['version']} != {expected_version})."
            )
        merged = apply_merge(row["document"], trades)
        self._check_positions(row["user_id"], positions)
        row["document"] = merged
        row["version"] += 1
        row["updated_at"] = now_utc().isoformat()
        self._write_positions(row["user_id"], positions)
        self.write_count += 1
        return row["version"]

    async def get_open_positions(self, user_id: str) -> StoredPositions:
        stored = self._positions.get(user_id, StoredPositions())
        return StoredPositions(positions=dict(stored.positions), version=stored.version)

    async def save_open_positions(self, user_id: str, positions: PositionsUpdate) -> int:
        self._check_positions(user_id, positions)
        self.write_count += 1
        return self._write_positions(user_id, positions)

    async def update_annotations(self, ledger_id: str, trade_key: str, fields: dict[str, Any]) -> int:
        row = self._ledgers.get(ledger_id)
        if row is None:
            raise KeyError(f"Unknown ledger: {ledger_id}")
        if trade_key not in row["document"]:
            raise KeyError(f"Unknown trade {trade_key} in ledger {ledger_id}")
        row["document"][trade_key].update(annotation_patch(fields))
        row["version"] += 1
        return row["version"]


@dataclass(slots=True)
class SQLiteLedgerStore(LedgerStore):
    """
    SQLite-backed ledger store.

    Every write runs in one `BEGIN IMMEDIATE` transaction and is guarded by a
    version compare-and-swap, so a merge either lands completely or not at all.
    """

    db_path: str | Path

    def __post_init__(self) -> None:
        self.db_path = str(self.db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledgers (
                    ledger_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    ledger_date TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    document_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(user_id, ledger_date)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS open_positions (
                    user_id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    @staticmethod
    def _row_to_stored(row: tuple[Any, ...]) -> StoredLedger:
        return StoredLedger(
            ledger_id=row[0],
            user_id=row[1],
            version=int(row[2]),
            document=json.loads(row[3]),
        )

    @staticmethod
    def _positions_version(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute("SELECT version FROM open_positions WHERE user_id = ?", (user_id,)).fetchone()
        return int(row[0]) if row else 0

    def _write_positions(self, conn: sqlite3.Connection, user_id: str, update: PositionsUpdate | None) -> int:
        current = self._positions_version(conn, user_id)
        if update is None:
            return current
        if current != update.expected_version:
            raise PersistenceConflict(
                f"Open positions for {user_id} changed (version {current} != {update.expected_version})."
            )
        version = current + 1
        conn.execute(
            """
            INSERT INTO open_positions(user_id, version, payload_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                version = excluded.version,
                payload_json = excluded.payload_json,
                updated_at = excluded.updated_at
            """,
            (user_id, version, json.dumps(positions_to_dict(update.positions), sort_keys=True), now_utc().isoformat()),
        )
        return version

    # -- blocking implementations ------------------------------------------

    def _get_today(self, user_id: str, date: str) -> StoredLedger | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT ledger_id, user_id, version, document_json FROM ledgers WHERE user_id = ? AND ledger_date = ?",
                (user_id, date),
            ).fetchone()
        return self._row_to_stored(row) if row else None

    def _get(self, ledger_id: str) -> StoredLedger:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT ledger_id, user_id, version, document_json FROM ledgers WHERE ledger_id = ?",
                (ledger_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"Unknown ledger: {ledger_id}")
        return self._row_to_stored(row)

    def _list(self, user_id: str) -> list[StoredLedger]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT ledger_id, user_id, version, document_json
                FROM ledgers WHERE user_id = ? ORDER BY ledger_date ASC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_stored(row) for row in rows]

    def _create(self, user_id: str, ledger: DailyLedger, positions: PositionsUpdate | None) -> str:
        if not ledger.date:
            raise ValueError("Refusing to persist a ledger without a date.")
        ledger_id = f"ledger-{uuid4().hex}"
        stamp = now_utc().isoformat()
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO ledgers(ledger_id, user_id, ledger_date, version, document_json, created_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?, ?)
                    """,
                    (ledger_id, user_id, ledger.date, json.dumps(ledger.to_dict()), stamp, stamp),
                )
            except sqlite3.IntegrityError as exc:
                raise PersistenceConflict(f"Ledger for {user_id} on {ledger.date} already exists.") from exc
            self._write_positions(conn, user_id, positions)
        return ledger_id

    def _merge(
        self,
        ledger_id: str,
        trades: dict[str, RoundTripTrade],
        expected_version: int,
        positions: PositionsUpdate | None,
    ) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT user_id, version, document_json FROM ledgers WHERE ledger_id = ?",
                (ledger_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown ledger: {ledger_id}")
            user_id, version = row[0], int(row[1])
            if version != expected_version:
                raise PersistenceConflict(f"Ledger {ledger_id} changed (version {version} != {expected_version}).")
            merged = apply_merge(json.loads(row[2]), trades)
            cursor = conn.execute(
                """
                UPDATE ledgers SET document_json = ?, version = ?, updated_at = ?
                WHERE ledger_id = ? AND version = ?
                """,
                (json.dumps(merged), version + 1, now_utc().isoformat(), ledger_id, version),
            )
            if cursor.rowcount != 1:
                raise PersistenceConflict(f"Ledger {ledger_id} changed during merge.")
            self._write_positions(conn, user_id, positions)
        return version + 1

    def _get_positions(self, user_id: str) -> StoredPositions:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT version, payload_json FROM open_positions WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return StoredPositions()
        return StoredPositions(positions=positions_from_dict(json.loads(row[1])), version=int(row[0]))

    def _save_positions(self, user_id: str, positions: PositionsUpdate) -> int:
        with self._transaction() as conn:
            return self._write_positions(conn, user_id, positions)

    def _annotate(self, ledger_id: str, trade_key: str, fields: dict[str, Any]) -> int:
        patch = annotation_patch(fields)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT version, document_json FROM ledgers WHERE ledger_id = ?",
                (ledger_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown ledger: {ledger_id}")
            document = json.loads(row[1])
            if trade_key not in document:
                raise KeyError(f"Unknown trade {trade_key} in ledger {ledger_id}")
            document[trade_key].update(patch)
            version = int(row[0]) + 1
            conn.execute(
                "UPDATE ledgers SET document_json = ?, version = ?, updated_at = ? WHERE ledger_id = ?",
                (json.dumps(document), version, now_utc().isoformat(), ledger_id),
            )
        return version

    # -- async interface ----------------------------------------------------

    async def get_today_ledger(self, user_id: str, date: str) -> StoredLedger | None:
        return await asyncio.to_thread(self._get_today, user_id, date)

    async def get_ledger(self, ledger_id: str) -> StoredLedger:
        return await asyncio.to_thread(self._get, ledger_id)

    async def list_ledgers(self, user_id: str) -> list[StoredLedger]:
        return await asyncio.to_thread(self._list, user_id)

    async def create_ledger(
        self,
        user_id: str,
        ledger: DailyLedger,
        positions: PositionsUpdate | None = None,
    ) -> str:
        return await asyncio.to_thread(self._create, user_id, ledger, positions)

    async def merge_patch(
        self,
        ledger_id: str,
        trades: dict[str, RoundTripTrade],
        expected_version: int,
        positions: PositionsUpdate | None = None,
    ) -> int:
        return await asyncio.to_thread(self._merge, ledger_id, trades, expected_version, positions)

    async def get_open_positions(self, user_id: str) -> StoredPositions:
        return await asyncio.to_thread(self._get_positions, user_id)

    async def save_open_positions(self, user_id: str, positions: PositionsUpdate) -> int:
        return await asyncio.to_thread(self._save_positions, user_id, positions)

    async def update_annotations(self, ledger_id: str, trade_key: str, fields: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._annotate, ledger_id, trade_key, fields)
