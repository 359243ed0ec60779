"""SQLite-backed ledger.

One short-lived connection per operation, WAL journal so readers never block
the writer, and ``BEGIN IMMEDIATE`` for every write so the version check and
the update happen under the same write lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

from ..exceptions import LedgerConflictError, LedgerUnavailableError
from ..models import Chamber, FinalSummary, ProcessingRecord, StreamStatus, utcnow
from .base import check_changes, Ledger

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS processing_records (
    stream_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL,
    failed_stage TEXT,
    failed_index INTEGER,
    retryable INTEGER NOT NULL DEFAULT 1,
    claimed_by TEXT,
    lease_expires_at TEXT,
    title TEXT NOT NULL DEFAULT '',
    chamber TEXT NOT NULL DEFAULT 'Unknown',
    recorded_at TEXT
);
CREATE TABLE IF NOT EXISTS final_summaries (
    stream_id TEXT PRIMARY KEY REFERENCES processing_records(stream_id),
    text TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    model_version TEXT NOT NULL,
    prompts TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_records_status ON processing_records(status);
"""

_COLUMNS = (
    "stream_id",
    "status",
    "attempt_count",
    "last_error",
    "created_at",
    "updated_at",
    "version",
    "failed_stage",
    "failed_index",
    "retryable",
    "claimed_by",
    "lease_expires_at",
    "title",
    "chamber",
    "recorded_at",
)


def _to_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (StreamStatus, Chamber)):
        return value.value
    if name == "retryable":
        return int(bool(value))
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> ProcessingRecord:
    return ProcessingRecord(
        stream_id=row["stream_id"],
        status=StreamStatus(row["status"]),
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        version=row["version"],
        failed_stage=StreamStatus(row["failed_stage"]) if row["failed_stage"] else None,
        failed_index=row["failed_index"],
        retryable=bool(row["retryable"]),
        claimed_by=row["claimed_by"],
        lease_expires_at=_parse_datetime(row["lease_expires_at"]),
        title=row["title"],
        chamber=Chamber(row["chamber"]),
        recorded_at=_parse_datetime(row["recorded_at"]),
    )


class SqliteLedger(Ledger):
    """Durable ledger in a single SQLite file."""

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        if db_path == ":memory:":
            raise ValueError("SqliteLedger needs a file path; use InMemoryLedger instead")
        self.db_path = db_path
        self.timeout = timeout
        try:
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LedgerUnavailableError(
                f"Cannot create ledger directory for {db_path}: {exc}"
            ) from exc
        self._init_schema()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection configured for concurrent access."""
        conn = None
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
        except sqlite3.Error as exc:
            raise LedgerUnavailableError(
                f"Ledger database error ({self.db_path}): {exc}",
                suggestion="Check that the ledger path is writable and not on a network share",
            ) from exc
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(_SCHEMA)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(final_summaries)")}
            if "prompts" not in columns:
                # Ledger files written before prompt hashes were stored
                conn.execute(
                    "ALTER TABLE final_summaries ADD COLUMN prompts TEXT NOT NULL DEFAULT '{}'"
                )
        logger.debug("Ledger ready at %s", self.db_path)

    def get(self, stream_id: str) -> Optional[ProcessingRecord]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM processing_records WHERE stream_id = ?", (stream_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_many(self, stream_ids: Iterable[str]) -> Dict[str, ProcessingRecord]:
        ids = list(dict.fromkeys(stream_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM processing_records WHERE stream_id IN ({placeholders})", ids
            ).fetchall()
        return {row["stream_id"]: _row_to_record(row) for row in rows}

    def insert(self, record: ProcessingRecord) -> ProcessingRecord:
        stored = record.copy(version=1, updated_at=utcnow())
        values = [_to_db(name, getattr(stored, name)) for name in _COLUMNS]
        with self._write() as conn:
            try:
                conn.execute(
                    f"INSERT INTO processing_records ({', '.join(_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise LedgerConflictError(
                    record.stream_id, f"Record for {record.stream_id} already exists"
                ) from exc
        return stored

    def compare_and_swap(
        self, stream_id: str, expected_version: int, **changes: Any
    ) -> ProcessingRecord:
        check_changes(changes)
        with self._write() as conn:
            return self._swap(conn, stream_id, expected_version, changes)

    def complete(
        self, stream_id: str, expected_version: int, summary: FinalSummary
    ) -> ProcessingRecord:
        changes = {
            "status": StreamStatus.COMPLETED,
            "claimed_by": None,
            "lease_expires_at": None,
            "failed_stage": None,
            "failed_index": None,
            "last_error": None,
        }
        with self._write() as conn:
            updated = self._swap(conn, stream_id, expected_version, changes)
            conn.execute(
                "INSERT OR REPLACE INTO final_summaries "
                "(stream_id, text, generated_at, model_version, prompts) VALUES (?, ?, ?, ?, ?)",
                (
                    summary.stream_id,
                    summary.text,
                    summary.generated_at.isoformat(),
                    summary.model_version,
                    json.dumps(summary.prompts, sort_keys=True),
                ),
            )
        return updated

    def get_summary(self, stream_id: str) -> Optional[FinalSummary]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM final_summaries WHERE stream_id = ?", (stream_id,)
            ).fetchone()
        if row is None:
            return None
        return FinalSummary(
            stream_id=row["stream_id"],
            text=row["text"],
            generated_at=datetime.fromisoformat(row["generated_at"]),
            model_version=row["model_version"],
            prompts=json.loads(row["prompts"] or "{}"),
        )

    def _swap(
        self,
        conn: sqlite3.Connection,
        stream_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> ProcessingRecord:
        row = conn.execute(
            "SELECT * FROM processing_records WHERE stream_id = ?", (stream_id,)
        ).fetchone()
        if row is None:
            raise LedgerConflictError(stream_id, f"No record for {stream_id}")
        current = _row_to_record(row)
        if current.version != expected_version:
            raise LedgerConflictError(stream_id)

        updated = current.copy(version=current.version + 1, updated_at=utcnow(), **changes)
        names = sorted(changes) + ["version", "updated_at"]
        assignments = ", ".join(f"{name} = ?" for name in names)
        values = [_to_db(name, getattr(updated, name)) for name in names]
        cursor = conn.execute(
            f"UPDATE processing_records SET {assignments} WHERE stream_id = ? AND version = ?",
            values + [stream_id, expected_version],
        )
        if cursor.rowcount != 1:
            raise LedgerConflictError(stream_id)
        return updated
