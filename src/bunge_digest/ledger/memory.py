"""Process-local ledger used by tests and dry runs."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from ..exceptions import LedgerConflictError
from ..models import FinalSummary, ProcessingRecord, StreamStatus, utcnow
from .base import check_changes, Ledger


class InMemoryLedger(Ledger):
    """Thread-safe dictionary-backed ledger.

    Records are copied on the way in and out so callers never share a
    mutable record with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ProcessingRecord] = {}
        self._summaries: Dict[str, FinalSummary] = {}

    def get(self, stream_id: str) -> Optional[ProcessingRecord]:
        with self._lock:
            record = self._records.get(stream_id)
            return record.copy() if record else None

    def insert(self, record: ProcessingRecord) -> ProcessingRecord:
        with self._lock:
            if record.stream_id in self._records:
                raise LedgerConflictError(
                    record.stream_id, f"Record for {record.stream_id} already exists"
                )
            stored = record.copy(version=1, updated_at=utcnow())
            self._records[record.stream_id] = stored
            return stored.copy()

    def compare_and_swap(
        self, stream_id: str, expected_version: int, **changes: Any
    ) -> ProcessingRecord:
        check_changes(changes)
        with self._lock:
            return self._swap(stream_id, expected_version, changes).copy()

    def complete(
        self, stream_id: str, expected_version: int, summary: FinalSummary
    ) -> ProcessingRecord:
        with self._lock:
            updated = self._swap(
                stream_id,
                expected_version,
                {
                    "status": StreamStatus.COMPLETED,
                    "claimed_by": None,
                    "lease_expires_at": None,
                    "failed_stage": None,
                    "failed_index": None,
                    "last_error": None,
                },
            )
            self._summaries[stream_id] = summary
            return updated.copy()

    def get_summary(self, stream_id: str) -> Optional[FinalSummary]:
        with self._lock:
            return self._summaries.get(stream_id)

    def records(self) -> List[ProcessingRecord]:
        with self._lock:
            return [record.copy() for record in self._records.values()]

    def _swap(
        self, stream_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> ProcessingRecord:
        current = self._records.get(stream_id)
        if current is None:
            raise LedgerConflictError(stream_id, f"No record for {stream_id}")
        if current.version != expected_version:
            raise LedgerConflictError(stream_id)
        updated = current.copy(version=current.version + 1, updated_at=utcnow(), **changes)
        self._records[stream_id] = updated
        return updated
