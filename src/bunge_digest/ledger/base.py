"""Ledger contract.

The ledger is the only shared mutable state in the pipeline. Every write is
a compare-and-swap against the record's ``version`` so two runs (or an
abandoned worker and its replacement) can never both win.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from ..models import FinalSummary, ProcessingRecord

# Fields a compare-and-swap may change. ``version`` and ``stream_id`` are
# managed by the store.
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "attempt_count",
        "last_error",
        "failed_stage",
        "failed_index",
        "retryable",
        "claimed_by",
        "lease_expires_at",
        "title",
        "chamber",
        "recorded_at",
    }
)


class Ledger(ABC):
    """Durable store of processing records and final summaries.

    Any failure of the underlying store raises
    :class:`~bunge_digest.exceptions.LedgerUnavailableError`.
    """

    @abstractmethod
    def get(self, stream_id: str) -> Optional[ProcessingRecord]:
        """Return the record for ``stream_id`` or None."""

    def get_many(self, stream_ids: Iterable[str]) -> Dict[str, ProcessingRecord]:
        """Return existing records keyed by stream id."""
        records = {}
        for stream_id in stream_ids:
            record = self.get(stream_id)
            if record is not None:
                records[stream_id] = record
        return records

    @abstractmethod
    def insert(self, record: ProcessingRecord) -> ProcessingRecord:
        """Insert a new record.

        Raises:
            LedgerConflictError: If a record with the same id exists
        """

    @abstractmethod
    def compare_and_swap(
        self, stream_id: str, expected_version: int, **changes: Any
    ) -> ProcessingRecord:
        """Apply ``changes`` if the stored version equals ``expected_version``.

        Returns:
            The updated record (version incremented)

        Raises:
            LedgerConflictError: If the record is missing or its version moved
        """

    @abstractmethod
    def complete(
        self, stream_id: str, expected_version: int, summary: FinalSummary
    ) -> ProcessingRecord:
        """Mark the record Completed and store its summary in one transaction."""

    @abstractmethod
    def get_summary(self, stream_id: str) -> Optional[FinalSummary]:
        """Return the stored final summary, if any."""

    def close(self) -> None:
        """Release store resources."""


def check_changes(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot change ledger fields: {sorted(unknown)}")
