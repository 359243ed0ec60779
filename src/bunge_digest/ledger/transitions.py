"""Record state machine on top of the ledger's compare-and-swap.

Discovered -> Downloading -> Transcribing -> Summarizing -> Completed, with
Failed reachable from any active status. A Failed record may be claimed
again while its failure is retryable and attempts remain; the claim resumes
at the stage that failed. Status never moves backward: re-running earlier
stages of a resumed stream (against caches) leaves the status where it was.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..exceptions import InvalidTransitionError, LedgerConflictError
from ..models import FinalSummary, ProcessingRecord, StreamCandidate, StreamStatus, utcnow
from .base import Ledger

logger = logging.getLogger(__name__)

ABANDONED_REASON = "abandoned at run deadline"


def is_terminal_failure(record: ProcessingRecord, max_attempts: int) -> bool:
    """A Failed record that will not be retried by later runs."""
    if record.status is not StreamStatus.FAILED:
        return False
    return not record.retryable or record.attempt_count >= max_attempts


def lease_active(record: ProcessingRecord, now: datetime) -> bool:
    return record.lease_expires_at is not None and record.lease_expires_at > now


def lease_exhausted(record: ProcessingRecord, max_attempts: int, now: datetime) -> bool:
    """An active record whose run died without failing it, with no attempts left."""
    return (
        record.status.is_active
        and not lease_active(record, now)
        and record.attempt_count >= max_attempts
    )


def expire_lease(ledger: Ledger, record: ProcessingRecord) -> ProcessingRecord:
    """Fail an exhausted record left active by a crashed run.

    Raises:
        LedgerConflictError: If another run wrote the record first
    """
    logger.warning(
        "[%s] Lease expired in %s after %d attempts, marking failed",
        record.stream_id,
        record.status.value,
        record.attempt_count,
    )
    return ledger.compare_and_swap(
        record.stream_id,
        record.version,
        status=StreamStatus.FAILED,
        last_error=f"lease expired after {record.attempt_count} attempts",
        failed_stage=record.status,
        failed_index=None,
        claimed_by=None,
        lease_expires_at=None,
    )


def skip_reason(
    record: Optional[ProcessingRecord],
    run_id: str,
    max_attempts: int,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Why ``run_id`` must not work on this record, or None if it may."""
    if record is None:
        return None
    now = now or utcnow()
    if record.status is StreamStatus.COMPLETED:
        return "already completed"
    if record.status.is_active and record.claimed_by != run_id and lease_active(record, now):
        return f"claimed by {record.claimed_by} until {record.lease_expires_at.isoformat()}"
    if lease_exhausted(record, max_attempts, now):
        return f"lease expired after {record.attempt_count} attempts"
    if is_terminal_failure(record, max_attempts):
        if not record.retryable:
            return "failed permanently"
        return f"failed after {record.attempt_count} attempts"
    return None


def claim(
    ledger: Ledger,
    candidate: StreamCandidate,
    run_id: str,
    lease_seconds: int,
    max_attempts: int,
    now: Optional[datetime] = None,
) -> Optional[ProcessingRecord]:
    """Take ownership of a stream for ``run_id``.

    Creates the record on first sight. Returns None when the stream must be
    skipped (see :func:`skip_reason`).

    Raises:
        LedgerConflictError: If another run claimed the stream concurrently
        LedgerUnavailableError: If the store fails
    """
    now = now or utcnow()
    record = ledger.get(candidate.id)
    if record is None:
        try:
            record = ledger.insert(ProcessingRecord.for_candidate(candidate))
        except LedgerConflictError:
            # Inserted by a concurrent run between our read and write
            record = ledger.get(candidate.id)
            if record is None:
                raise

    reason = skip_reason(record, run_id, max_attempts, now)
    if lease_exhausted(record, max_attempts, now):
        expire_lease(ledger, record)
    if reason is not None:
        logger.info("[%s] Not claiming: %s", candidate.id, reason)
        return None

    if record.status is StreamStatus.DISCOVERED:
        status = StreamStatus.DOWNLOADING
    elif record.status is StreamStatus.FAILED:
        status = record.failed_stage or StreamStatus.DOWNLOADING
    else:
        # Active with an expired lease: resume where the previous run stopped
        status = record.status

    claimed = ledger.compare_and_swap(
        record.stream_id,
        record.version,
        status=status,
        attempt_count=record.attempt_count + 1,
        claimed_by=run_id,
        lease_expires_at=now + timedelta(seconds=lease_seconds),
        failed_stage=None,
        failed_index=None,
        retryable=True,
    )
    logger.debug(
        "[%s] Claimed by %s (attempt %d, status %s)",
        claimed.stream_id,
        run_id,
        claimed.attempt_count,
        claimed.status.value,
    )
    return claimed


def advance(
    ledger: Ledger,
    record: ProcessingRecord,
    target: StreamStatus,
    lease_seconds: Optional[int] = None,
) -> ProcessingRecord:
    """Move an active record forward to ``target``.

    A target at or behind the current status leaves the status unchanged but
    still writes, so an abandoned worker finds out through the version check.
    """
    if not target.is_active:
        raise InvalidTransitionError(record.stream_id, record.status.value, target.value)
    if not record.status.is_active:
        raise InvalidTransitionError(record.stream_id, record.status.value, target.value)

    status = target if target.rank > record.status.rank else record.status
    changes = {"status": status}
    if lease_seconds is not None:
        changes["lease_expires_at"] = utcnow() + timedelta(seconds=lease_seconds)
    return ledger.compare_and_swap(record.stream_id, record.version, **changes)


def fail(
    ledger: Ledger,
    record: ProcessingRecord,
    stage: StreamStatus,
    error: str,
    retryable: bool,
    failed_index: Optional[int] = None,
) -> ProcessingRecord:
    """Mark an active record Failed and release its claim."""
    if not record.status.is_active:
        raise InvalidTransitionError(
            record.stream_id, record.status.value, StreamStatus.FAILED.value
        )
    return ledger.compare_and_swap(
        record.stream_id,
        record.version,
        status=StreamStatus.FAILED,
        last_error=error,
        failed_stage=stage,
        failed_index=failed_index,
        retryable=retryable,
        claimed_by=None,
        lease_expires_at=None,
    )


def complete(
    ledger: Ledger, record: ProcessingRecord, summary: FinalSummary
) -> ProcessingRecord:
    """Summarizing -> Completed, storing the summary atomically."""
    if record.status is not StreamStatus.SUMMARIZING:
        raise InvalidTransitionError(
            record.stream_id, record.status.value, StreamStatus.COMPLETED.value
        )
    return ledger.complete(record.stream_id, record.version, summary)


def release(
    ledger: Ledger, stream_id: str, run_id: str, reason: str
) -> Optional[ProcessingRecord]:
    """Fail a stream this run still holds, as retryable, with ``reason``.

    Returns None when the record is no longer ours (already finished or
    re-claimed).
    """
    record = ledger.get(stream_id)
    if record is None or not record.status.is_active or record.claimed_by != run_id:
        return None
    try:
        return fail(ledger, record, record.status, reason, retryable=True)
    except LedgerConflictError:
        # The worker wrote in between; let it win
        return None


def abandon(ledger: Ledger, stream_id: str, run_id: str) -> Optional[ProcessingRecord]:
    """Fail a stream this run still holds, for deadline abandonment."""
    return release(ledger, stream_id, run_id, ABANDONED_REASON)
