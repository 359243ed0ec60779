"""Discovery: merge channel listings and drop streams the ledger rules out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..exceptions import LedgerConflictError, LedgerError
from ..ledger.base import Ledger
from ..ledger.transitions import expire_lease, lease_exhausted, skip_reason
from ..models import StreamCandidate, utcnow
from .channel_source import ChannelSource

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Candidates selected for a Run plus why the others were dropped."""

    candidates: List[StreamCandidate] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)


def collect_candidates(
    sources: Sequence[ChannelSource], now: Optional[datetime] = None
) -> Tuple[List[StreamCandidate], List[str]]:
    """Query every source, keeping the first occurrence of each stream id.

    A failing source is logged and skipped.

    Returns:
        Tuple of (candidates, names of failed sources)
    """
    now = now or utcnow()
    seen = set()
    merged: List[StreamCandidate] = []
    failed: List[str] = []
    for source in sources:
        try:
            listed = source.list_streams(now)
        except Exception as exc:
            logger.warning("Discovery failed for channel %s, skipping it: %s", source.name, exc)
            failed.append(source.name)
            continue
        for candidate in listed:
            if candidate.id in seen:
                continue
            seen.add(candidate.id)
            merged.append(candidate)
    return merged, failed


def sort_candidates(candidates: List[StreamCandidate], order: str) -> List[StreamCandidate]:
    return sorted(
        candidates,
        key=lambda c: (c.recorded_at, c.id),
        reverse=(order == "newest_first"),
    )


def discover(
    sources: Sequence[ChannelSource],
    ledger: Ledger,
    max_streams: int,
    run_id: str,
    max_attempts: int,
    order: str = "oldest_first",
    now: Optional[datetime] = None,
) -> DiscoveryResult:
    """Select at most ``max_streams`` streams this run should work on.

    Records left active by a crashed run with no attempts remaining are
    marked Failed on the way.

    Raises:
        LedgerUnavailableError: If the ledger cannot be read (aborts the Run)
    """
    now = now or utcnow()
    merged, failed = collect_candidates(sources, now)
    ordered = sort_candidates(merged, order)

    result = DiscoveryResult(failed_sources=failed)
    try:
        records = ledger.get_many(c.id for c in ordered)
    except LedgerError:
        logger.error("Ledger unavailable during discovery")
        raise

    for candidate in ordered:
        record = records.get(candidate.id)
        reason = skip_reason(record, run_id, max_attempts, now)
        if record is not None and lease_exhausted(record, max_attempts, now):
            try:
                expire_lease(ledger, record)
            except LedgerConflictError:
                logger.debug("[%s] Record changed while expiring its lease", candidate.id)
        if reason is not None:
            logger.debug("[%s] Skipping: %s", candidate.id, reason)
            result.skipped[candidate.id] = reason
            continue
        if len(result.candidates) >= max_streams:
            break
        result.candidates.append(candidate)

    logger.info(
        "Discovered %d streams, selected %d (skipped %d)",
        len(merged),
        len(result.candidates),
        len(result.skipped),
    )
    return result
