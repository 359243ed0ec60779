"""One Run: discover, then process up to K streams concurrently."""

from __future__ import annotations

import logging
import secrets
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..discovery.channel_source import ChannelSource
from ..discovery.filter import discover
from ..exceptions import LedgerError
from ..ledger import transitions
from ..ledger.base import Ledger
from ..models import RunReport, StreamCandidate, StreamOutcome, StreamStatus, utcnow
from ..utils.concurrency import Deadline
from .stream_pipeline import StreamPipeline

logger = logging.getLogger(__name__)


def new_run_id(now: Optional[datetime] = None) -> str:
    """``run-<UTC timestamp>-<random>``, unique enough to act as a claimant."""
    now = now or utcnow()
    return f"run-{now.strftime('%Y%m%dT%H%M%SZ')}-{secrets.token_hex(3)}"


class Run:
    """A single execution over the discovered candidates.

    Streams are independent: one failing never affects its siblings, and the
    Run is never atomic across them. A ledger outage aborts the Run; streams
    already finished keep their results.

    Args:
        sources: Channel sources to discover from
        ledger: Processing ledger
        pipeline: Per-stream pipeline
        max_streams: Cap on streams selected by discovery
        max_concurrent_streams: Worker pool size (K)
        discovery_order: ``oldest_first`` or ``newest_first``
        max_attempts: Attempts before a retryable failure becomes terminal
        deadline_seconds: Optional wall-clock budget for the Run
        deadline_policy: ``finish`` lets started calls complete and fails the
            affected streams as retryable; ``abandon`` stops waiting at the
            deadline and marks unfinished streams Failed
        run_id: Claimant id (generated when omitted)
    """

    def __init__(
        self,
        sources: Sequence[ChannelSource],
        ledger: Ledger,
        pipeline: StreamPipeline,
        max_streams: int,
        max_concurrent_streams: int = 2,
        discovery_order: str = "oldest_first",
        max_attempts: int = 3,
        deadline_seconds: Optional[float] = None,
        deadline_policy: str = "finish",
        run_id: Optional[str] = None,
    ) -> None:
        if deadline_policy not in ("finish", "abandon"):
            raise ValueError(f"Unknown deadline_policy: {deadline_policy}")
        self.sources = list(sources)
        self.ledger = ledger
        self.pipeline = pipeline
        self.max_streams = max_streams
        self.max_concurrent_streams = max_concurrent_streams
        self.discovery_order = discovery_order
        self.max_attempts = max_attempts
        self.deadline_seconds = deadline_seconds
        self.deadline_policy = deadline_policy
        self.run_id = run_id or new_run_id()

    def execute(self) -> RunReport:
        report = RunReport(run_id=self.run_id)
        deadline = Deadline(self.deadline_seconds)
        logger.info("Run %s started", self.run_id)

        try:
            discovery = discover(
                self.sources,
                self.ledger,
                self.max_streams,
                self.run_id,
                self.max_attempts,
                order=self.discovery_order,
            )
        except LedgerError as exc:
            return self._finish(report, aborted=f"ledger unavailable during discovery: {exc}")

        report.skipped = len(discovery.skipped)
        if not discovery.candidates:
            logger.info("Run %s: nothing to process", self.run_id)
            return self._finish(report)

        outcomes = self._process_all(discovery.candidates, deadline, report)
        for candidate in discovery.candidates:
            outcome = outcomes.get(candidate.id)
            if outcome is None:
                continue
            report.outcomes.append(outcome)
            if outcome.skipped:
                report.skipped += 1
        return self._finish(report, aborted=report.abort_reason)

    def _process_all(
        self,
        candidates: List[StreamCandidate],
        deadline: Deadline,
        report: RunReport,
    ) -> Dict[str, StreamOutcome]:
        outcomes: Dict[str, StreamOutcome] = {}
        pool = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_concurrent_streams, len(candidates))),
            thread_name_prefix="stream",
        )
        futures: Dict[Future, StreamCandidate] = {
            pool.submit(self.pipeline.process, candidate, self.run_id, deadline): candidate
            for candidate in candidates
        }
        abandoning = self.deadline_policy == "abandon" and self.deadline_seconds is not None
        try:
            done, pending = wait(futures, timeout=deadline.remaining() if abandoning else None)
            for future in done:
                self._collect(future, futures[future], outcomes, deadline, report)
            if pending:
                logger.warning(
                    "Run %s: deadline reached, abandoning %d unfinished streams",
                    self.run_id,
                    len(pending),
                )
                deadline.cancel("Run abandoned at deadline")
                for future in pending:
                    future.cancel()
                    candidate = futures[future]
                    outcomes[candidate.id] = self._abandon(candidate)
        finally:
            pool.shutdown(wait=not abandoning)
        return outcomes

    def _collect(
        self,
        future: Future,
        candidate: StreamCandidate,
        outcomes: Dict[str, StreamOutcome],
        deadline: Deadline,
        report: RunReport,
    ) -> None:
        try:
            outcomes[candidate.id] = future.result()
        except LedgerError as exc:
            logger.error("[%s] Ledger unavailable: %s", candidate.id, exc)
            if report.abort_reason is None:
                report.abort_reason = f"ledger unavailable: {exc}"
                deadline.cancel("Run aborted: ledger unavailable")
            outcomes[candidate.id] = StreamOutcome(candidate.id, StreamStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("[%s] Unexpected error while processing", candidate.id)
            error = f"unexpected error: {exc}"
            try:
                transitions.release(self.ledger, candidate.id, self.run_id, error)
            except LedgerError as ledger_exc:
                logger.error("[%s] Could not record failure: %s", candidate.id, ledger_exc)
            outcomes[candidate.id] = StreamOutcome(candidate.id, StreamStatus.FAILED, error)

    def _abandon(self, candidate: StreamCandidate) -> StreamOutcome:
        try:
            record = transitions.abandon(self.ledger, candidate.id, self.run_id)
        except LedgerError as exc:
            logger.error("[%s] Could not mark as abandoned: %s", candidate.id, exc)
            record = None
        if record is None:
            return StreamOutcome(
                candidate.id, StreamStatus.DISCOVERED, transitions.ABANDONED_REASON, skipped=True
            )
        return StreamOutcome(candidate.id, StreamStatus.FAILED, transitions.ABANDONED_REASON)

    def _finish(self, report: RunReport, aborted: Optional[str] = None) -> RunReport:
        report.finished_at = utcnow()
        if aborted:
            report.aborted = True
            report.abort_reason = aborted
            logger.error(report.summary_line())
        else:
            logger.info(report.summary_line())
        return report
