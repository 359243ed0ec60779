"""Per-stream pipeline: Download -> Segment -> Transcribe -> Summarize.

Every stage transition is written to the ledger through the state machine in
:mod:`bunge_digest.ledger.transitions`. Stages are idempotent against the
on-disk caches (audio by stream id, segment plan and files, transcript text
by segment content hash), so a resumed stream re-runs earlier stages cheaply
while its status stays where it was.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from ..audio.download import Downloader
from ..audio.segmentation import Segmenter
from ..exceptions import (
    DeadlineExceededError,
    LedgerConflictError,
    LedgerError,
    SegmentationError,
    StageError,
)
from ..ledger import transitions
from ..ledger.base import Ledger
from ..ledger.lease import LeaseKeeper
from ..logging_setup import stream_logger
from ..models import (
    AudioArtifact,
    AudioSegment,
    FinalSummary,
    ProcessingRecord,
    StreamCandidate,
    StreamOutcome,
    StreamStatus,
    utcnow,
)
from ..summarization.map_reduce import MapReduceSummarizer
from ..transcription.stage import assemble_transcript, TranscriptionStage
from ..utils.concurrency import CallGate, Deadline, StreamDeadline
from ..utils.retry import call_with_retry, NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

AUDIO_DIRNAME = "audio"
SEGMENTS_DIRNAME = "segments"


class StreamPipeline:
    """Carries one stream from claim to Completed (or Failed).

    The pipeline holds no per-run state; one instance serves every stream
    of every run.

    Args:
        ledger: Processing ledger
        downloader: Audio downloader
        segmenter: Segment planner/extractor
        transcriber: Transcription stage
        summarizer: Map-reduce summarization engine
        gate: Global call gate (downloads pass through it too)
        workdir: Root of the on-disk caches
        download_retry: Retry policy for downloads
        claim_lease_seconds: Lease written on claim and refreshed at each stage
            and before external calls
        lease_refresh_seconds: Minimum seconds between lease refreshes within
            a stage (a quarter of the lease when omitted)
        max_attempts: Attempts before a retryable failure becomes terminal
        audio_cleaner: Optional ``(source, dest)`` callable run on the
            downloaded audio before segmentation
    """

    def __init__(
        self,
        ledger: Ledger,
        downloader: Downloader,
        segmenter: Segmenter,
        transcriber: TranscriptionStage,
        summarizer: MapReduceSummarizer,
        gate: CallGate,
        workdir: str,
        download_retry: RetryPolicy = NO_RETRY,
        claim_lease_seconds: int = 6 * 60 * 60,
        lease_refresh_seconds: Optional[float] = None,
        max_attempts: int = 3,
        audio_cleaner: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.ledger = ledger
        self.downloader = downloader
        self.segmenter = segmenter
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.gate = gate
        self.workdir = workdir
        self.download_retry = download_retry
        self.claim_lease_seconds = claim_lease_seconds
        self.lease_refresh_seconds = lease_refresh_seconds
        self.max_attempts = max_attempts
        self.audio_cleaner = audio_cleaner

    @property
    def audio_dir(self) -> str:
        return os.path.join(self.workdir, AUDIO_DIRNAME)

    @property
    def segments_root(self) -> str:
        return os.path.join(self.workdir, SEGMENTS_DIRNAME)

    def process(
        self,
        candidate: StreamCandidate,
        run_id: str,
        deadline: Optional[Deadline] = None,
    ) -> StreamOutcome:
        """Run every stage for ``candidate`` on behalf of ``run_id``.

        Stream failures are recorded in the ledger and returned as a Failed
        outcome; they never propagate.

        Raises:
            LedgerUnavailableError: The ledger store failed (aborts the Run)
        """
        log = stream_logger(logger, candidate.id)

        if deadline is not None and deadline.expired():
            log.info("Run deadline reached before the stream started; leaving it for later")
            return StreamOutcome(
                candidate.id, StreamStatus.DISCOVERED, "run deadline reached", skipped=True
            )

        try:
            record = transitions.claim(
                self.ledger,
                candidate,
                run_id,
                self.claim_lease_seconds,
                self.max_attempts,
            )
        except LedgerConflictError:
            log.info("Claimed by a concurrent run, skipping")
            return StreamOutcome(candidate.id, StreamStatus.DISCOVERED, skipped=True)
        if record is None:
            current = self.ledger.get(candidate.id)
            status = current.status if current else StreamStatus.DISCOVERED
            return StreamOutcome(candidate.id, status, skipped=True)

        log.info(
            "Processing '%s' (attempt %d, from %s)",
            candidate.title,
            record.attempt_count,
            record.status.value,
        )
        try:
            return self._run_stages(candidate, record, deadline, log)
        except LedgerConflictError:
            log.warning("Lost the claim to another writer; discarding this run's work")
            return StreamOutcome(candidate.id, record.status, "claim lost", skipped=True)

    def _run_stages(
        self,
        candidate: StreamCandidate,
        record: ProcessingRecord,
        deadline: Optional[Deadline],
        log: logging.LoggerAdapter,
    ) -> StreamOutcome:
        keeper = LeaseKeeper(
            self.ledger, record, self.claim_lease_seconds, interval=self.lease_refresh_seconds
        )
        checkpoint = StreamDeadline(deadline, keeper.touch)
        try:
            artifact = self._download(candidate, checkpoint)
            artifact = self._clean(candidate, artifact)
            segments = self._segment(candidate, artifact, checkpoint)

            keeper.advance(StreamStatus.TRANSCRIBING)
            chunks = self.transcriber.run(candidate.id, segments, checkpoint)
            try:
                transcript = assemble_transcript(chunks, len(segments))
            except ValueError as exc:
                raise StageError(StreamStatus.TRANSCRIBING, exc) from exc

            keeper.advance(StreamStatus.SUMMARIZING)
            result = self.summarizer.summarize(
                candidate.id,
                transcript,
                params={
                    "title": candidate.title,
                    "chamber": _chamber_label(candidate),
                    "recorded_on": candidate.recorded_at.strftime("%d %B %Y"),
                },
                deadline=checkpoint,
            )
        except StageError as exc:
            if isinstance(exc.cause, LedgerError):
                # A lease refresh failed inside a stage
                raise exc.cause
            return self._record_failure(keeper.record, exc, log)

        summary = FinalSummary(
            stream_id=candidate.id,
            text=result.text,
            generated_at=utcnow(),
            model_version=result.model_version,
            prompts=result.prompts,
        )
        transitions.complete(self.ledger, keeper.record, summary)
        log.info(
            "Completed: %d characters summarized into %d (%d windows, %d reduce rounds)",
            len(transcript),
            len(result.text),
            result.trace.window_count,
            result.trace.reduce_rounds,
        )
        return StreamOutcome(candidate.id, StreamStatus.COMPLETED)

    def _download(self, candidate: StreamCandidate, deadline: Optional[Deadline]) -> AudioArtifact:
        try:
            return call_with_retry(
                lambda: self.gate.call(lambda: self.downloader.fetch(candidate, self.audio_dir)),
                self.download_retry,
                description=f"[{candidate.id}] Download",
                before_attempt=deadline.check if deadline else None,
            )
        except Exception as exc:
            raise StageError(StreamStatus.DOWNLOADING, exc) from exc

    def _clean(self, candidate: StreamCandidate, artifact: AudioArtifact) -> AudioArtifact:
        if self.audio_cleaner is None:
            return artifact
        cleaned = str(Path(self.audio_dir) / f"{candidate.id}.clean.mp3")
        try:
            if not (os.path.exists(cleaned) and os.path.getsize(cleaned) > 0):
                self.audio_cleaner(artifact.path, cleaned)
        except Exception as exc:
            raise StageError(StreamStatus.DOWNLOADING, exc, detail=f"audio cleanup: {exc}") from exc
        return AudioArtifact(
            path=cleaned, duration=artifact.duration, size_bytes=os.path.getsize(cleaned)
        )

    def _segment(
        self,
        candidate: StreamCandidate,
        artifact: AudioArtifact,
        deadline: Optional[Deadline],
    ) -> List[AudioSegment]:
        try:
            return self.segmenter.segment(artifact, candidate.id, self.segments_root, deadline)
        except SegmentationError as exc:
            detail = str(exc)
            if exc.index is not None:
                detail = f"segment {exc.index + 1} (index {exc.index}): {exc}"
            raise StageError(
                StreamStatus.DOWNLOADING, exc, failed_index=exc.index, detail=detail
            ) from exc
        except Exception as exc:
            raise StageError(StreamStatus.DOWNLOADING, exc) from exc

    def _record_failure(
        self,
        record: ProcessingRecord,
        exc: StageError,
        log: logging.LoggerAdapter,
    ) -> StreamOutcome:
        retryable = exc.retryable
        if isinstance(exc.cause, DeadlineExceededError):
            log.warning("Stopped at the run deadline during %s", exc.stage.value)
        else:
            log.error("%s (%s)", exc, exc.kind.value)
        # The record keeps its furthest status so a retry resumes there
        try:
            transitions.fail(
                self.ledger,
                record,
                record.status,
                exc.detail,
                retryable=retryable,
                failed_index=exc.failed_index,
            )
        except LedgerConflictError:
            log.warning("Failure not recorded: the record changed under this run")
            return StreamOutcome(record.stream_id, StreamStatus.FAILED, exc.detail, skipped=True)
        return StreamOutcome(record.stream_id, StreamStatus.FAILED, exc.detail)


def _chamber_label(candidate: StreamCandidate) -> str:
    labels = {"NationalAssembly": "National Assembly", "Senate": "Senate"}
    return labels.get(candidate.chamber.value, "Parliament")
