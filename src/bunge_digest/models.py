from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Chamber(str, Enum):
    """House of Parliament a stream was recorded in."""

    NATIONAL_ASSEMBLY = "NationalAssembly"
    SENATE = "Senate"
    UNKNOWN = "Unknown"


class StreamStatus(str, Enum):
    """Processing status of one stream in the ledger.

    The forward order is Discovered -> Downloading -> Transcribing ->
    Summarizing -> Completed. Failed may be entered from any active status.
    """

    DISCOVERED = "Discovered"
    DOWNLOADING = "Downloading"
    TRANSCRIBING = "Transcribing"
    SUMMARIZING = "Summarizing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def rank(self) -> int:
        """Position in the forward order (Failed has no position)."""
        return _STATUS_ORDER.index(self) if self in _STATUS_ORDER else -1

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


_STATUS_ORDER = (
    StreamStatus.DISCOVERED,
    StreamStatus.DOWNLOADING,
    StreamStatus.TRANSCRIBING,
    StreamStatus.SUMMARIZING,
    StreamStatus.COMPLETED,
)
ACTIVE_STATUSES = frozenset(
    {StreamStatus.DOWNLOADING, StreamStatus.TRANSCRIBING, StreamStatus.SUMMARIZING}
)


@dataclass(frozen=True)
class StreamCandidate:
    """A stream found by discovery.

    Attributes:
        id: Stable external identifier (the YouTube video id).
        title: Stream title as published.
        recorded_at: When the sitting was streamed (UTC).
        chamber: House the sitting belongs to.
        estimated_duration: Length in seconds as advertised by the source.
        uri: URI the downloader fetches.
        source: Name of the channel the stream was found on.

    Example:
        >>> candidate = StreamCandidate(
        ...     id="dQw4w9WgXcQ",
        ...     title="National Assembly Afternoon Sitting",
        ...     recorded_at=utcnow(),
        ...     chamber=Chamber.NATIONAL_ASSEMBLY,
        ...     estimated_duration=10800.0,
        ...     uri="https://youtube.com/watch?v=dQw4w9WgXcQ",
        ... )
    """

    id: str
    title: str
    recorded_at: datetime
    chamber: Chamber
    estimated_duration: float
    uri: str
    source: str = ""


@dataclass
class ProcessingRecord:
    """Durable per-stream processing state owned by the ledger.

    ``version`` increases on every write and is what compare-and-swap
    updates are checked against.
    """

    stream_id: str
    status: StreamStatus = StreamStatus.DISCOVERED
    attempt_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0
    failed_stage: Optional[StreamStatus] = None
    failed_index: Optional[int] = None
    retryable: bool = True
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    title: str = ""
    chamber: Chamber = Chamber.UNKNOWN
    recorded_at: Optional[datetime] = None

    def copy(self, **changes: Any) -> "ProcessingRecord":
        return replace(self, **changes)

    @classmethod
    def for_candidate(cls, candidate: StreamCandidate) -> "ProcessingRecord":
        return cls(
            stream_id=candidate.id,
            title=candidate.title,
            chamber=candidate.chamber,
            recorded_at=candidate.recorded_at,
        )


@dataclass(frozen=True)
class AudioArtifact:
    """Local audio file produced by the downloader."""

    path: str
    duration: float
    size_bytes: int


@dataclass(frozen=True)
class AudioSegment:
    """A size-bounded slice of a stream's audio.

    Offsets are seconds from the start of the stream audio.
    """

    stream_id: str
    index: int
    start: float
    end: float
    byte_size: int = 0
    path: Optional[str] = None

    @property
    def segment_id(self) -> str:
        return f"{self.stream_id}:{self.index:03d}"

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class TranscriptChunk:
    """Text produced for one audio segment."""

    segment_id: str
    index: int
    text: str


@dataclass(frozen=True)
class SummaryFragment:
    """Summary of one transcript window (round 0) or one reduce batch.

    Attributes:
        index: Position among the fragments of its round.
        text: Generated summary text.
        source_range: First and last index of the inputs it covers.
        round: 0 for map fragments, >= 1 for reduce rounds.
    """

    index: int
    text: str
    source_range: Tuple[int, int] = (0, 0)
    round: int = 0


@dataclass(frozen=True)
class FinalSummary:
    """Final summary of a stream, persisted by the ledger.

    ``prompts`` maps each prompt template used to the SHA256 of its source.
    """

    stream_id: str
    text: str
    generated_at: datetime
    model_version: str
    prompts: Dict[str, str] = field(default_factory=dict)


@dataclass
class StreamOutcome:
    """What happened to one stream during a Run."""

    stream_id: str
    status: StreamStatus
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class RunReport:
    """Aggregate outcome of one Run.

    A Run is never atomic across its streams: some may complete while
    siblings fail. ``aborted`` is set only for infrastructure failures.
    """

    run_id: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcomes: List[StreamOutcome] = field(default_factory=list)
    skipped: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None

    @property
    def completed(self) -> int:
        return sum(
            1 for o in self.outcomes if o.status is StreamStatus.COMPLETED and not o.skipped
        )

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is StreamStatus.FAILED and not o.skipped)

    def summary_line(self) -> str:
        line = (
            f"Run {self.run_id}: completed={self.completed} failed={self.failed} "
            f"skipped={self.skipped}"
        )
        if self.aborted:
            line += f" (aborted: {self.abort_reason})"
        return line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "streams": [
                {
                    "stream_id": o.stream_id,
                    "status": o.status.value,
                    "error": o.error,
                    "skipped": o.skipped,
                }
                for o in self.outcomes
            ],
        }
