"""Custom exceptions for bunge_digest.

This module defines structured exceptions for collaborator and pipeline
failures. Every exception carries an :class:`ErrorKind` so callers can decide
what to do without inspecting messages:

- TRANSIENT: retried with backoff at the stage where it happens
- PERMANENT: stream marked Failed immediately, no retry
- CAPACITY: content still exceeds the model budget, surfaced to an operator
- INFRASTRUCTURE: the ledger is unavailable, the whole Run aborts

Exception Hierarchy:
    PipelineError (base)
    ├── NotFoundError, AuthRequiredError, InvalidAudioError - permanent
    ├── NetworkError, RateLimitedError, DeadlineExceededError - transient
    ├── ServiceError - transient or permanent
    ├── ContextTooLongError, CapacityError - capacity
    ├── SegmentationError - transient
    │   └── SegmentTooLargeError - permanent
    ├── StageError - wraps a stream-level failure with stage context
    └── LedgerError
        ├── LedgerConflictError - lost compare-and-swap race
        ├── LedgerUnavailableError - infrastructure
        └── InvalidTransitionError - state machine violation
ConfigError - startup failure
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import StreamStatus


class ErrorKind(str, Enum):
    """How a failure should be handled."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CAPACITY = "capacity"
    INFRASTRUCTURE = "infrastructure"


class PipelineError(Exception):
    """Base exception for all pipeline and collaborator errors.

    Attributes:
        provider: Name of the collaborator (e.g., "OpenAI/Transcription", "yt-dlp")
        message: Human-readable error message
        suggestion: Optional suggestion for resolving the error
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        provider: str = "Unknown",
        suggestion: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.suggestion = suggestion
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message with provider and suggestion."""
        parts = [f"[{self.provider}] {self.message}"]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " ".join(parts)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class NotFoundError(PipelineError):
    """Raised when a stream or its audio no longer exists upstream."""

    kind = ErrorKind.PERMANENT


class AuthRequiredError(PipelineError):
    """Raised when a collaborator rejects our credentials.

    Example:
        >>> raise AuthRequiredError(
        ...     message="Sign in to confirm you're not a bot",
        ...     provider="yt-dlp",
        ...     suggestion="Refresh the cookies file referenced by YTDLP_COOKIES_PATH",
        ... )
    """

    kind = ErrorKind.PERMANENT


class NetworkError(PipelineError):
    """Raised on connection resets, DNS failures and timeouts."""

    kind = ErrorKind.TRANSIENT


class RateLimitedError(PipelineError):
    """Raised when a service asks us to slow down (HTTP 429).

    Attributes:
        retry_after: Seconds the service asked us to wait, if it said so
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        provider: str = "Unknown",
        suggestion: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message=message, provider=provider, suggestion=suggestion)


class InvalidAudioError(PipelineError):
    """Raised when the transcription service rejects a segment's audio."""

    kind = ErrorKind.PERMANENT


class ServiceError(PipelineError):
    """Raised when a remote service fails.

    5xx-style failures are transient; anything else the service rejects is
    permanent.
    """

    def __init__(
        self,
        message: str,
        provider: str = "Unknown",
        suggestion: Optional[str] = None,
        retryable: bool = True,
    ) -> None:
        self.kind = ErrorKind.TRANSIENT if retryable else ErrorKind.PERMANENT
        super().__init__(message=message, provider=provider, suggestion=suggestion)


class DeadlineExceededError(PipelineError):
    """Raised when a Run's deadline passes before a stream finished."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str = "Run deadline exceeded") -> None:
        super().__init__(message=message, provider="Run")


class ContextTooLongError(PipelineError):
    """Raised when the summarization service reports the prompt is too long."""

    kind = ErrorKind.CAPACITY


class CapacityError(PipelineError):
    """Raised when content cannot be brought under the model's input budget.

    Example:
        >>> raise CapacityError(
        ...     message="Reduce round 3 made no progress (4 fragments)",
        ...     provider="MapReduce",
        ...     suggestion="Lower summary_output_tokens or raise summary_context_tokens",
        ... )
    """

    kind = ErrorKind.CAPACITY


class SegmentationError(PipelineError):
    """Raised when one audio segment cannot be extracted.

    Attributes:
        index: Sequence index of the segment that failed, if known
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        provider: str = "ffmpeg",
        suggestion: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        self.index = index
        super().__init__(message=message, provider=provider, suggestion=suggestion)


class SegmentTooLargeError(SegmentationError):
    """Raised when an extracted segment is above the provider upload limit."""

    kind = ErrorKind.PERMANENT


class StageError(Exception):
    """Raised when a pipeline stage fails for one stream.

    Wraps the underlying cause and records which stage and which
    segment/window index failed, so the ledger record can point an operator
    at it.

    Attributes:
        stage: Status that was active when the failure happened
        cause: Underlying exception
        failed_index: Segment or window index that failed, if any
        detail: Human-readable description used as ``last_error``
    """

    def __init__(
        self,
        stage: "StreamStatus",
        cause: BaseException,
        failed_index: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.failed_index = failed_index
        self.detail = detail or str(cause)
        super().__init__(f"{stage.value} failed: {self.detail}")

    @property
    def kind(self) -> ErrorKind:
        if isinstance(self.cause, PipelineError):
            return self.cause.kind
        from .utils.retryable_errors import classify_error

        return classify_error(self.cause)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class LedgerError(PipelineError):
    """Base exception for ledger store errors."""

    kind = ErrorKind.INFRASTRUCTURE


class LedgerConflictError(LedgerError):
    """Raised when a compare-and-swap loses against a concurrent writer.

    Attributes:
        stream_id: Stream whose record changed underneath us
    """

    kind = ErrorKind.PERMANENT

    def __init__(self, stream_id: str, message: Optional[str] = None) -> None:
        self.stream_id = stream_id
        super().__init__(
            message=message or f"Record for {stream_id} was modified concurrently",
            provider="Ledger",
        )


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger store cannot be reached or written."""

    kind = ErrorKind.INFRASTRUCTURE

    def __init__(self, message: str, suggestion: Optional[str] = None) -> None:
        super().__init__(message=message, provider="Ledger", suggestion=suggestion)


class InvalidTransitionError(LedgerError):
    """Raised when a status change would break the record state machine."""

    kind = ErrorKind.PERMANENT

    def __init__(self, stream_id: str, current: str, target: str) -> None:
        self.stream_id = stream_id
        self.current = current
        self.target = target
        super().__init__(
            message=f"Illegal transition for {stream_id}: {current} -> {target}",
            provider="Ledger",
        )


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid at startup.

    Attributes:
        config_key: Offending configuration key, if known
    """

    def __init__(self, message: str, config_key: Optional[str] = None) -> None:
        self.config_key = config_key
        if config_key and config_key not in message:
            message = f"{message} (config key: {config_key})"
        super().__init__(message)
