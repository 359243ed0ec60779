from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
    ValidationInfo,
)

from . import config_constants
from .models import Chamber
from .utils.retry import RetryPolicy


# Tests build Config objects explicitly and must never pick up a developer's
# .env file.
def _is_test_environment() -> bool:
    """Check if we're running in a test environment."""
    import sys

    if "pytest" in sys.modules or "PYTEST_CURRENT_TEST" in os.environ:
        return True
    if os.environ.get("TESTING", "").lower() in ("1", "true", "yes"):
        return True
    return False


if not _is_test_environment():
    try:
        load_dotenv(override=False)
    except (PermissionError, OSError):
        pass

DEFAULT_LOG_LEVEL = config_constants.DEFAULT_LOG_LEVEL
DEFAULT_TIMEOUT_SECONDS = config_constants.DEFAULT_TIMEOUT_SECONDS
DEFAULT_USER_AGENT = config_constants.DEFAULT_USER_AGENT
DEFAULT_LANGUAGE = config_constants.DEFAULT_LANGUAGE
DEFAULT_WORKDIR = config_constants.DEFAULT_WORKDIR
DEFAULT_LEDGER_FILENAME = config_constants.DEFAULT_LEDGER_FILENAME
VALID_LOG_LEVELS = config_constants.VALID_LOG_LEVELS
DEFAULT_CHANNEL_NAME = config_constants.DEFAULT_CHANNEL_NAME
DEFAULT_CHANNEL_URL = config_constants.DEFAULT_CHANNEL_URL
DEFAULT_MAX_STREAMS = config_constants.DEFAULT_MAX_STREAMS
DEFAULT_SCHEDULE = config_constants.DEFAULT_SCHEDULE
CHARS_PER_TOKEN_ESTIMATE = config_constants.CHARS_PER_TOKEN_ESTIMATE


def _default_channels() -> List["ChannelConfig"]:
    return [ChannelConfig(name=DEFAULT_CHANNEL_NAME, url=DEFAULT_CHANNEL_URL)]


def _env_value(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None


class ChannelConfig(BaseModel):
    """One source channel to discover streams from.

    ``chamber`` tags every stream from the channel; leave it unset for a
    channel that carries both houses and the chamber is inferred from the
    stream title instead.
    """

    name: str
    url: str
    chamber: Optional[Chamber] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("url", mode="before")
    @classmethod
    def _strip_url(cls, value: Any) -> str:
        value = str(value or "").strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"channel url must be an http(s) URL, got: {value!r}")
        return value


class Config(BaseModel):
    """Configuration for the digest pipeline.

    Fields map one-to-one onto keys of the YAML/JSON config file. Secrets and
    deployment paths fall back to environment variables when not set in the
    file.

    Example:
        >>> cfg = Config(max_streams=2, openai_api_key="sk-test")
        >>> cfg.window_tokens
        105000
    """

    # General
    log_level: str = Field(default=DEFAULT_LOG_LEVEL, description="Logging level.")
    log_file: Optional[str] = Field(default=None, description="Optional log file path.")
    workdir: str = Field(
        default=DEFAULT_WORKDIR,
        description="Directory for downloaded audio, segments and caches.",
    )
    ledger_path: Optional[str] = Field(
        default=None,
        description="SQLite ledger path (default: <workdir>/ledger.db). ':memory:' "
        "selects the in-memory ledger.",
    )
    timeout: int = Field(default=DEFAULT_TIMEOUT_SECONDS, description="HTTP timeout in seconds.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="HTTP User-Agent header.")

    # Discovery
    channels: List[ChannelConfig] = Field(
        default_factory=_default_channels, description="Channels to discover streams from."
    )
    max_streams: int = Field(
        default=DEFAULT_MAX_STREAMS, description="Maximum streams processed per run."
    )
    discovery_order: Literal["oldest_first", "newest_first"] = Field(
        default="oldest_first", description="Order in which discovered streams are taken."
    )
    min_stream_duration_seconds: float = Field(
        default=config_constants.DEFAULT_MIN_STREAM_DURATION_SECONDS,
        description="Streams shorter than this are ignored.",
    )

    # Download
    ytdlp_cookies_path: Optional[str] = Field(
        default=None, description="Netscape cookies file passed to yt-dlp."
    )
    download_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=60.0)
    )

    # Segmentation
    max_segment_seconds: float = Field(default=config_constants.DEFAULT_MAX_SEGMENT_SECONDS)
    max_segment_bytes: int = Field(default=config_constants.DEFAULT_MAX_SEGMENT_BYTES)
    segment_bitrate_kbps: int = Field(default=config_constants.DEFAULT_SEGMENT_BITRATE_KBPS)
    silence_detection: bool = Field(
        default=True, description="Prefer cutting segments at detected silences."
    )
    silence_threshold_db: float = Field(default=config_constants.DEFAULT_SILENCE_THRESHOLD_DB)
    silence_min_duration: float = Field(
        default=config_constants.DEFAULT_SILENCE_MIN_DURATION_SECONDS
    )
    silence_search_window_seconds: float = Field(
        default=config_constants.DEFAULT_SILENCE_SEARCH_WINDOW_SECONDS,
        description="How far before the size limit a silence may be used as the cut.",
    )
    segment_count: Optional[int] = Field(
        default=None, description="Split into exactly this many equal segments (fixed policy)."
    )
    audio_cleanup: bool = Field(
        default=False, description="Denoise and loudness-normalize audio before segmenting."
    )
    segment_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=5.0)
    )

    # Transcription
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key.")
    openai_api_base: Optional[str] = Field(default=None, description="OpenAI API base URL.")
    openai_timeout: float = Field(
        default=config_constants.DEFAULT_OPENAI_TIMEOUT_SECONDS,
        description="Timeout in seconds for one OpenAI request.",
    )
    openai_transcription_model: str = Field(
        default=config_constants.PROD_DEFAULT_OPENAI_TRANSCRIPTION_MODEL
    )
    language: str = Field(default=DEFAULT_LANGUAGE, description="Spoken language hint.")
    transcription_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    transcript_cleaning: bool = Field(
        default=True, description="Strip Whisper number-chain garbage from transcripts."
    )

    # Summarization
    openai_summary_model: str = Field(default=config_constants.PROD_DEFAULT_OPENAI_SUMMARY_MODEL)
    openai_temperature: float = Field(default=config_constants.DEFAULT_OPENAI_TEMPERATURE)
    summary_context_tokens: int = Field(
        default=config_constants.DEFAULT_SUMMARY_CONTEXT_TOKENS,
        description="Usable model context (tokens).",
    )
    summary_instruction_reserve_tokens: int = Field(
        default=config_constants.DEFAULT_SUMMARY_INSTRUCTION_RESERVE_TOKENS
    )
    summary_output_tokens: int = Field(
        default=config_constants.DEFAULT_SUMMARY_OUTPUT_TOKENS,
        description="Maximum tokens generated per summarization call.",
    )
    carried_context_tokens: Optional[int] = Field(
        default=None,
        description="Tokens of preceding text carried into each window "
        "(default: summary_output_tokens, 0 disables).",
    )
    carried_context_source: Literal["fragment", "transcript"] = Field(default="fragment")
    min_window_tokens: int = Field(default=config_constants.DEFAULT_MIN_WINDOW_TOKENS)
    reduce_batch_tokens: Optional[int] = Field(
        default=None, description="Input budget of one reduce call (default: window_tokens)."
    )
    synthesis_input_tokens: Optional[int] = Field(
        default=None,
        description="Fragments are reduced until they fit this budget (default: window_tokens).",
    )
    max_reduce_rounds: int = Field(default=config_constants.DEFAULT_MAX_REDUCE_ROUNDS)
    chars_per_token: float = Field(default=CHARS_PER_TOKEN_ESTIMATE)
    summarization_retry: RetryPolicy = Field(default_factory=RetryPolicy)

    # Concurrency
    max_concurrent_streams: int = Field(default=config_constants.DEFAULT_MAX_CONCURRENT_STREAMS)
    stage_fanout: int = Field(default=config_constants.DEFAULT_STAGE_FANOUT)
    max_inflight_calls: Optional[int] = Field(
        default=None,
        description="Ceiling on concurrent external calls (default and maximum: "
        "max_concurrent_streams * stage_fanout).",
    )

    # Ledger
    max_attempts: int = Field(
        default=config_constants.DEFAULT_MAX_ATTEMPTS,
        description="Runs a stream may be attempted before its failure is terminal.",
    )
    claim_lease_seconds: int = Field(default=config_constants.DEFAULT_CLAIM_LEASE_SECONDS)

    # Run and schedule
    run_deadline_seconds: Optional[float] = Field(default=None)
    deadline_policy: Literal["finish", "abandon"] = Field(default="finish")
    schedule: str = Field(default=DEFAULT_SCHEDULE, description="Cron expression for `cron`.")
    overlap_policy: Literal["skip", "queue"] = Field(default="skip")

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _preprocess_config_data(cls, data: Any) -> Any:
        """Fill unset deployment settings from environment variables."""
        if not isinstance(data, dict):
            return data
        data = dict(data)

        env_log_level = _env_value("LOG_LEVEL")
        if env_log_level and env_log_level.upper() in VALID_LOG_LEVELS:
            data["log_level"] = env_log_level.upper()

        env_fallbacks = (
            ("openai_api_key", ("OPENAI_API_KEY",)),
            ("openai_api_base", ("OPENAI_API_BASE",)),
            ("ledger_path", ("BUNGE_LEDGER_PATH", "DATABASE_PATH")),
            ("ytdlp_cookies_path", ("YTDLP_COOKIES_PATH",)),
            ("schedule", ("CRON_SCHEDULE",)),
            ("max_streams", ("MAX_STREAMS_TO_PROCESS",)),
            ("workdir", ("BUNGE_WORKDIR",)),
            ("log_file", ("LOG_FILE",)),
        )
        for field_name, env_names in env_fallbacks:
            if data.get(field_name) is not None:
                continue
            for env_name in env_names:
                env_value = _env_value(env_name)
                if env_value:
                    data[field_name] = env_value
                    break
        return data

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        if value is None:
            return DEFAULT_LOG_LEVEL
        return str(value).strip().upper() or DEFAULT_LOG_LEVEL

    @field_validator("log_level", mode="after")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        if value not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got: {value}")
        return value

    @field_validator(
        "log_file", "ledger_path", "ytdlp_cookies_path", "openai_api_key", "openai_api_base",
        mode="before",
    )
    @classmethod
    def _strip_optional(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator("workdir", mode="before")
    @classmethod
    def _strip_workdir(cls, value: Any) -> str:
        if value is None:
            return DEFAULT_WORKDIR
        return str(value).strip() or DEFAULT_WORKDIR

    @field_validator("max_streams", mode="before")
    @classmethod
    def _coerce_max_streams(cls, value: Any) -> int:
        if value is None or value == "":
            return DEFAULT_MAX_STREAMS
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("max_streams must be an integer") from exc
        if parsed < 1:
            raise ValueError(f"max_streams must be at least 1, got: {parsed}")
        return parsed

    @field_validator("timeout", mode="before")
    @classmethod
    def _ensure_timeout(cls, value: Any) -> int:
        if value is None or value == "":
            return DEFAULT_TIMEOUT_SECONDS
        try:
            timeout = int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("timeout must be an integer") from exc
        return max(1, timeout)

    @field_validator("channels", mode="after")
    @classmethod
    def _require_channels(cls, value: List[ChannelConfig]) -> List[ChannelConfig]:
        if not value:
            raise ValueError("at least one channel must be configured")
        return value

    @field_validator(
        "max_segment_seconds",
        "max_segment_bytes",
        "segment_bitrate_kbps",
        "summary_context_tokens",
        "summary_output_tokens",
        "min_window_tokens",
        "max_reduce_rounds",
        "chars_per_token",
        "openai_timeout",
        "max_concurrent_streams",
        "stage_fanout",
        "max_attempts",
        "claim_lease_seconds",
        mode="after",
    )
    @classmethod
    def _require_positive(cls, value: Any, info: ValidationInfo) -> Any:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive, got: {value}")
        return value

    @field_validator(
        "segment_count",
        "reduce_batch_tokens",
        "synthesis_input_tokens",
        "max_inflight_calls",
        "run_deadline_seconds",
        mode="after",
    )
    @classmethod
    def _require_positive_if_set(cls, value: Any, info: ValidationInfo) -> Any:
        if value is not None and value <= 0:
            raise ValueError(f"{info.field_name} must be positive when set, got: {value}")
        return value

    @field_validator("summary_instruction_reserve_tokens", "carried_context_tokens", mode="after")
    @classmethod
    def _require_non_negative(cls, value: Any, info: ValidationInfo) -> Any:
        if value is not None and value < 0:
            raise ValueError(f"{info.field_name} must not be negative, got: {value}")
        return value

    @field_validator("schedule", mode="after")
    @classmethod
    def _validate_schedule(cls, value: str) -> str:
        from croniter import croniter

        value = value.strip()
        if not croniter.is_valid(value):
            raise ValueError(f"schedule is not a valid cron expression: {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Config":
        if self.window_tokens < self.min_window_tokens:
            raise ValueError(
                f"Summarization window of {self.window_tokens} tokens is below "
                f"min_window_tokens={self.min_window_tokens}. Raise summary_context_tokens "
                "or lower the instruction reserve, output or carried context budgets."
            )
        ceiling = self.max_concurrent_streams * self.stage_fanout
        if self.max_inflight_calls is not None and self.max_inflight_calls > ceiling:
            raise ValueError(
                f"max_inflight_calls={self.max_inflight_calls} exceeds "
                f"max_concurrent_streams * stage_fanout = {ceiling}"
            )
        return self

    @property
    def effective_carried_context_tokens(self) -> int:
        if self.carried_context_tokens is None:
            return self.summary_output_tokens
        return self.carried_context_tokens

    @property
    def window_tokens(self) -> int:
        """Transcript tokens one map call may receive."""
        return (
            self.summary_context_tokens
            - self.summary_instruction_reserve_tokens
            - self.summary_output_tokens
            - self.effective_carried_context_tokens
        )

    @property
    def effective_reduce_batch_tokens(self) -> int:
        return self.reduce_batch_tokens or self.window_tokens

    @property
    def effective_synthesis_input_tokens(self) -> int:
        return self.synthesis_input_tokens or self.window_tokens

    @property
    def effective_max_inflight_calls(self) -> int:
        ceiling = self.max_concurrent_streams * self.stage_fanout
        return min(self.max_inflight_calls or ceiling, ceiling)

    @property
    def resolved_ledger_path(self) -> str:
        if self.ledger_path:
            return self.ledger_path
        return str(Path(self.workdir) / DEFAULT_LEDGER_FILENAME)


def load_config_file(
    path: str,
) -> Dict[str, Any]:
    """Load configuration from a JSON or YAML file.

    Args:
        path: Path to configuration file (JSON or YAML)

    Returns:
        Dictionary containing configuration data

    Raises:
        ValueError: If file path is empty, file not found, invalid format, or invalid data
        OSError: If file cannot be read
    """
    if not path:
        raise ValueError("Config file path cannot be empty")

    cfg_path = Path(path).expanduser()
    try:
        resolved = cfg_path.resolve()
    except (OSError, RuntimeError) as exc:
        raise ValueError(f"Invalid config path: {path} ({exc})") from exc

    if not resolved.exists():
        raise ValueError(f"Config file not found: {resolved}")

    suffix = resolved.suffix.lower()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Failed to read config file {resolved}: {exc}") from exc

    if suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON config file {resolved}: {exc}") from exc
    elif suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML config file {resolved}: {exc}") from exc
    else:
        raise ValueError(f"Unsupported config file type: {resolved.suffix}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config file must contain a mapping/object at the top level")

    return data
