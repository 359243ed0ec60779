"""Configuration constants for bunge_digest.

All constants are re-exported from config.py for convenience.
"""

# General defaults
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TIMEOUT_SECONDS = 20
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0 Safari/537.36"
)
DEFAULT_LANGUAGE = "en"
DEFAULT_WORKDIR = "/var/tmp/bunge-digest"
DEFAULT_LEDGER_FILENAME = "ledger.db"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Discovery
DEFAULT_CHANNEL_NAME = "Parliament of Kenya"
DEFAULT_CHANNEL_URL = "https://www.youtube.com/@ParliamentofKenyaChannel/streams"
DEFAULT_MAX_STREAMS = 3
DEFAULT_MIN_STREAM_DURATION_SECONDS = 600
YOUTUBE_VIDEO_BASE_URL = "https://youtube.com/watch"

# Download and segmentation
DEFAULT_AUDIO_FORMAT = "mp3"
DEFAULT_MAX_SEGMENT_SECONDS = 900  # 15 minutes
# OpenAI's transcription endpoint rejects uploads over 25 MB
DEFAULT_MAX_SEGMENT_BYTES = 24 * 1024 * 1024
DEFAULT_SEGMENT_BITRATE_KBPS = 64
DEFAULT_SILENCE_THRESHOLD_DB = -35
DEFAULT_SILENCE_MIN_DURATION_SECONDS = 0.6
DEFAULT_SILENCE_SEARCH_WINDOW_SECONDS = 60.0

# Transcription
PROD_DEFAULT_OPENAI_TRANSCRIPTION_MODEL = "whisper-1"

# Summarization
PROD_DEFAULT_OPENAI_SUMMARY_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_TEMPERATURE = 0.3
DEFAULT_OPENAI_TIMEOUT_SECONDS = 600
# 128k context minus 18k of headroom
DEFAULT_SUMMARY_CONTEXT_TOKENS = 128_000 - 18_000
DEFAULT_SUMMARY_INSTRUCTION_RESERVE_TOKENS = 2_000
DEFAULT_SUMMARY_OUTPUT_TOKENS = 1_500
DEFAULT_MIN_WINDOW_TOKENS = 1_000
DEFAULT_MAX_REDUCE_ROUNDS = 8
CHARS_PER_TOKEN_ESTIMATE = 4.0
DEFAULT_SYSTEM_PROMPT = "summarization/system_v1"
DEFAULT_MAP_PROMPT = "summarization/map_v1"
DEFAULT_REDUCE_PROMPT = "summarization/reduce_v1"
DEFAULT_SYNTHESIS_PROMPT = "summarization/synthesis_v1"

# Concurrency
DEFAULT_MAX_CONCURRENT_STREAMS = 2
DEFAULT_STAGE_FANOUT = 4

# Ledger
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CLAIM_LEASE_SECONDS = 6 * 60 * 60

# Scheduling
DEFAULT_SCHEDULE = "0 */4 * * *"  # every four hours
DEFAULT_REPORT_HISTORY = 100  # reports kept by a long-lived scheduler
