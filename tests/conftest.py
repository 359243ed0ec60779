"""Shared fixtures and test utilities for bunge_digest tests.

This module contains:
- Test constants
- Helper functions for creating test objects
- Fake collaborators (downloader, ffmpeg tooling, OpenAI providers)
- Pytest hooks for validating marker behavior

All test files can import from this module using pytest's conftest.py mechanism.
No fake touches the network; audio "files" are small byte blobs in temp dirs.
"""

import os
import re
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Make the src/ layout importable when the package is not installed
SRC_DIR = Path(__file__).resolve().parent.parent / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from bunge_digest import config  # noqa: E402
from bunge_digest.audio.download import Downloader  # noqa: E402
from bunge_digest.audio.ffmpeg import SegmentExtractor, SilenceDetector  # noqa: E402
from bunge_digest.models import AudioArtifact, Chamber, StreamCandidate  # noqa: E402
from bunge_digest.utils.concurrency import CallGate  # noqa: E402
from bunge_digest.workflow.factory import create_pipeline  # noqa: E402

# Test constants
TEST_API_KEY = "sk-test123"
TEST_RUN_ID = "run-test"
TEST_STREAM_ID = "abcDEF12345"
TEST_STREAM_TITLE = "National Assembly Afternoon Sitting | Tuesday 4th March 2025"
TEST_RECORDED_AT = datetime(2025, 3, 4, 14, 30, tzinfo=timezone.utc)
TEST_STREAM_DURATION = 3 * 60 * 60.0
TEST_SUMMARY_MODEL = "fake-summary-model"
TEST_TRANSCRIPTION_MODEL = "fake-whisper"

_SEGMENT_INDEX_RE = re.compile(r"segment_(\d+)\.mp3$")


def segment_index_from_path(path):
    match = _SEGMENT_INDEX_RE.search(str(path))
    if not match:
        raise ValueError(f"Not a segment path: {path}")
    return int(match.group(1))


# Test helper functions
def create_test_config(**overrides):
    """Create test Config object with defaults.

    Silence detection is off and the summarization budget is small so that
    tests can reason about windows and rounds with short strings.

    Args:
        **overrides: Fields to override from defaults

    Returns:
        config.Config object with test defaults
    """
    defaults = {
        "openai_api_key": TEST_API_KEY,
        "workdir": "/tmp/bunge-digest-test",
        "ledger_path": "/tmp/bunge-digest-test/ledger.db",
        "log_level": "INFO",
        "user_agent": "test-agent",
        "timeout": 5,
        "silence_detection": False,
        "max_segment_seconds": 1200,
        "summary_context_tokens": 320,
        "summary_instruction_reserve_tokens": 10,
        "summary_output_tokens": 50,
        "carried_context_tokens": 0,
        "min_window_tokens": 100,
        "max_concurrent_streams": 2,
        "stage_fanout": 3,
        "download_retry": {"max_attempts": 1, "base_delay": 0.0, "max_delay": 0.0},
        "segment_retry": {"max_attempts": 1, "base_delay": 0.0, "max_delay": 0.0},
        "transcription_retry": {"max_attempts": 1, "base_delay": 0.0, "max_delay": 0.0},
        "summarization_retry": {"max_attempts": 1, "base_delay": 0.0, "max_delay": 0.0},
    }
    defaults.update(overrides)
    return config.Config(**defaults)


def create_test_candidate(stream_id=TEST_STREAM_ID, **overrides):
    """Create a StreamCandidate with defaults."""
    defaults = {
        "id": stream_id,
        "title": TEST_STREAM_TITLE,
        "recorded_at": TEST_RECORDED_AT,
        "chamber": Chamber.NATIONAL_ASSEMBLY,
        "estimated_duration": TEST_STREAM_DURATION,
        "uri": f"https://www.youtube.com/watch?v={stream_id}",
        "source": "Test Channel",
    }
    defaults.update(overrides)
    return StreamCandidate(**defaults)


def create_candidates(*stream_ids):
    """Candidates recorded one hour apart, in the given order."""
    return [
        create_test_candidate(stream_id, recorded_at=TEST_RECORDED_AT + timedelta(hours=i))
        for i, stream_id in enumerate(stream_ids)
    ]


def make_sentence(number, length=100):
    """A sentence of exactly ``length`` characters ending in a full stop."""
    head = f"Member {number:03d} rose on the bill "
    return head + "a" * (length - len(head) - 1) + "."


class FakeDownloader(Downloader):
    """Writes a small placeholder file and reports a fixed duration."""

    def __init__(self, duration=TEST_STREAM_DURATION, errors=None):
        self.duration = duration
        self.errors = dict(errors or {})
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, candidate, dest_dir):
        with self._lock:
            self.calls.append(candidate.id)
        error = self.errors.get(candidate.id)
        if error is not None:
            raise error
        os.makedirs(dest_dir, exist_ok=True)
        path = os.path.join(dest_dir, f"{candidate.id}.mp3")
        with open(path, "wb") as f:
            f.write(f"audio of {candidate.id}".encode("utf-8"))
        return AudioArtifact(path=path, duration=self.duration, size_bytes=os.path.getsize(path))


class FakeSegmentTools(SegmentExtractor, SilenceDetector):
    """Extraction writes distinct bytes per segment; silences are canned."""

    def __init__(self, silences=None, fail_indices=None):
        self.silences = list(silences or [])
        self.fail_indices = dict(fail_indices or {})
        self.extracted = []
        self.detect_calls = 0
        self._lock = threading.Lock()

    def detect_silences(self, path, duration):
        self.detect_calls += 1
        return list(self.silences)

    def extract(self, source, start, end, dest):
        index = segment_index_from_path(dest)
        with self._lock:
            self.extracted.append(index)
        error = self.fail_indices.get(index)
        if error is not None:
            raise error
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        with open(dest, "wb") as f:
            f.write(f"{source}:{start:.3f}-{end:.3f}".encode("utf-8"))
        return os.path.getsize(dest)


class FakeTranscriptionProvider:
    """Returns canned text per segment index.

    Args:
        texts: Mapping or callable giving the text for a segment index
        errors: Mapping of segment index to the exception to raise
        delays: Mapping of segment index to seconds to sleep first, used to
            force out-of-order completion
    """

    name = "Fake/Transcription"
    model = TEST_TRANSCRIPTION_MODEL

    def __init__(self, texts=None, errors=None, delays=None):
        self.texts = texts
        self.errors = dict(errors or {})
        self.delays = dict(delays or {})
        self.calls = []
        self.completion_order = []
        self._lock = threading.Lock()

    def initialize(self):
        pass

    def _text_for(self, index):
        if self.texts is None:
            return f"Transcript of segment {index}."
        if callable(self.texts):
            return self.texts(index)
        return self.texts[index]

    def transcribe(self, audio_path, language=None):
        index = segment_index_from_path(audio_path)
        with self._lock:
            self.calls.append(index)
        if index in self.delays:
            time.sleep(self.delays[index])
        error = self.errors.get(index)
        if error is not None:
            raise error
        with self._lock:
            self.completion_order.append(index)
        return self._text_for(index)


class FakeSummarizationProvider:
    """Returns a fixed-length summary for every call and records the calls.

    Args:
        output_chars: Length of every returned summary
        errors: Mapping of call number (0-based) to the exception to raise
    """

    name = "Fake/Summarization"
    model = TEST_SUMMARY_MODEL

    def __init__(self, output_chars=200, errors=None):
        self.output_chars = output_chars
        self.errors = dict(errors or {})
        self.calls = []
        self._lock = threading.Lock()

    def summarize(self, text, instruction, context=None):
        with self._lock:
            call_number = len(self.calls)
            self.calls.append({"text": text, "instruction": instruction, "context": context})
        error = self.errors.get(call_number)
        if error is not None:
            raise error
        head = f"Summary {call_number}: "
        return (head + "s" * self.output_chars)[: self.output_chars]


def build_test_pipeline(
    cfg,
    ledger,
    downloader=None,
    tools=None,
    transcription_provider=None,
    summarization_provider=None,
    gate=None,
):
    """Wire a StreamPipeline from fakes only."""
    tools = tools or FakeSegmentTools()
    return create_pipeline(
        cfg,
        ledger,
        gate or CallGate(cfg.effective_max_inflight_calls),
        downloader=downloader or FakeDownloader(),
        extractor=tools,
        detector=tools,
        transcription_provider=transcription_provider or FakeTranscriptionProvider(),
        summarization_provider=summarization_provider or FakeSummarizationProvider(),
    )


@pytest.fixture
def tmp_workdir(tmp_path):
    return str(tmp_path / "work")


def pytest_collection_modifyitems(config, items):
    """Fail loudly when an explicit marker expression collects nothing."""
    marker_expr = config.getoption("-m", default=None)
    if marker_expr in ("unit", "integration"):
        selected = [item for item in items if item.get_closest_marker(marker_expr)]
        if not selected:
            pytest.fail(
                f"ERROR: Running with -m {marker_expr} but no {marker_expr} tests collected! "
                "Check that tests carry the marker and pyproject.toml registers it."
            )
