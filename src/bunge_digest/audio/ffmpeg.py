"""ffmpeg/ffprobe tooling used by download and segmentation."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from ..exceptions import InvalidAudioError, SegmentationError

logger = logging.getLogger(__name__)

FFMPEG_TIMEOUT_SECONDS = 600
FFPROBE_TIMEOUT_SECONDS = 30

_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)")


def _check_ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def _check_ffprobe_available() -> bool:
    return shutil.which("ffprobe") is not None


def parse_silences(stderr: str, duration: Optional[float] = None) -> List[Tuple[float, float]]:
    """Read ``silencedetect`` output into (start, end) intervals.

    A silence still open at end of input is closed at ``duration`` when it
    is known and dropped otherwise.
    """
    silences = []
    start: Optional[float] = None
    for line in stderr.splitlines():
        start_match = _SILENCE_START_RE.search(line)
        if start_match:
            start = max(0.0, float(start_match.group(1)))
            continue
        end_match = _SILENCE_END_RE.search(line)
        if end_match and start is not None:
            silences.append((start, float(end_match.group(1))))
            start = None
    if start is not None and duration is not None and duration > start:
        silences.append((start, duration))
    return silences


class SilenceDetector(ABC):
    @abstractmethod
    def detect_silences(self, path: str, duration: float) -> List[Tuple[float, float]]:
        """Return silent intervals of the file as (start, end) seconds."""


class SegmentExtractor(ABC):
    @abstractmethod
    def extract(self, source: str, start: float, end: float, dest: str) -> int:
        """Write ``[start, end)`` of ``source`` to ``dest`` and return its size in bytes."""


class FFmpegTools(SilenceDetector, SegmentExtractor):
    """Silence detection, segment extraction and probing via ffmpeg."""

    def __init__(
        self,
        bitrate_kbps: int = 64,
        silence_threshold_db: float = -35,
        silence_min_duration: float = 0.6,
        timeout: int = FFMPEG_TIMEOUT_SECONDS,
    ) -> None:
        self.bitrate_kbps = bitrate_kbps
        self.silence_threshold_db = silence_threshold_db
        self.silence_min_duration = silence_min_duration
        self.timeout = timeout

    @staticmethod
    def available() -> bool:
        return _check_ffmpeg_available()

    def probe_duration(self, path: str) -> float:
        """Duration of an audio file in seconds.

        Raises:
            InvalidAudioError: If ffprobe cannot read the file
        """
        if not _check_ffprobe_available():
            raise SegmentationError(
                "ffprobe not found", suggestion="Install ffmpeg (it ships ffprobe)"
            )
        cmd = [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "json",
            path,
        ]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=FFPROBE_TIMEOUT_SECONDS, check=True
            )
            data = json.loads(result.stdout or "{}")
            return float(data["format"]["duration"])
        except subprocess.CalledProcessError as exc:
            raise InvalidAudioError(
                f"ffprobe could not read {path}: {exc.stderr.strip()}", provider="ffprobe"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SegmentationError(f"ffprobe timed out on {path}", provider="ffprobe") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidAudioError(
                f"ffprobe reported no duration for {path}", provider="ffprobe"
            ) from exc

    def detect_silences(self, path: str, duration: float) -> List[Tuple[float, float]]:
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-nostats",
            "-i",
            path,
            "-af",
            f"silencedetect=noise={self.silence_threshold_db}dB:d={self.silence_min_duration}",
            "-f",
            "null",
            "-",
        ]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=True
            )
        except subprocess.CalledProcessError as exc:
            raise SegmentationError(f"silencedetect failed: {exc.stderr.strip()[-500:]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SegmentationError(f"silencedetect timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise SegmentationError("ffmpeg not found") from exc
        silences = parse_silences(result.stderr, duration)
        logger.debug("Detected %d silences in %s", len(silences), path)
        return silences

    def extract(self, source: str, start: float, end: float, dest: str) -> int:
        # Resume reuses any existing segment file, so it must never be partial
        tmp_dest = f"{dest}.part"
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            f"{start:.3f}",
            "-t",
            f"{end - start:.3f}",
            "-i",
            source,
            "-vn",
            "-ac",
            "1",
            "-c:a",
            "libmp3lame",
            "-b:a",
            f"{self.bitrate_kbps}k",
            "-f",
            "mp3",
            "-y",
            tmp_dest,
        ]
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=True)
        except subprocess.CalledProcessError as exc:
            raise SegmentationError(
                f"ffmpeg failed extracting {start:.1f}-{end:.1f}s: {exc.stderr.strip()[-500:]}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SegmentationError(
                f"ffmpeg timed out extracting {start:.1f}-{end:.1f}s"
            ) from exc
        except FileNotFoundError as exc:
            raise SegmentationError("ffmpeg not found") from exc
        os.replace(tmp_dest, dest)
        return os.path.getsize(dest)

    def clean_audio(self, source: str, dest: str) -> None:
        """Denoise and loudness-normalize a downloaded stream.

        Silence is kept so that segmentation can still cut on it.
        """
        tmp_dest = f"{dest}.part"
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            source,
            "-vn",
            "-ac",
            "1",
            "-ar",
            "16000",
            "-af",
            "afftdn=nf=-25,loudnorm=I=-16:LRA=11:TP=-1.5",
            "-c:a",
            "libmp3lame",
            "-b:a",
            f"{self.bitrate_kbps}k",
            "-f",
            "mp3",
            "-y",
            tmp_dest,
        ]
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=True)
        except subprocess.CalledProcessError as exc:
            raise SegmentationError(
                f"ffmpeg audio cleanup failed: {exc.stderr.strip()[-500:]}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SegmentationError(f"ffmpeg audio cleanup timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise SegmentationError("ffmpeg not found") from exc
        os.replace(tmp_dest, dest)
