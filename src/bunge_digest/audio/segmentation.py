"""Segmentation of stream audio into size-bounded, contiguous pieces.

Planning is pure: given a duration, a size limit and (optionally) detected
silences it returns an ordered partition of ``[0, duration]``. Extraction
writes one file per planned segment and can resume from a previous attempt.
"""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import (
    InvalidAudioError,
    PipelineError,
    SegmentationError,
    SegmentTooLargeError,
)
from ..models import AudioArtifact, AudioSegment
from ..utils.concurrency import Deadline
from ..utils.retry import call_with_retry, NO_RETRY, RetryPolicy
from .ffmpeg import SegmentExtractor, SilenceDetector

logger = logging.getLogger(__name__)

PLAN_FILENAME = "plan.json"
PLAN_VERSION = 1
# Float noise below this is not worth a segment of its own
MIN_SEGMENT_SECONDS = 0.001


def effective_max_seconds(
    max_segment_seconds: float, max_segment_bytes: Optional[int], bitrate_kbps: int
) -> float:
    """The tighter of the time limit and the byte limit at the export bitrate."""
    limit = float(max_segment_seconds)
    if max_segment_bytes:
        bytes_per_second = bitrate_kbps * 1000 / 8
        limit = min(limit, max_segment_bytes / bytes_per_second)
    return limit


def _build_segments(stream_id: str, boundaries: Sequence[float]) -> List[AudioSegment]:
    return [
        AudioSegment(stream_id=stream_id, index=i, start=start, end=end)
        for i, (start, end) in enumerate(zip(boundaries, boundaries[1:]))
    ]


def plan_fixed(
    stream_id: str,
    duration: float,
    max_seconds: float,
    segment_count: Optional[int] = None,
) -> List[AudioSegment]:
    """Equal cuts of ``max_seconds`` with the last segment taking the remainder.

    With ``segment_count`` the duration is split into that many equal
    segments, or more if that many would exceed ``max_seconds``.
    """
    if duration <= 0:
        raise ValueError(f"Cannot segment audio of duration {duration}")
    if max_seconds <= 0:
        raise ValueError(f"Segment limit must be positive, got {max_seconds}")

    if segment_count:
        count = max(segment_count, math.ceil(duration / max_seconds - 1e-9))
        step = duration / count
        boundaries = [step * i for i in range(count)] + [duration]
    else:
        boundaries = [0.0]
        while duration - boundaries[-1] > max_seconds + MIN_SEGMENT_SECONDS:
            boundaries.append(boundaries[-1] + max_seconds)
        boundaries.append(duration)
    return _build_segments(stream_id, boundaries)


def plan_silence_aware(
    stream_id: str,
    duration: float,
    max_seconds: float,
    silences: Sequence[Tuple[float, float]],
    search_window_seconds: float,
) -> List[AudioSegment]:
    """Cut at silence midpoints close to, but never past, the size limit.

    For each segment the latest silence midpoint inside
    ``[limit - search_window_seconds, limit]`` becomes the boundary; with no
    silence in that window the cut falls at the limit itself.
    """
    if duration <= 0:
        raise ValueError(f"Cannot segment audio of duration {duration}")
    if max_seconds <= 0:
        raise ValueError(f"Segment limit must be positive, got {max_seconds}")

    midpoints = sorted((start + end) / 2.0 for start, end in silences if end > start)
    boundaries = [0.0]
    while duration - boundaries[-1] > max_seconds + MIN_SEGMENT_SECONDS:
        start = boundaries[-1]
        limit = start + max_seconds
        window_start = limit - search_window_seconds
        in_window = [
            m for m in midpoints if window_start <= m <= limit and m > start + MIN_SEGMENT_SECONDS
        ]
        boundaries.append(in_window[-1] if in_window else limit)
    boundaries.append(duration)
    return _build_segments(stream_id, boundaries)


class Segmenter:
    """Plans and extracts the segments of one stream.

    Files live under ``<segments_root>/<stream_id>/``: ``plan.json`` plus one
    ``segment_<index>.mp3`` per segment. A stored plan is reused when it was
    made for the same duration and settings; otherwise the directory is
    cleared and re-planned.
    """

    def __init__(
        self,
        extractor: SegmentExtractor,
        detector: Optional[SilenceDetector] = None,
        max_segment_seconds: float = 900,
        max_segment_bytes: Optional[int] = None,
        bitrate_kbps: int = 64,
        silence_detection: bool = True,
        silence_search_window_seconds: float = 60.0,
        segment_count: Optional[int] = None,
        retry_policy: RetryPolicy = NO_RETRY,
    ) -> None:
        self.extractor = extractor
        self.detector = detector
        self.max_seconds = effective_max_seconds(
            max_segment_seconds, max_segment_bytes, bitrate_kbps
        )
        self.max_segment_bytes = max_segment_bytes
        self.silence_detection = silence_detection and detector is not None
        self.silence_search_window_seconds = silence_search_window_seconds
        self.segment_count = segment_count
        self.retry_policy = retry_policy

    def _settings(self, duration: float) -> Dict[str, Any]:
        return {
            "version": PLAN_VERSION,
            "duration": round(duration, 3),
            "max_seconds": round(self.max_seconds, 3),
            "segment_count": self.segment_count,
            "silence_detection": self.silence_detection,
            "search_window": self.silence_search_window_seconds,
        }

    def plan(self, artifact: AudioArtifact, stream_id: str) -> List[AudioSegment]:
        """Plan segments for ``artifact`` without touching the filesystem."""
        if self.segment_count or not self.silence_detection:
            return plan_fixed(stream_id, artifact.duration, self.max_seconds, self.segment_count)

        silences: List[Tuple[float, float]] = []
        if artifact.duration > self.max_seconds:
            try:
                silences = self.detector.detect_silences(artifact.path, artifact.duration)
            except PipelineError as exc:
                logger.warning(
                    "[%s] Silence detection unavailable, cutting at fixed limits: %s",
                    stream_id,
                    exc,
                )
        return plan_silence_aware(
            stream_id,
            artifact.duration,
            self.max_seconds,
            silences,
            self.silence_search_window_seconds,
        )

    def _load_plan(
        self, plan_path: Path, settings: Dict[str, Any]
    ) -> Optional[List[Tuple[float, float]]]:
        if not plan_path.exists():
            return None
        try:
            stored = json.loads(plan_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable segment plan %s: %s", plan_path, exc)
            return None
        if stored.get("settings") != settings:
            return None
        return [tuple(bounds) for bounds in stored.get("segments", [])]

    def segment(
        self,
        artifact: AudioArtifact,
        stream_id: str,
        segments_root: str,
        deadline: Optional[Deadline] = None,
    ) -> List[AudioSegment]:
        """Plan (or reload the plan) and extract every segment.

        Raises:
            InvalidAudioError: If the audio has no usable duration
            SegmentationError: If one segment cannot be extracted; ``index``
                names it and earlier segments stay on disk
            SegmentTooLargeError: If an extracted segment is above
                ``max_segment_bytes``
        """
        if artifact.duration <= 0:
            raise InvalidAudioError(
                f"Audio for {stream_id} has no duration", provider="Segmenter"
            )

        stream_dir = Path(segments_root) / stream_id
        plan_path = stream_dir / PLAN_FILENAME
        settings = self._settings(artifact.duration)

        stored = self._load_plan(plan_path, settings)
        if stored is not None:
            planned = [
                AudioSegment(stream_id=stream_id, index=i, start=start, end=end)
                for i, (start, end) in enumerate(stored)
            ]
            logger.debug("[%s] Reusing stored plan of %d segments", stream_id, len(planned))
        else:
            if stream_dir.exists():
                shutil.rmtree(stream_dir)
            stream_dir.mkdir(parents=True, exist_ok=True)
            planned = self.plan(artifact, stream_id)
            plan_path.write_text(
                json.dumps(
                    {
                        "stream_id": stream_id,
                        "settings": settings,
                        "segments": [[s.start, s.end] for s in planned],
                    },
                    indent=2,
                ),
                encoding="utf-8",
            )
            logger.info(
                "[%s] Planned %d segments (limit %.0fs)",
                stream_id,
                len(planned),
                self.max_seconds,
            )

        extracted = []
        for segment in planned:
            dest = str(stream_dir / f"segment_{segment.index:03d}.mp3")
            if os.path.exists(dest) and os.path.getsize(dest) > 0:
                size = os.path.getsize(dest)
            else:
                size = self._extract(artifact.path, segment, dest, deadline)
            if self.max_segment_bytes and size > self.max_segment_bytes:
                os.remove(dest)
                raise SegmentTooLargeError(
                    f"Segment {segment.index} is {size} bytes, "
                    f"above the {self.max_segment_bytes} byte limit",
                    suggestion="Lower the export bitrate or max_segment_seconds",
                    index=segment.index,
                )
            extracted.append(
                AudioSegment(
                    stream_id=stream_id,
                    index=segment.index,
                    start=segment.start,
                    end=segment.end,
                    byte_size=size,
                    path=dest,
                )
            )
        return extracted

    def _extract(
        self,
        source: str,
        segment: AudioSegment,
        dest: str,
        deadline: Optional[Deadline],
    ) -> int:
        try:
            return call_with_retry(
                lambda: self.extractor.extract(source, segment.start, segment.end, dest),
                self.retry_policy,
                description=f"Extract segment {segment.segment_id}",
                before_attempt=deadline.check if deadline else None,
            )
        except SegmentationError as exc:
            if exc.index is None:
                exc.index = segment.index
            raise
        except OSError as exc:
            raise SegmentationError(str(exc), index=segment.index) from exc
