"""Transcription stage: segments in, ordered transcript chunks out."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ..cache.transcript_cache import get_audio_hash, TranscriptCache
from ..exceptions import StageError
from ..models import AudioSegment, StreamStatus, TranscriptChunk
from ..utils.concurrency import CallGate, Deadline, fan_out, ordered
from ..utils.retry import call_with_retry, RetryPolicy
from .base import TranscriptionProvider
from .cleaning import clean_transcript

logger = logging.getLogger(__name__)


def assemble_transcript(chunks: Iterable[TranscriptChunk], expected_count: int) -> str:
    """Join chunks strictly by sequence index.

    Raises:
        ValueError: If an index is missing or duplicated
    """
    by_index = {}
    for chunk in chunks:
        if chunk.index in by_index:
            raise ValueError(f"Duplicate transcript chunk for index {chunk.index}")
        by_index[chunk.index] = chunk
    missing = [i for i in range(expected_count) if i not in by_index]
    if missing or len(by_index) != expected_count:
        raise ValueError(f"Transcript is missing chunks for indices {missing}")
    return "\n\n".join(
        by_index[i].text for i in range(expected_count) if by_index[i].text
    )


def describe_segment(index: int, total: int) -> str:
    return f"segment {index + 1} of {total} (index {index})"


class TranscriptionStage:
    """Transcribes every segment of a stream with bounded fan-out.

    Each segment is independent: it is retried on its own under
    ``retry_policy``, and one segment failing does not stop its siblings, so
    their text still lands in the cache.
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        retry_policy: RetryPolicy,
        gate: CallGate,
        fanout: int = 1,
        cache: Optional[TranscriptCache] = None,
        cleaning: bool = True,
        language: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.retry_policy = retry_policy
        self.gate = gate
        self.fanout = fanout
        self.cache = cache
        self.cleaning = cleaning
        self.language = language

    def _transcribe_one(
        self, segment: AudioSegment, deadline: Optional[Deadline]
    ) -> TranscriptChunk:
        if not segment.path:
            raise ValueError(f"Segment {segment.segment_id} has no audio file")

        audio_hash = None
        text = None
        if self.cache is not None:
            audio_hash = get_audio_hash(segment.path, self.provider.model)
            text = self.cache.get(audio_hash)

        if text is None:
            text = call_with_retry(
                lambda: self.gate.call(
                    lambda: self.provider.transcribe(segment.path, self.language)
                ),
                self.retry_policy,
                description=f"Transcribe {segment.segment_id}",
                before_attempt=deadline.check if deadline else None,
            )
            if self.cache is not None and audio_hash is not None:
                try:
                    self.cache.put(
                        audio_hash,
                        text,
                        segment_id=segment.segment_id,
                        provider_name=self.provider.name,
                        model=self.provider.model,
                    )
                except OSError as exc:
                    logger.warning("Could not cache transcript of %s: %s", segment.segment_id, exc)

        if self.cleaning:
            text = clean_transcript(text)
        return TranscriptChunk(segment_id=segment.segment_id, index=segment.index, text=text)

    def run(
        self,
        stream_id: str,
        segments: List[AudioSegment],
        deadline: Optional[Deadline] = None,
    ) -> List[TranscriptChunk]:
        """Transcribe ``segments`` and return chunks ordered by index.

        Raises:
            StageError: If any segment fails after its retries; names the
                lowest failing segment
        """
        self.provider.initialize()
        total = len(segments)
        logger.info("[%s] Transcribing %d segments (fan-out %d)", stream_id, total, self.fanout)

        results, errors = fan_out(
            lambda segment: self._transcribe_one(segment, deadline),
            segments,
            self.fanout,
            thread_name_prefix=f"transcribe-{stream_id}",
        )
        if errors:
            position = min(errors)
            index = segments[position].index
            cause = errors[position]
            for other in sorted(errors):
                logger.warning(
                    "[%s] %s failed: %s",
                    stream_id,
                    describe_segment(segments[other].index, total),
                    errors[other],
                )
            raise StageError(
                StreamStatus.TRANSCRIBING,
                cause,
                failed_index=index,
                detail=f"{describe_segment(index, total)}: {cause}",
            )

        chunks = ordered(results)
        logger.info(
            "[%s] Transcription complete: %d chunks, %d characters",
            stream_id,
            len(chunks),
            sum(len(c.text) for c in chunks),
        )
        return chunks
