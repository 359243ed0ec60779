"""Builds the Run's collaborators from a :class:`~bunge_digest.config.Config`.

Every builder takes optional overrides so tests and embedders can swap in
fakes for any external collaborator.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

from .. import config
from ..audio.download import Downloader, YtDlpDownloader
from ..audio.ffmpeg import FFmpegTools, SegmentExtractor, SilenceDetector
from ..audio.segmentation import Segmenter
from ..cache.transcript_cache import TranscriptCache
from ..discovery.channel_source import ChannelSource
from ..discovery.youtube import YouTubeChannelSource
from ..exceptions import ConfigError
from ..ledger.base import Ledger
from ..ledger.memory import InMemoryLedger
from ..ledger.sqlite import SqliteLedger
from ..summarization.base import SummarizationProvider
from ..summarization.budget import SummaryBudget
from ..summarization.map_reduce import MapReduceSummarizer
from ..transcription.base import TranscriptionProvider
from ..transcription.stage import TranscriptionStage
from ..utils.concurrency import CallGate
from .run import Run
from .stream_pipeline import StreamPipeline

logger = logging.getLogger(__name__)

TRANSCRIPT_CACHE_DIRNAME = os.path.join("cache", "transcripts")
IN_MEMORY_LEDGER_PATH = ":memory:"


def create_ledger(cfg: config.Config) -> Ledger:
    if cfg.resolved_ledger_path == IN_MEMORY_LEDGER_PATH:
        return InMemoryLedger()
    return SqliteLedger(cfg.resolved_ledger_path)


def create_channel_sources(cfg: config.Config) -> List[ChannelSource]:
    return [
        YouTubeChannelSource(
            name=channel.name,
            url=channel.url,
            chamber=channel.chamber,
            user_agent=cfg.user_agent,
            timeout=cfg.timeout,
            min_duration_seconds=cfg.min_stream_duration_seconds,
        )
        for channel in cfg.channels
    ]


def create_ffmpeg_tools(cfg: config.Config) -> FFmpegTools:
    """ffmpeg-backed segmenter tooling.

    Raises:
        ConfigError: If ffmpeg is not installed
    """
    if not FFmpegTools.available():
        raise ConfigError("ffmpeg and ffprobe must be installed and on PATH")
    return FFmpegTools(
        bitrate_kbps=cfg.segment_bitrate_kbps,
        silence_threshold_db=cfg.silence_threshold_db,
        silence_min_duration=cfg.silence_min_duration,
    )


def create_transcription_provider(cfg: config.Config) -> TranscriptionProvider:
    from ..transcription.openai_provider import OpenAITranscriptionProvider

    try:
        return OpenAITranscriptionProvider(cfg)
    except ValueError as exc:
        raise ConfigError(str(exc), config_key="openai_api_key") from exc


def create_summarization_provider(cfg: config.Config) -> SummarizationProvider:
    from ..summarization.openai_provider import OpenAISummarizationProvider

    try:
        return OpenAISummarizationProvider(cfg)
    except ValueError as exc:
        raise ConfigError(str(exc), config_key="openai_api_key") from exc


def create_pipeline(
    cfg: config.Config,
    ledger: Ledger,
    gate: Optional[CallGate] = None,
    *,
    downloader: Optional[Downloader] = None,
    extractor: Optional[SegmentExtractor] = None,
    detector: Optional[SilenceDetector] = None,
    transcription_provider: Optional[TranscriptionProvider] = None,
    summarization_provider: Optional[SummarizationProvider] = None,
) -> StreamPipeline:
    """Wire the per-stream pipeline.

    Real adapters (yt-dlp, ffmpeg, OpenAI) are created only for the
    collaborators not passed in.

    Raises:
        ConfigError: If a required tool or credential is missing, or the
            summarization budget is unusable
    """
    gate = gate or CallGate(cfg.effective_max_inflight_calls)

    tools: Optional[FFmpegTools] = None
    if downloader is None or extractor is None or (detector is None and cfg.silence_detection):
        tools = create_ffmpeg_tools(cfg)
    if downloader is None:
        downloader = YtDlpDownloader(
            probe_duration=tools.probe_duration,
            cookies_path=cfg.ytdlp_cookies_path,
            audio_bitrate_kbps=cfg.segment_bitrate_kbps,
        )
    if extractor is None:
        extractor = tools
    if detector is None and cfg.silence_detection:
        detector = tools

    segmenter = Segmenter(
        extractor=extractor,
        detector=detector,
        max_segment_seconds=cfg.max_segment_seconds,
        max_segment_bytes=cfg.max_segment_bytes,
        bitrate_kbps=cfg.segment_bitrate_kbps,
        silence_detection=cfg.silence_detection,
        silence_search_window_seconds=cfg.silence_search_window_seconds,
        segment_count=cfg.segment_count,
        retry_policy=cfg.segment_retry,
    )
    transcriber = TranscriptionStage(
        provider=transcription_provider or create_transcription_provider(cfg),
        retry_policy=cfg.transcription_retry,
        gate=gate,
        fanout=cfg.stage_fanout,
        cache=TranscriptCache(os.path.join(cfg.workdir, TRANSCRIPT_CACHE_DIRNAME)),
        cleaning=cfg.transcript_cleaning,
        language=cfg.language,
    )
    summarizer = MapReduceSummarizer(
        provider=summarization_provider or create_summarization_provider(cfg),
        budget=SummaryBudget.from_config(cfg),
        retry_policy=cfg.summarization_retry,
        gate=gate,
        fanout=cfg.stage_fanout,
        carried_context_source=cfg.carried_context_source,
        max_reduce_rounds=cfg.max_reduce_rounds,
    )

    audio_cleaner = None
    if cfg.audio_cleanup:
        audio_cleaner = (tools or create_ffmpeg_tools(cfg)).clean_audio

    return StreamPipeline(
        ledger=ledger,
        downloader=downloader,
        segmenter=segmenter,
        transcriber=transcriber,
        summarizer=summarizer,
        gate=gate,
        workdir=cfg.workdir,
        download_retry=cfg.download_retry,
        claim_lease_seconds=cfg.claim_lease_seconds,
        max_attempts=cfg.max_attempts,
        audio_cleaner=audio_cleaner,
    )


def create_run(
    cfg: config.Config,
    ledger: Ledger,
    pipeline: StreamPipeline,
    sources: Optional[Sequence[ChannelSource]] = None,
    max_streams: Optional[int] = None,
    run_id: Optional[str] = None,
) -> Run:
    return Run(
        sources=sources if sources is not None else create_channel_sources(cfg),
        ledger=ledger,
        pipeline=pipeline,
        max_streams=max_streams or cfg.max_streams,
        max_concurrent_streams=cfg.max_concurrent_streams,
        discovery_order=cfg.discovery_order,
        max_attempts=cfg.max_attempts,
        deadline_seconds=cfg.run_deadline_seconds,
        deadline_policy=cfg.deadline_policy,
        run_id=run_id,
    )
