"""Audio download, probing and segmentation."""

from .download import Downloader, YtDlpDownloader
from .ffmpeg import FFmpegTools, SegmentExtractor, SilenceDetector
from .segmentation import Segmenter

__all__ = [
    "Downloader",
    "FFmpegTools",
    "SegmentExtractor",
    "Segmenter",
    "SilenceDetector",
    "YtDlpDownloader",
]
