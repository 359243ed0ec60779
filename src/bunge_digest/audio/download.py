"""Stream audio download."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yt_dlp
from yt_dlp.utils import DownloadError

from ..config_constants import DEFAULT_AUDIO_FORMAT
from ..exceptions import AuthRequiredError, NetworkError, NotFoundError, ServiceError
from ..models import AudioArtifact, StreamCandidate

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = (
    "video unavailable",
    "private video",
    "has been removed",
    "does not exist",
    "404",
)
_AUTH_MARKERS = (
    "sign in to confirm",
    "cookies",
    "login required",
    "members-only",
    "age-restricted",
    "403",
)
_NETWORK_MARKERS = (
    "timed out",
    "connection",
    "temporary failure",
    "network",
    "unable to download",
    "http error 5",
)


def classify_download_error(message: str) -> Exception:
    """Map a yt-dlp error message to one of our error types."""
    lowered = message.lower()
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(message, provider="yt-dlp")
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthRequiredError(
            message,
            provider="yt-dlp",
            suggestion="Refresh the cookies file referenced by YTDLP_COOKIES_PATH",
        )
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return NetworkError(message, provider="yt-dlp")
    return ServiceError(message, provider="yt-dlp", retryable=False)


class Downloader(ABC):
    @abstractmethod
    def fetch(self, candidate: StreamCandidate, dest_dir: str) -> AudioArtifact:
        """Download the stream's audio into ``dest_dir``.

        Raises:
            NotFoundError: The stream no longer exists
            AuthRequiredError: The source demands credentials we lack
            NetworkError: Transient transport failure
        """


class YtDlpDownloader(Downloader):
    """Audio-only download through yt-dlp, converted to mp3.

    An existing ``<id>.mp3`` in the destination is reused.
    """

    def __init__(
        self,
        probe_duration: Callable[[str], float],
        cookies_path: Optional[str] = None,
        audio_bitrate_kbps: int = 64,
    ) -> None:
        self.probe_duration = probe_duration
        self.cookies_path = cookies_path
        self.audio_bitrate_kbps = audio_bitrate_kbps

    def _ydl_opts(self, dest_dir: str, stream_id: str) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            "format": "bestaudio/best",
            "outtmpl": os.path.join(dest_dir, f"{stream_id}.%(ext)s"),
            "quiet": True,
            "noprogress": True,
            "noplaylist": True,
            "postprocessors": [
                {
                    "key": "FFmpegExtractAudio",
                    "preferredcodec": DEFAULT_AUDIO_FORMAT,
                    "preferredquality": str(self.audio_bitrate_kbps),
                }
            ],
        }
        if self.cookies_path:
            opts["cookiefile"] = self.cookies_path
        return opts

    def fetch(self, candidate: StreamCandidate, dest_dir: str) -> AudioArtifact:
        Path(dest_dir).mkdir(parents=True, exist_ok=True)
        audio_path = os.path.join(dest_dir, f"{candidate.id}.{DEFAULT_AUDIO_FORMAT}")

        if os.path.exists(audio_path) and os.path.getsize(audio_path) > 0:
            logger.debug("[%s] Audio already exists at %s", candidate.id, audio_path)
        else:
            logger.info("[%s] Downloading audio from %s", candidate.id, candidate.uri)
            try:
                with yt_dlp.YoutubeDL(self._ydl_opts(dest_dir, candidate.id)) as ydl:
                    info = ydl.extract_info(candidate.uri, download=True)
            except DownloadError as exc:
                raise classify_download_error(str(exc)) from exc
            if info is None:
                raise NotFoundError(
                    f"yt-dlp returned no info for {candidate.uri}", provider="yt-dlp"
                )
            if not os.path.exists(audio_path):
                raise ServiceError(
                    f"yt-dlp finished but {audio_path} is missing",
                    provider="yt-dlp",
                    suggestion="Check that ffmpeg is installed for audio extraction",
                    retryable=False,
                )

        duration = self.probe_duration(audio_path)
        return AudioArtifact(
            path=audio_path, duration=duration, size_bytes=os.path.getsize(audio_path)
        )
