"""Transcription provider protocol."""

from __future__ import annotations

from typing import Optional, Protocol


class TranscriptionProvider(Protocol):
    """Turns one audio file into text.

    Implementations raise :class:`~bunge_digest.exceptions.RateLimitedError`,
    :class:`~bunge_digest.exceptions.InvalidAudioError` or
    :class:`~bunge_digest.exceptions.ServiceError`.
    """

    name: str
    model: str

    def initialize(self) -> None:
        ...

    def transcribe(self, audio_path: str, language: Optional[str] = None) -> str:
        ...
