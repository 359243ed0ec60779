"""OpenAI Whisper API transcription provider implementation."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from openai import OpenAI

from .. import config
from ..utils.openai_errors import map_openai_error

logger = logging.getLogger(__name__)


class OpenAITranscriptionProvider:
    """OpenAI Whisper API-based transcription provider.

    The SDK's own retries are disabled: retry policy belongs to the
    transcription stage so it can honour the run deadline and the call gate.
    """

    name = "OpenAI/Transcription"

    def __init__(self, cfg: config.Config):
        """Initialize OpenAI transcription provider.

        Args:
            cfg: Configuration object with openai_api_key and transcription settings

        Raises:
            ValueError: If OpenAI API key is not provided
        """
        if not cfg.openai_api_key:
            raise ValueError(
                "OpenAI API key required for transcription. "
                "Set OPENAI_API_KEY environment variable or openai_api_key in config."
            )

        self.cfg = cfg
        client_kwargs: Dict[str, Any] = {
            "api_key": cfg.openai_api_key,
            "max_retries": 0,
            "timeout": float(cfg.openai_timeout),
        }
        if cfg.openai_api_base:
            client_kwargs["base_url"] = cfg.openai_api_base
        self.client = OpenAI(**client_kwargs)
        self.model = cfg.openai_transcription_model
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return
        logger.debug("Initializing OpenAI transcription provider (model: %s)", self.model)
        self._initialized = True

    def transcribe(self, audio_path: str, language: Optional[str] = None) -> str:
        """Transcribe audio file to text using OpenAI Whisper API.

        Args:
            audio_path: Path to audio file
            language: Optional language code; defaults to cfg.language

        Returns:
            Transcribed text as string

        Raises:
            FileNotFoundError: If audio file doesn't exist
            RateLimitedError, InvalidAudioError, ServiceError, NetworkError:
                Mapped from the SDK's exceptions
            RuntimeError: If provider is not initialized
        """
        if not self._initialized:
            raise RuntimeError(
                "OpenAITranscriptionProvider not initialized. Call initialize() first."
            )
        if not os.path.exists(audio_path):
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        effective_language = language if language is not None else (self.cfg.language or None)
        request: Dict[str, Any] = {"model": self.model, "response_format": "text"}
        if effective_language:
            request["language"] = effective_language

        logger.debug(
            "Transcribing audio file via OpenAI API: %s (language: %s)",
            audio_path,
            effective_language or "auto",
        )
        try:
            with open(audio_path, "rb") as audio_file:
                transcript = self.client.audio.transcriptions.create(file=audio_file, **request)
        except Exception as exc:
            mapped = map_openai_error(exc, self.name, audio=True)
            if mapped is exc:
                raise
            raise mapped from exc

        text = transcript if isinstance(transcript, str) else str(transcript)
        logger.debug("OpenAI transcription completed: %d characters", len(text))
        return text
