"""Translation of OpenAI SDK exceptions into pipeline errors."""

from __future__ import annotations

import logging
from typing import Optional

import openai

from ..exceptions import (
    AuthRequiredError,
    ContextTooLongError,
    InvalidAudioError,
    NetworkError,
    NotFoundError,
    PipelineError,
    RateLimitedError,
    ServiceError,
)

logger = logging.getLogger(__name__)

_CONTEXT_MARKERS = ("context_length_exceeded", "maximum context length", "too many tokens")


def _retry_after(exc: openai.APIStatusError) -> Optional[float]:
    try:
        value = exc.response.headers.get("retry-after")
    except AttributeError:
        return None
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def map_openai_error(exc: Exception, provider: str, audio: bool = False) -> Exception:
    """Return the pipeline error for an OpenAI SDK exception.

    Args:
        exc: Exception raised by the SDK
        provider: Provider label for the error message
        audio: True for transcription calls, where a rejected request means
            the audio itself is unusable

    Returns:
        A :class:`PipelineError`, or ``exc`` unchanged if it is not an SDK error
    """
    if isinstance(exc, PipelineError):
        return exc
    message = str(exc)
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(message, provider=provider, retry_after=_retry_after(exc))
    if isinstance(exc, openai.APIConnectionError):
        # Includes APITimeoutError
        return NetworkError(message, provider=provider)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthRequiredError(
            message,
            provider=provider,
            suggestion="Check OPENAI_API_KEY or openai_api_key in config",
        )
    if isinstance(exc, openai.BadRequestError):
        lowered = message.lower()
        if any(marker in lowered for marker in _CONTEXT_MARKERS):
            return ContextTooLongError(message, provider=provider)
        if audio:
            return InvalidAudioError(message, provider=provider)
        return ServiceError(message, provider=provider, retryable=False)
    if isinstance(exc, openai.NotFoundError):
        return NotFoundError(message, provider=provider, suggestion="Check the model name")
    if isinstance(exc, openai.UnprocessableEntityError):
        if audio:
            return InvalidAudioError(message, provider=provider)
        return ServiceError(message, provider=provider, retryable=False)
    if isinstance(exc, openai.APIStatusError):
        return ServiceError(message, provider=provider, retryable=exc.status_code >= 500)
    return exc
