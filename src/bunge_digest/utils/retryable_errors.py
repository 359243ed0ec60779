"""Error classification utilities for retry logic.

Our own exceptions carry an :class:`~bunge_digest.exceptions.ErrorKind`.
Anything else (library exceptions that escaped an adapter) is classified by
looking at its message and type name.
"""

from __future__ import annotations

import logging

from ..exceptions import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

_RATE_LIMIT_INDICATORS = ("429", "rate limit", "rate_limit", "too many requests", "quota")
_SERVER_ERROR_INDICATORS = (
    "500",
    "502",
    "503",
    "504",
    "server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_CONNECTION_INDICATORS = (
    "connection",
    "network",
    "socket",
    "dns",
    "timeout",
    "timed out",
    "broken pipe",
)
_RETRYABLE_TYPE_PATTERNS = ("connectionerror", "timeouterror", "timeout", "networkerror")


def is_retryable_error(error: BaseException) -> bool:
    """Determine if an error is retryable.

    Retryable errors are transient failures that may succeed on retry:
    rate limits, server errors, connection errors and timeouts. Client
    errors (auth, validation, not found) are not.

    Args:
        error: Exception to classify

    Returns:
        True if error is retryable, False otherwise
    """
    return classify_error(error) is ErrorKind.TRANSIENT


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to an :class:`ErrorKind`."""
    if isinstance(error, PipelineError):
        return error.kind
    # StageError wraps a cause and exposes its kind
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    error_str = str(error).lower()
    error_type_name = type(error).__name__.lower()

    if is_non_retryable_http_error(error):
        return ErrorKind.PERMANENT
    if any(indicator in error_str for indicator in _RATE_LIMIT_INDICATORS):
        return ErrorKind.TRANSIENT
    if any(indicator in error_str for indicator in _SERVER_ERROR_INDICATORS):
        return ErrorKind.TRANSIENT
    if any(indicator in error_str for indicator in _CONNECTION_INDICATORS):
        return ErrorKind.TRANSIENT
    if any(pattern in error_type_name for pattern in _RETRYABLE_TYPE_PATTERNS):
        return ErrorKind.TRANSIENT
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    logger.debug("Unknown error type %s, treating as permanent: %s", type(error).__name__, error)
    return ErrorKind.PERMANENT


def is_non_retryable_http_error(error: BaseException) -> bool:
    """Check if error is a non-retryable HTTP error (4xx except 429).

    Args:
        error: Exception to check

    Returns:
        True if error is a non-retryable HTTP error, False otherwise
    """
    error_str = str(error).lower()

    if (
        "401" in error_str
        or "403" in error_str
        or "unauthorized" in error_str
        or "forbidden" in error_str
        or "authentication" in error_str
    ):
        return True
    if "400" in error_str or "bad request" in error_str:
        return True
    if "404" in error_str or "not found" in error_str:
        return True
    if "413" in error_str or "payload too large" in error_str:
        return True
    if "415" in error_str or "unsupported media type" in error_str:
        return True
    if "422" in error_str or "unprocessable entity" in error_str:
        return True
    return False


def get_retry_reason(error: BaseException) -> str:
    """Get a short human-readable reason for a retry (e.g. "429", "timeout")."""
    error_str = str(error).lower()

    if "429" in error_str or "rate limit" in error_str:
        return "429"
    for code in ("500", "502", "503", "504"):
        if code in error_str:
            return code
    if "timeout" in error_str or "timed out" in error_str:
        return "timeout"
    if "connection" in error_str:
        return "connection_error"
    return type(error).__name__
