"""Core utilities for bunge_digest.

This module provides:
- Retry policies with exponential backoff
- Error classification for retry decisions
- Concurrency primitives (call gate, run deadline, bounded fan-out)
"""

from .concurrency import CallGate, Deadline, fan_out, ordered
from .retry import call_with_retry, NO_RETRY, RetryPolicy
from .retryable_errors import is_retryable_error

__all__ = [
    "call_with_retry",
    "CallGate",
    "Deadline",
    "fan_out",
    "is_retryable_error",
    "NO_RETRY",
    "ordered",
    "RetryPolicy",
]
