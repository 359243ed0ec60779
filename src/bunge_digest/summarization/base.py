"""Summarization provider protocol."""

from __future__ import annotations

from typing import Optional, Protocol


class SummarizationProvider(Protocol):
    """Runs one summarization call.

    ``instruction`` says what to do with ``text``; ``context`` is optional
    preceding material the model may read but must not summarize.
    Implementations raise :class:`~bunge_digest.exceptions.RateLimitedError`,
    :class:`~bunge_digest.exceptions.ContextTooLongError` or
    :class:`~bunge_digest.exceptions.ServiceError`.
    """

    name: str
    model: str

    def summarize(self, text: str, instruction: str, context: Optional[str] = None) -> str:
        ...


def build_user_message(text: str, instruction: str, context: Optional[str] = None) -> str:
    """Lay out instruction, optional context and input text for a chat model."""
    parts = [instruction.strip()]
    if context:
        parts.append(f"<preceding_context>\n{context.strip()}\n</preceding_context>")
    parts.append(f"<input>\n{text.strip()}\n</input>")
    return "\n\n".join(parts)
