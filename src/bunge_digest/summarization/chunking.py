"""Deterministic partitioning of a transcript into summarization windows."""

from __future__ import annotations

import logging
import re
from typing import List

from ..exceptions import CapacityError

logger = logging.getLogger(__name__)

# Sentence ends, or paragraph breaks between transcript chunks
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n\s*\n")
_WHITESPACE_RE = re.compile(r"\s+")


def split_sentences(text: str) -> List[str]:
    sentences = []
    for piece in _SENTENCE_SPLIT_RE.split(text):
        piece = _WHITESPACE_RE.sub(" ", piece).strip()
        if piece:
            sentences.append(piece)
    return sentences


def _pack(pieces: List[str], max_chars: int) -> List[str]:
    """Greedy packing of pieces joined by single spaces."""
    packed: List[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + 1 + len(piece) <= max_chars:
            current = f"{current} {piece}"
        else:
            packed.append(current)
            current = piece
    if current:
        packed.append(current)
    return packed


def _split_long_sentence(sentence: str, max_chars: int) -> List[str]:
    words = sentence.split(" ")
    for word in words:
        if len(word) > max_chars:
            raise CapacityError(
                f"A single word of {len(word)} characters exceeds the "
                f"{max_chars}-character summarization window",
                provider="Chunking",
                suggestion="Check the transcript for garbage output",
            )
    return _pack(words, max_chars)


def plan_windows(text: str, window_tokens: int, chars_per_token: float) -> List[str]:
    """Partition ``text`` into windows of at most ``window_tokens``.

    Sentences are packed greedily in order; a sentence longer than a window
    is split on word boundaries. The result depends only on the inputs.

    Raises:
        CapacityError: If a single word is longer than a window
        ValueError: If the window budget is not positive
    """
    max_chars = int(window_tokens * chars_per_token)
    if max_chars <= 0:
        raise ValueError(f"Window budget must be positive, got {window_tokens} tokens")

    pieces: List[str] = []
    for sentence in split_sentences(text):
        if len(sentence) <= max_chars:
            pieces.append(sentence)
        else:
            pieces.extend(_split_long_sentence(sentence, max_chars))
    windows = _pack(pieces, max_chars)
    logger.debug(
        "Planned %d windows of at most %d characters from %d characters",
        len(windows),
        max_chars,
        len(text),
    )
    return windows


def tail_text(text: str, max_chars: int) -> str:
    """The last ``max_chars`` characters of ``text``, starting on a word."""
    if max_chars <= 0 or not text:
        return ""
    if len(text) <= max_chars:
        return text
    tail = text[-max_chars:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1 :]
    return tail.strip()
