"""Cleanup of Whisper transcription artefacts.

On long stretches of silence or noise Whisper tends to hallucinate runs of
numbers ("1.0-2-1.0-1-1-1-1"), which waste summarization budget.
"""

from __future__ import annotations

import re

# Long dotted/dashed number chains inside a line
NUMBER_CHAIN_RE = re.compile(r"(\d+(?:[.\-]\d+){5,})", re.MULTILINE)
# Lines consisting only of digits and separators
NUMERIC_LINE_RE = re.compile(r"^[\d.\-, ]{10,}$", re.MULTILINE)
_SPACES_RE = re.compile(r"[ \t]{2,}")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def clean_transcript(text: str) -> str:
    """Strip number-chain garbage and tidy the whitespace it leaves behind."""
    if not text:
        return ""
    cleaned = NUMERIC_LINE_RE.sub("", text)
    cleaned = NUMBER_CHAIN_RE.sub("", cleaned)
    cleaned = _SPACES_RE.sub(" ", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.splitlines())
    cleaned = _BLANK_LINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()
