"""Segment transcription."""

from .base import TranscriptionProvider
from .cleaning import clean_transcript
from .stage import assemble_transcript, TranscriptionStage

__all__ = [
    "assemble_transcript",
    "clean_transcript",
    "TranscriptionProvider",
    "TranscriptionStage",
]
