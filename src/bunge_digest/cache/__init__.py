from .transcript_cache import get_audio_hash, TranscriptCache

__all__ = ["get_audio_hash", "TranscriptCache"]
