"""Per-segment transcript cache keyed by segment content hash.

A retried stream re-segments into byte-identical files (same plan, same
encoder settings), so their transcripts can be reused instead of paying for
transcription twice. Correctness never depends on a hit.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Dict, Optional

from ..models import utcnow

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024


def get_audio_hash(audio_path: str, model: str = "") -> str:
    """Hash of the segment file's content (and the model that will read it).

    Returns:
        SHA256 hash (first 16 hex chars for cache key)
    """
    hasher = hashlib.sha256()
    with open(audio_path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    if model:
        hasher.update(model.encode("utf-8"))
    return hasher.hexdigest()[:16]


class TranscriptCache:
    """JSON files ``<cache_dir>/<hash>.json`` holding one transcript each."""

    def __init__(self, cache_dir: str) -> None:
        self.cache_dir = cache_dir

    def _path(self, audio_hash: str) -> str:
        return os.path.join(self.cache_dir, f"{audio_hash}.json")

    def get(self, audio_hash: str) -> Optional[str]:
        cache_path = self._path(audio_hash)
        if not os.path.exists(cache_path):
            logger.debug("Transcript cache miss: %s", audio_hash)
            return None
        try:
            with open(cache_path, "r", encoding="utf-8") as f:
                cache_data: Dict[str, Any] = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read cached transcript: %s", exc)
            return None
        transcript = cache_data.get("transcript")
        if isinstance(transcript, str):
            logger.debug("Transcript cache hit: %s", audio_hash)
            return transcript
        logger.warning("Cached transcript file missing 'transcript' field: %s", cache_path)
        return None

    def put(
        self,
        audio_hash: str,
        transcript: str,
        segment_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Store a transcript and return the cache file path."""
        os.makedirs(self.cache_dir, exist_ok=True)
        cache_path = self._path(audio_hash)
        cache_data: Dict[str, Any] = {
            "transcript": transcript,
            "cached_at": utcnow().isoformat(),
        }
        if segment_id:
            cache_data["segment_id"] = segment_id
        if provider_name:
            cache_data["provider"] = provider_name
        if model:
            cache_data["model"] = model

        tmp_path = f"{cache_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cache_data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, cache_path)
        logger.debug("Saved transcript to cache: %s", cache_path)
        return cache_path
