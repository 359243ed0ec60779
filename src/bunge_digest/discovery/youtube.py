"""YouTube channel discovery.

Scrapes the channel's ``/streams`` tab. The page embeds its state as a
``var ytInitialData = {...};`` script; finished streams sit in the rich grid
as ``videoRenderer`` items.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from ..config_constants import (
    DEFAULT_MIN_STREAM_DURATION_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    YOUTUBE_VIDEO_BASE_URL,
)
from ..downloader import fetch_text
from ..exceptions import ServiceError
from ..models import Chamber, StreamCandidate, utcnow
from .channel_source import ChannelSource

logger = logging.getLogger(__name__)

YT_INITIAL_DATA_RE = re.compile(
    r"<script[^>]*>\s*var\s+ytInitialData\s*=\s*(\{.*?\});\s*</script>", re.DOTALL
)
_TIME_AGO_RE = re.compile(
    r"(\d+)\s+(second|minute|hour|day|week|month|year)s?\s+ago", re.IGNORECASE
)
_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}


def extract_initial_data(html: str) -> Dict[str, Any]:
    """Pull the ``ytInitialData`` object out of a channel page.

    Raises:
        ValueError: If the script tag is missing or its JSON is malformed
    """
    match = YT_INITIAL_DATA_RE.search(html)
    if not match:
        raise ValueError("Failed to extract ytInitialData from the page's script tag")
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        raise ValueError(f"ytInitialData is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("ytInitialData is not an object")
    return data


def parse_duration(text: Optional[str]) -> Optional[int]:
    """Parse ``HH:MM:SS``, ``MM:SS`` or ``SS`` into seconds."""
    if not text:
        return None
    try:
        parts = [int(part) for part in text.strip().split(":")]
    except ValueError:
        return None
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 1:
        return parts[0]
    return None


def parse_time_ago(text: Optional[str], now: datetime) -> Optional[datetime]:
    """Turn "Streamed 3 days ago" into an absolute timestamp."""
    if not text:
        return None
    match = _TIME_AGO_RE.search(text)
    if not match:
        return None
    amount = int(match.group(1))
    unit = match.group(2).lower()
    return now - timedelta(seconds=amount * _UNIT_SECONDS[unit])


def infer_chamber(title: str) -> Chamber:
    lowered = title.lower()
    if "senate" in lowered:
        return Chamber.SENATE
    if "national assembly" in lowered:
        return Chamber.NATIONAL_ASSEMBLY
    return Chamber.UNKNOWN


def _video_renderers(data: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    tabs = (
        data.get("contents", {})
        .get("twoColumnBrowseResultsRenderer", {})
        .get("tabs", [])
    )
    for tab in tabs:
        grid = tab.get("tabRenderer", {}).get("content", {}).get("richGridRenderer")
        if not grid:
            continue
        for item in grid.get("contents", []):
            renderer = item.get("richItemRenderer", {}).get("content", {}).get("videoRenderer")
            if isinstance(renderer, dict):
                yield renderer
        return
    raise ValueError("No stream grid found in ytInitialData, page structure might have changed")


def parse_streams(
    data: Dict[str, Any],
    now: datetime,
    channel_name: str = "",
    chamber: Optional[Chamber] = None,
    min_duration_seconds: float = DEFAULT_MIN_STREAM_DURATION_SECONDS,
) -> List[StreamCandidate]:
    """Convert the rich grid of a ``/streams`` page into candidates.

    Upcoming and currently-live items are skipped, as are items whose length
    is missing, unparseable or shorter than ``min_duration_seconds``.
    """
    candidates = []
    for renderer in _video_renderers(data):
        video_id = renderer.get("videoId")
        if not video_id:
            continue
        if (
            renderer.get("upcomingEventData")
            or not renderer.get("viewCountText")
            or not renderer.get("publishedTimeText")
        ):
            continue

        duration = parse_duration(renderer.get("lengthText", {}).get("simpleText"))
        if duration is None or duration < min_duration_seconds:
            continue

        runs = renderer.get("title", {}).get("runs") or [{}]
        title = runs[0].get("text", "").strip()
        published = renderer.get("publishedTimeText", {}).get("simpleText")
        recorded_at = parse_time_ago(published, now)
        if recorded_at is None:
            logger.debug("Unparseable publish time %r for %s, using now", published, video_id)
            recorded_at = now

        candidates.append(
            StreamCandidate(
                id=video_id,
                title=title,
                recorded_at=recorded_at,
                chamber=chamber or infer_chamber(title),
                estimated_duration=float(duration),
                uri=f"{YOUTUBE_VIDEO_BASE_URL}?v={video_id}",
                source=channel_name,
            )
        )
    return candidates


class YouTubeChannelSource(ChannelSource):
    """Lists finished streams of one YouTube channel."""

    def __init__(
        self,
        name: str,
        url: str,
        chamber: Optional[Chamber] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        min_duration_seconds: float = DEFAULT_MIN_STREAM_DURATION_SECONDS,
    ) -> None:
        self.name = name
        self.url = url
        self.chamber = chamber
        self.user_agent = user_agent
        self.timeout = timeout
        self.min_duration_seconds = min_duration_seconds

    def list_streams(self, now: Optional[datetime] = None) -> List[StreamCandidate]:
        now = now or utcnow()
        html = fetch_text(
            self.url,
            self.user_agent,
            self.timeout,
            headers={"Accept-Language": "en-US"},
        )
        try:
            data = extract_initial_data(html)
            candidates = parse_streams(
                data,
                now,
                channel_name=self.name,
                chamber=self.chamber,
                min_duration_seconds=self.min_duration_seconds,
            )
        except ValueError as exc:
            raise ServiceError(
                f"Could not parse {self.url}: {exc}", provider="YouTube", retryable=False
            ) from exc
        logger.info("Channel %s lists %d finished streams", self.name, len(candidates))
        return candidates
