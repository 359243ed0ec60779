"""Channel source protocol."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..models import StreamCandidate


class ChannelSource(ABC):
    """A place streams are published (one YouTube channel, for instance)."""

    name: str = "channel"

    @abstractmethod
    def list_streams(self, now: Optional[datetime] = None) -> List[StreamCandidate]:
        """Return the channel's recent, finished streams.

        Args:
            now: Reference time for relative publish dates (defaults to UTC now)

        Raises:
            PipelineError: If the channel cannot be queried
        """


class StaticChannelSource(ChannelSource):
    """Source returning a fixed list of candidates (dry runs, tests)."""

    def __init__(self, name: str, candidates: List[StreamCandidate]) -> None:
        self.name = name
        self._candidates = list(candidates)

    def list_streams(self, now: Optional[datetime] = None) -> List[StreamCandidate]:
        return list(self._candidates)
