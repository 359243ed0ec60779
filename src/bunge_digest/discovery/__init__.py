"""Stream discovery and deduplication against the ledger."""

from .channel_source import ChannelSource, StaticChannelSource
from .filter import discover, DiscoveryResult
from .youtube import YouTubeChannelSource

__all__ = [
    "ChannelSource",
    "discover",
    "DiscoveryResult",
    "StaticChannelSource",
    "YouTubeChannelSource",
]
