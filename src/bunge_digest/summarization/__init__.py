"""Hierarchical summarization of stream transcripts."""

from .base import SummarizationProvider
from .budget import estimate_tokens, SummaryBudget
from .chunking import plan_windows
from .map_reduce import MapReduceSummarizer, plan_batches, SummarizationTrace, SummaryResult

__all__ = [
    "estimate_tokens",
    "MapReduceSummarizer",
    "plan_batches",
    "plan_windows",
    "SummarizationProvider",
    "SummarizationTrace",
    "SummaryBudget",
    "SummaryResult",
]
