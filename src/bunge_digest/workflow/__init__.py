"""Run orchestration: the per-stream pipeline and the Run around it."""

from .factory import create_channel_sources, create_ledger, create_pipeline, create_run
from .run import new_run_id, Run
from .stream_pipeline import StreamPipeline

__all__ = [
    "create_channel_sources",
    "create_ledger",
    "create_pipeline",
    "create_run",
    "new_run_id",
    "Run",
    "StreamPipeline",
]
