"""Bunge Digest - Summaries of Parliament of Kenya sittings.

The pipeline discovers finished National Assembly and Senate streams,
downloads and segments their audio, transcribes every segment and reduces the
transcript to a short written summary with a hierarchical map-reduce over a
language model. A ledger makes repeated runs safe: every stream is completed
at most once.

Programmatic API Example:
    >>> import bunge_digest
    >>>
    >>> cfg = bunge_digest.Config(max_streams=2)
    >>> result = bunge_digest.service.run(cfg)
    >>> print(result.summary)

CLI Usage:
    $ bunge-digest run --max-streams 2
    $ bunge-digest cron --schedule "0 */4 * * *"
    $ python -m bunge_digest run --config config.yaml
"""

from __future__ import annotations

from .config import Config, load_config_file

__all__ = [
    "Config",
    "load_config_file",
    "__version__",
]
__version__ = "0.3.0"

_import_cache: dict[str, object] = {}


def __getattr__(name: str):
    if name in _import_cache:
        return _import_cache[name]

    if name in ("cli", "service"):
        import importlib

        module = importlib.import_module(f"{__name__}.{name}")
        _import_cache[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
