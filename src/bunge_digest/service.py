"""Service API for programmatic use of bunge_digest.

This module provides a clean, programmatic interface optimized for non-interactive use,
such as running as a daemon or service (e.g., with supervisor, systemd, etc.).

The service API is designed to:
- Work exclusively with configuration files (no CLI arguments)
- Provide clear return values and error handling
- Share one ledger and one call gate between every Run of a process

Example:
    >>> from bunge_digest import service, config
    >>>
    >>> config_dict = config.load_config_file("config.yaml")
    >>> cfg = config.Config(**config_dict)
    >>> result = service.run(cfg)
    >>> print(f"Completed {result.streams_completed} streams")
    >>> print(f"Summary: {result.summary}")

For daemon/service usage:
    # supervisor config
    [program:bunge_digest]
    command=python -m bunge_digest.service --config /path/to/config.yaml
    autostart=true
    autorestart=true
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from . import __version__, config, workflow
from .discovery.channel_source import ChannelSource
from .ledger.base import Ledger
from .logging_setup import apply_log_level
from .models import RunReport
from .scheduler import RunScheduler
from .workflow.stream_pipeline import StreamPipeline

logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    """Result of a service run.

    Attributes:
        streams_completed: Streams that reached Completed in this run
        streams_failed: Streams that ended Failed in this run
        streams_skipped: Streams skipped by the ledger or lost to another run
        summary: Human-readable summary message
        success: Whether the run completed without aborting
        error: Error message if success is False, None otherwise
        report: Full run report, when a run happened
    """

    streams_completed: int
    streams_failed: int
    streams_skipped: int
    summary: str
    success: bool = True
    error: Optional[str] = None
    report: Optional[RunReport] = None

    @classmethod
    def from_report(cls, report: RunReport) -> "ServiceResult":
        return cls(
            streams_completed=report.completed,
            streams_failed=report.failed,
            streams_skipped=report.skipped,
            summary=report.summary_line(),
            success=not report.aborted,
            error=report.abort_reason,
            report=report,
        )

    @classmethod
    def failure(cls, error: str) -> "ServiceResult":
        return cls(0, 0, 0, summary="", success=False, error=error)


class Service:
    """Long-lived wiring shared by every Run of one process.

    Building the service is the startup step: it opens the ledger and creates
    the external adapters, so missing credentials, tools or an unreachable
    ledger surface here rather than mid-run.

    Raises:
        ConfigError: If a credential or tool is missing, or budgets are unusable
        LedgerUnavailableError: If the ledger cannot be opened
    """

    def __init__(
        self,
        cfg: config.Config,
        *,
        ledger: Optional[Ledger] = None,
        pipeline: Optional[StreamPipeline] = None,
        sources: Optional[Sequence[ChannelSource]] = None,
    ) -> None:
        self.cfg = cfg
        self.ledger = ledger or workflow.create_ledger(cfg)
        self.pipeline = pipeline or workflow.create_pipeline(cfg, self.ledger)
        self.sources = list(sources) if sources is not None else None

    def run_once(self, max_streams: Optional[int] = None) -> RunReport:
        run = workflow.create_run(
            self.cfg,
            self.ledger,
            self.pipeline,
            sources=self.sources,
            max_streams=max_streams,
        )
        return run.execute()

    def scheduler(self, schedule: Optional[str] = None) -> RunScheduler:
        return RunScheduler(
            self.run_once,
            schedule or self.cfg.schedule,
            overlap_policy=self.cfg.overlap_policy,
        )

    def close(self) -> None:
        self.ledger.close()


def run(cfg: config.Config) -> ServiceResult:
    """Run discovery and processing once with the given configuration.

    Args:
        cfg: Configuration object (can be created from Config() or Config(**load_config_file()))

    Returns:
        ServiceResult with processing results

    Example:
        >>> from bunge_digest import service, config
        >>> cfg = config.Config(max_streams=1)
        >>> result = service.run(cfg)
        >>> if result.success:
        ...     print(f"Success: {result.summary}")
        ... else:
        ...     print(f"Error: {result.error}")
    """
    try:
        if cfg.log_file or cfg.log_level:
            apply_log_level(level=cfg.log_level or "INFO", log_file=cfg.log_file)

        svc = Service(cfg)
        try:
            report = svc.run_once()
        finally:
            svc.close()
        return ServiceResult.from_report(report)
    except Exception as e:
        error_msg = str(e)
        logger.error(f"Pipeline execution failed: {error_msg}", exc_info=True)
        return ServiceResult.failure(error_msg)


def run_from_config_file(config_path: str | Path) -> ServiceResult:
    """Run the pipeline once from a configuration file.

    Args:
        config_path: Path to configuration file (JSON or YAML)

    Returns:
        ServiceResult with processing results
    """
    try:
        config_dict = config.load_config_file(str(config_path))
        cfg = config.Config(**config_dict)
    except Exception as exc:
        error_msg = f"Failed to load configuration file: {exc}"
        logger.error(error_msg)
        return ServiceResult.failure(error_msg)

    return run(cfg)


def main() -> int:
    """Main entry point for service mode (config-file only).

    This function is designed to be called as a script entry point:
    python -m bunge_digest.service --config config.yaml

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Bunge Digest Service - Run the pipeline once from a configuration file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with config file
  python -m bunge_digest.service --config config.yaml

  # For supervisor/systemd usage
  [program:bunge_digest]
  command=python -m bunge_digest.service --config /path/to/config.yaml
        """,
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to configuration file (JSON or YAML)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"bunge_digest {__version__}",
    )

    args = parser.parse_args()
    result = run_from_config_file(args.config)

    if result.success:
        print(result.summary)
        return 0
    else:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
