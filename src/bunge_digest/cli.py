"""Command-line interface for bunge_digest.

Exit codes: 0 on clean shutdown, 1 when a ``run`` aborted on an
infrastructure failure, 2 when startup failed (configuration, credentials,
tools, ledger, cron expression).
"""

from __future__ import annotations

import argparse
import logging
import threading
from typing import Any, Callable, cast, Dict, List, Optional, Sequence

from pydantic import ValidationError

from . import __version__, config
from .exceptions import ConfigError, LedgerError
from .logging_setup import apply_log_level
from .scheduler import install_signal_handlers
from .service import Service

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_ABORTED = 1
EXIT_STARTUP_FAILURE = 2

# CLI flags that map onto Config fields of the same name
_OVERRIDE_FIELDS = ("log_level", "log_file", "workdir", "ledger_path", "max_streams", "schedule")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="Config file (JSON or YAML)")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Logging level (default: {config.DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    parser.add_argument(
        "--workdir",
        default=None,
        help=f"Directory for audio, segments and caches (default: {config.DEFAULT_WORKDIR})",
    )
    parser.add_argument(
        "--ledger-path",
        default=None,
        help="SQLite ledger path (default: <workdir>/ledger.db)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bunge-digest",
        description="Summarize Parliament of Kenya sittings from their archived streams.",
    )
    parser.add_argument("--version", action="version", version=f"bunge_digest {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run once, then exit")
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--max-streams",
        type=int,
        default=None,
        help=f"Streams to process in this run (default: {config.DEFAULT_MAX_STREAMS})",
    )

    cron_parser = subparsers.add_parser("cron", help="Run continuously on a cron schedule")
    _add_common_arguments(cron_parser)
    cron_parser.add_argument(
        "--schedule",
        default=None,
        help=f"Cron expression (default: '{config.DEFAULT_SCHEDULE}')",
    )
    return parser


def _build_config(args: argparse.Namespace) -> config.Config:
    """Merge the config file with CLI overrides and validate.

    Raises:
        ValueError: If the file cannot be loaded or the result is invalid
    """
    payload: Dict[str, Any] = {}
    if args.config:
        payload.update(config.load_config_file(args.config))
    for name in _OVERRIDE_FIELDS:
        value = getattr(args, name, None)
        if value is not None:
            payload[name] = value
    try:
        return cast(config.Config, config.Config.model_validate(payload))
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _log_configuration(cfg: config.Config, logger: logging.Logger) -> None:
    logger.info("=" * 80)
    logger.info("Configuration")
    logger.info("=" * 80)
    logger.info(f"  Channels: {', '.join(c.name for c in cfg.channels)}")
    logger.info(f"  Max Streams: {cfg.max_streams} ({cfg.discovery_order})")
    logger.info(f"  Workdir: {cfg.workdir}")
    logger.info(f"  Ledger: {cfg.resolved_ledger_path}")
    logger.info(
        f"  Concurrency: {cfg.max_concurrent_streams} streams x {cfg.stage_fanout} fan-out, "
        f"{cfg.effective_max_inflight_calls} calls in flight"
    )
    logger.info(
        f"  Segments: <= {cfg.max_segment_seconds:.0f}s / {cfg.max_segment_bytes} bytes, "
        f"silence detection {'on' if cfg.silence_detection else 'off'}"
    )
    logger.info(f"  Transcription Model: {cfg.openai_transcription_model}")
    logger.info(
        f"  Summary Model: {cfg.openai_summary_model} "
        f"(window {cfg.window_tokens} tokens, max {cfg.max_reduce_rounds} reduce rounds)"
    )
    if cfg.run_deadline_seconds:
        logger.info(f"  Run Deadline: {cfg.run_deadline_seconds:.0f}s ({cfg.deadline_policy})")
    logger.info("=" * 80)


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    apply_log_level_fn: Optional[Callable[[str, Optional[str]], None]] = None,
    service_factory: Optional[Callable[[config.Config], Service]] = None,
    stop_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Entry point for the CLI; returns an exit status code."""
    log = logger or _LOGGER
    apply_log_level_fn = apply_log_level_fn or apply_log_level
    service_factory = service_factory or Service

    args = build_parser().parse_args(argv)

    try:
        cfg = _build_config(args)
        apply_log_level_fn(cfg.log_level, cfg.log_file)
    except (ValueError, OSError) as exc:
        log.error(f"Error: {exc}")
        return EXIT_STARTUP_FAILURE

    _log_configuration(cfg, log)

    try:
        svc = service_factory(cfg)
    except (ConfigError, LedgerError) as exc:
        log.error(f"Startup failed: {exc}")
        return EXIT_STARTUP_FAILURE

    try:
        if args.command == "run":
            report = svc.run_once(max_streams=args.max_streams)
            log.info(report.summary_line())
            return EXIT_RUN_ABORTED if report.aborted else EXIT_OK

        try:
            scheduler = svc.scheduler(args.schedule)
        except ConfigError as exc:
            log.error(f"Startup failed: {exc}")
            return EXIT_STARTUP_FAILURE
        stop = stop_event or threading.Event()
        if stop_event is None:
            install_signal_handlers(stop)
        scheduler.run_forever(stop)
        failures: List[str] = [r.run_id for r in scheduler.reports if r.aborted]
        if failures:
            log.warning(f"Aborted runs during this session: {', '.join(failures)}")
        return EXIT_OK
    finally:
        svc.close()


if __name__ == "__main__":  # pragma: no cover - script entry
    raise SystemExit(main())
