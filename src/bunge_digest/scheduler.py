"""Single-flight Run scheduling, on demand or on a cron expression."""

from __future__ import annotations

import logging
import signal
import threading
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, List, Optional

from croniter import croniter

from .config_constants import DEFAULT_REPORT_HISTORY
from .exceptions import ConfigError
from .models import RunReport, utcnow

logger = logging.getLogger(__name__)


class TriggerResult(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    DROPPED = "dropped"


class RunScheduler:
    """Starts Runs so that at most one is active at a time.

    A trigger arriving while a Run is active is dropped (``skip``) or
    coalesced into a single follow-up Run (``queue``): any number of
    triggers during one Run produce at most one more.

    Args:
        run_once: Executes one Run and returns its report
        schedule: Cron expression for :meth:`run_forever`
        overlap_policy: ``skip`` or ``queue``
        clock: Returns the current time (injectable for tests)
        report_history: Number of most recent reports kept in ``reports``
    """

    def __init__(
        self,
        run_once: Callable[[], RunReport],
        schedule: str,
        overlap_policy: str = "skip",
        clock: Callable[[], datetime] = utcnow,
        report_history: int = DEFAULT_REPORT_HISTORY,
    ) -> None:
        if not croniter.is_valid(schedule):
            raise ConfigError(f"Invalid cron expression: {schedule!r}", config_key="schedule")
        if overlap_policy not in ("skip", "queue"):
            raise ConfigError(
                f"Unknown overlap_policy: {overlap_policy}", config_key="overlap_policy"
            )
        self.run_once = run_once
        self.schedule = schedule
        self.overlap_policy = overlap_policy
        self.clock = clock
        self.reports: Deque[RunReport] = deque(maxlen=report_history)
        self._state_lock = threading.Lock()
        self._running = False
        self._queued = False
        self._workers: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        with self._state_lock:
            return self._running

    def trigger(self) -> TriggerResult:
        """Start a Run in the calling thread unless one is already active.

        Returns once this call's Run (and any Run queued behind it) has
        finished, or immediately when the trigger was dropped or queued.
        """
        with self._state_lock:
            if self._running:
                if self.overlap_policy == "queue":
                    self._queued = True
                    logger.info("Run already active; trigger queued")
                    return TriggerResult.QUEUED
                logger.info("Run already active; trigger dropped")
                return TriggerResult.DROPPED
            self._running = True

        try:
            while True:
                report = self.run_once()
                self.reports.append(report)
                with self._state_lock:
                    if not self._queued:
                        self._running = False
                        break
                    self._queued = False
                logger.info("Starting queued run")
        except BaseException:
            with self._state_lock:
                self._running = False
                self._queued = False
            raise
        return TriggerResult.STARTED

    def next_fire_time(self, after: Optional[datetime] = None) -> datetime:
        return croniter(self.schedule, after or self.clock()).get_next(datetime)

    def run_forever(self, stop_event: threading.Event, max_fires: Optional[int] = None) -> None:
        """Fire :meth:`trigger` on every cron tick until ``stop_event`` is set.

        Each tick runs in its own thread so that ticks during an active Run
        still reach the overlap policy. On stop, the active Run is allowed to
        finish.
        """
        fires = 0
        logger.info("Scheduler started with schedule '%s'", self.schedule)
        next_fire = self.next_fire_time()
        while not stop_event.is_set():
            wait_seconds = max(0.0, (next_fire - self.clock()).total_seconds())
            logger.debug("Next run at %s", next_fire.isoformat())
            if stop_event.wait(wait_seconds):
                break
            self._start_worker()
            fires += 1
            if max_fires is not None and fires >= max_fires:
                break
            # Ticks missed while this loop was busy are not replayed
            next_fire = self.next_fire_time(max(next_fire, self.clock()))
        self.join()
        logger.info("Scheduler stopped")

    def _start_worker(self) -> threading.Thread:
        self._workers = [w for w in self._workers if w.is_alive()]
        worker = threading.Thread(target=self._fire, name="run-trigger")
        worker.start()
        self._workers.append(worker)
        return worker

    def _fire(self) -> None:
        try:
            self.trigger()
        except Exception:
            logger.exception("Scheduled run failed")

    def join(self) -> None:
        for worker in self._workers:
            worker.join()
        self._workers = [w for w in self._workers if w.is_alive()]


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM so the cron loop exits after the active Run."""

    def _handle(signum, _frame):
        logger.info("Received signal %s, stopping after the active run", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
