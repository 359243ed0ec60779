"""Keeps a worker's claim alive while its stages run."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from ..models import ProcessingRecord, StreamStatus
from . import transitions
from .base import Ledger

logger = logging.getLogger(__name__)


class LeaseKeeper:
    """Owns the claimed record of one stream for the worker processing it.

    Every status write goes through the keeper so its copy of the record
    always carries the current version. :meth:`touch` is called before each
    external call (from any stage thread) and pushes the lease forward at
    most once per ``interval`` seconds; a stage longer than the lease keeps
    its claim as long as it keeps making calls.

    Args:
        ledger: Processing ledger
        record: Record as returned by the claim
        lease_seconds: Lease length written on every refresh
        interval: Minimum seconds between refreshes (a quarter of the lease
            when omitted)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        ledger: Ledger,
        record: ProcessingRecord,
        lease_seconds: int,
        interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.lease_seconds = lease_seconds
        self.interval = lease_seconds / 4 if interval is None else interval
        self._clock = clock
        self._lock = threading.Lock()
        self._record = record
        self._refreshed_at = clock()

    @property
    def record(self) -> ProcessingRecord:
        with self._lock:
            return self._record

    def advance(self, target: StreamStatus) -> ProcessingRecord:
        """Move the record to ``target`` and renew the lease."""
        with self._lock:
            self._record = transitions.advance(
                self.ledger, self._record, target, self.lease_seconds
            )
            self._refreshed_at = self._clock()
            return self._record

    def touch(self) -> None:
        """Renew the lease if ``interval`` has passed since the last write.

        Raises:
            LedgerConflictError: Another writer changed the record; the claim
                is lost
            LedgerUnavailableError: The ledger store failed
        """
        with self._lock:
            if self._clock() - self._refreshed_at < self.interval:
                return
            self._record = transitions.advance(
                self.ledger, self._record, self._record.status, self.lease_seconds
            )
            self._refreshed_at = self._clock()
            logger.debug(
                "[%s] Lease renewed until %s",
                self._record.stream_id,
                self._record.lease_expires_at.isoformat(),
            )
