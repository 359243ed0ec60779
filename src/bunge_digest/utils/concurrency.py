"""Concurrency primitives shared by the Run and its stages.

Work fans out along two axes: streams within a Run (a worker pool of K) and
segments/windows within a stage (a pool of ``stage_fanout`` per stream). On
top of both, every external call passes through one :class:`CallGate`, a
bounded semaphore whose size is the combined ceiling on in-flight calls.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import as_completed, Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from ..exceptions import DeadlineExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CallGate:
    """Global ceiling on concurrent external calls.

    Also records the high-water mark of concurrent holders so tests can
    check that the ceiling held.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"Call gate limit must be at least 1, got: {limit}")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._active = 0
        self.peak = 0

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one call slot for the duration of the block."""
        self._semaphore.acquire()
        with self._lock:
            self._active += 1
            self.peak = max(self.peak, self._active)
        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._semaphore.release()

    def call(self, func: Callable[[], T]) -> T:
        with self.slot():
            return func()


class Deadline:
    """Cooperative per-Run deadline.

    ``check()`` raises :class:`DeadlineExceededError` once the deadline has
    passed or the Run was cancelled. Stages call it before starting any
    external call, never while one is in flight.
    """

    def __init__(
        self,
        seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds if seconds is not None else None
        self._cancelled = threading.Event()
        self._reason = "Run deadline exceeded"

    def cancel(self, reason: str) -> None:
        self._reason = reason
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self) -> None:
        if self._cancelled.is_set():
            raise DeadlineExceededError(self._reason)
        if self._expires_at is not None and self._clock() >= self._expires_at:
            raise DeadlineExceededError()


class StreamDeadline(Deadline):
    """One stream's view of the Run deadline.

    ``check()`` checks the Run deadline (if any) and then runs ``on_check``,
    so per-stream upkeep such as lease refreshes happens before every
    external call. Cancelling cancels the whole Run.
    """

    def __init__(self, parent: Optional[Deadline], on_check: Callable[[], None]) -> None:
        self._parent = parent if parent is not None else Deadline()
        self._on_check = on_check

    def cancel(self, reason: str) -> None:
        self._parent.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._parent.cancelled

    def remaining(self) -> Optional[float]:
        return self._parent.remaining()

    def expired(self) -> bool:
        return self._parent.expired()

    def check(self) -> None:
        self._parent.check()
        self._on_check()


def fan_out(
    func: Callable[[T], R],
    items: Sequence[T],
    max_workers: int,
    *,
    thread_name_prefix: str = "fanout",
) -> Tuple[Dict[int, R], Dict[int, BaseException]]:
    """Apply ``func`` to every item with at most ``max_workers`` threads.

    Results are keyed by the item's position in ``items`` and never by
    completion order. Every item runs to completion (successfully or not)
    so that partial results stay available to the caller.

    Returns:
        Tuple of (results by position, errors by position)
    """
    results: Dict[int, R] = {}
    errors: Dict[int, BaseException] = {}
    if not items:
        return results, errors

    workers = max(1, min(max_workers, len(items)))
    if workers == 1:
        for position, item in enumerate(items):
            try:
                results[position] = func(item)
            except Exception as exc:
                errors[position] = exc
        return results, errors

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as pool:
        futures: Dict[Future, int] = {
            pool.submit(func, item): position for position, item in enumerate(items)
        }
        for future in as_completed(futures):
            position = futures[future]
            try:
                results[position] = future.result()
            except Exception as exc:
                errors[position] = exc
    return results, errors


def ordered(results: Dict[int, R]) -> List[R]:
    """Values of a position-keyed mapping in position order."""
    return [results[position] for position in sorted(results)]
