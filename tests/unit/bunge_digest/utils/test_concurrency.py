"""Unit tests for bunge_digest.utils.concurrency."""

from __future__ import annotations

import threading
import time
import unittest

import pytest

from bunge_digest.exceptions import DeadlineExceededError
from bunge_digest.utils.concurrency import CallGate, Deadline, fan_out, ordered, StreamDeadline

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestCallGate(unittest.TestCase):
    def test_rejects_zero_limit(self):
        with self.assertRaises(ValueError):
            CallGate(0)

    def test_peak_never_exceeds_limit(self):
        gate = CallGate(3)

        def work(_):
            return gate.call(lambda: time.sleep(0.02))

        fan_out(work, list(range(12)), max_workers=8)

        self.assertLessEqual(gate.peak, 3)
        self.assertGreaterEqual(gate.peak, 1)

    def test_slot_released_on_error(self):
        gate = CallGate(1)
        with self.assertRaises(RuntimeError):
            with gate.slot():
                raise RuntimeError("boom")
        # A leaked slot would block here
        self.assertEqual(gate.call(lambda: "ok"), "ok")


class TestDeadline(unittest.TestCase):
    def test_no_deadline_never_expires(self):
        deadline = Deadline()
        self.assertFalse(deadline.expired())
        self.assertIsNone(deadline.remaining())
        deadline.check()

    def test_expires_with_clock(self):
        clock = FakeClock()
        deadline = Deadline(30.0, clock=clock)
        self.assertEqual(deadline.remaining(), 30.0)
        deadline.check()

        clock.now += 30.0
        self.assertTrue(deadline.expired())
        self.assertEqual(deadline.remaining(), 0.0)
        with self.assertRaises(DeadlineExceededError):
            deadline.check()

    def test_cancel_carries_reason(self):
        deadline = Deadline()
        deadline.cancel("ledger unavailable")
        self.assertTrue(deadline.cancelled)
        self.assertTrue(deadline.expired())
        with self.assertRaises(DeadlineExceededError) as ctx:
            deadline.check()
        self.assertIn("ledger unavailable", str(ctx.exception))


class TestStreamDeadline(unittest.TestCase):
    def test_check_runs_hook_after_run_deadline(self):
        checks = []
        stream = StreamDeadline(Deadline(), lambda: checks.append("hook"))

        stream.check()
        stream.check()

        self.assertEqual(checks, ["hook", "hook"])
        self.assertIsNone(stream.remaining())

    def test_expired_run_deadline_skips_hook(self):
        clock = FakeClock()
        parent = Deadline(10, clock=clock)
        checks = []
        stream = StreamDeadline(parent, lambda: checks.append("hook"))
        clock.now += 11

        with self.assertRaises(DeadlineExceededError):
            stream.check()
        self.assertTrue(stream.expired())
        self.assertEqual(checks, [])

    def test_cancel_reaches_the_run(self):
        parent = Deadline()
        stream = StreamDeadline(parent, lambda: None)

        stream.cancel("Run aborted: ledger unavailable")

        self.assertTrue(parent.cancelled)
        self.assertTrue(stream.cancelled)

    def test_without_run_deadline_only_hook_can_raise(self):
        def hook():
            raise RuntimeError("lease lost")

        stream = StreamDeadline(None, hook)

        self.assertFalse(stream.expired())
        with self.assertRaises(RuntimeError):
            stream.check()


class TestFanOut(unittest.TestCase):
    def test_results_keyed_by_position(self):
        delays = [0.05, 0.0, 0.02, 0.0]

        def work(i):
            time.sleep(delays[i])
            return i * 10

        results, errors = fan_out(work, [0, 1, 2, 3], max_workers=4)

        self.assertEqual(errors, {})
        self.assertEqual(ordered(results), [0, 10, 20, 30])

    def test_every_item_runs_despite_errors(self):
        seen = []
        lock = threading.Lock()

        def work(i):
            with lock:
                seen.append(i)
            if i in (1, 3):
                raise ValueError(f"item {i}")
            return i

        results, errors = fan_out(work, [0, 1, 2, 3, 4], max_workers=2)

        self.assertEqual(sorted(seen), [0, 1, 2, 3, 4])
        self.assertEqual(sorted(results), [0, 2, 4])
        self.assertEqual(sorted(errors), [1, 3])
        self.assertEqual(str(errors[1]), "item 1")

    def test_single_worker_runs_inline(self):
        threads = set()

        def work(i):
            threads.add(threading.current_thread().name)
            return i

        results, _ = fan_out(work, [0, 1, 2], max_workers=1)

        self.assertEqual(ordered(results), [0, 1, 2])
        self.assertEqual(threads, {threading.current_thread().name})

    def test_empty_items(self):
        self.assertEqual(fan_out(lambda i: i, [], max_workers=4), ({}, {}))
