"""Unit tests for the ledger stores and the record state machine."""

from __future__ import annotations

import os
import shutil
import sqlite3
import tempfile
import threading
import unittest
from datetime import timedelta

import pytest

from bunge_digest.exceptions import (
    InvalidTransitionError,
    LedgerConflictError,
    LedgerUnavailableError,
)
from bunge_digest.ledger import InMemoryLedger, SqliteLedger
from bunge_digest.ledger import transitions
from bunge_digest.ledger.lease import LeaseKeeper
from bunge_digest.models import (
    Chamber,
    FinalSummary,
    ProcessingRecord,
    StreamStatus,
    utcnow,
)
from tests.conftest import create_test_candidate, TEST_STREAM_ID, TEST_STREAM_TITLE

pytestmark = pytest.mark.unit

LEASE = 3600
MAX_ATTEMPTS = 3


def make_summary(stream_id=TEST_STREAM_ID, text="## Overview\nThe House met."):
    return FinalSummary(
        stream_id=stream_id,
        text=text,
        generated_at=utcnow(),
        model_version="fake-model",
        prompts={"summarization/map_v1": "ab" * 32},
    )


class LedgerContract:
    """Behaviour every ledger store must share."""

    def make_ledger(self):
        raise NotImplementedError

    def setUp(self):
        self.ledger = self.make_ledger()
        self.candidate = create_test_candidate()

    def test_insert_and_get(self):
        stored = self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))

        self.assertEqual(stored.version, 1)
        record = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(record.status, StreamStatus.DISCOVERED)
        self.assertEqual(record.title, TEST_STREAM_TITLE)
        self.assertEqual(record.chamber, Chamber.NATIONAL_ASSEMBLY)
        self.assertEqual(record.recorded_at, self.candidate.recorded_at)

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.ledger.get("missing"))
        self.assertIsNone(self.ledger.get_summary("missing"))

    def test_duplicate_insert_conflicts(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        with self.assertRaises(LedgerConflictError):
            self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))

    def test_compare_and_swap_bumps_version(self):
        stored = self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))

        updated = self.ledger.compare_and_swap(
            TEST_STREAM_ID, stored.version, status=StreamStatus.DOWNLOADING, claimed_by="run-a"
        )

        self.assertEqual(updated.version, 2)
        self.assertEqual(self.ledger.get(TEST_STREAM_ID).claimed_by, "run-a")

    def test_stale_version_conflicts(self):
        stored = self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        self.ledger.compare_and_swap(TEST_STREAM_ID, stored.version, claimed_by="run-a")

        with self.assertRaises(LedgerConflictError):
            self.ledger.compare_and_swap(TEST_STREAM_ID, stored.version, claimed_by="run-b")
        self.assertEqual(self.ledger.get(TEST_STREAM_ID).claimed_by, "run-a")

    def test_unknown_field_rejected(self):
        stored = self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        with self.assertRaises(ValueError):
            self.ledger.compare_and_swap(TEST_STREAM_ID, stored.version, version=99)

    def test_complete_stores_summary_and_clears_claim(self):
        record = transitions.claim(self.ledger, self.candidate, "run-a", LEASE, MAX_ATTEMPTS)
        record = transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)

        transitions.complete(self.ledger, record, make_summary())

        stored = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(stored.status, StreamStatus.COMPLETED)
        self.assertIsNone(stored.claimed_by)
        self.assertIsNone(stored.lease_expires_at)
        summary = self.ledger.get_summary(TEST_STREAM_ID)
        self.assertEqual(summary.text, "## Overview\nThe House met.")
        self.assertEqual(summary.model_version, "fake-model")
        self.assertEqual(summary.prompts, {"summarization/map_v1": "ab" * 32})

    def test_get_many_returns_existing_only(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        records = self.ledger.get_many([TEST_STREAM_ID, "other"])
        self.assertEqual(list(records), [TEST_STREAM_ID])

    def test_failure_fields_round_trip(self):
        record = transitions.claim(self.ledger, self.candidate, "run-a", LEASE, MAX_ATTEMPTS)
        record = transitions.advance(self.ledger, record, StreamStatus.TRANSCRIBING)

        transitions.fail(
            self.ledger,
            record,
            record.status,
            "segment 3 of 5 (index 2): corrupt",
            retryable=False,
            failed_index=2,
        )

        stored = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(stored.status, StreamStatus.FAILED)
        self.assertEqual(stored.failed_stage, StreamStatus.TRANSCRIBING)
        self.assertEqual(stored.failed_index, 2)
        self.assertFalse(stored.retryable)
        self.assertEqual(stored.last_error, "segment 3 of 5 (index 2): corrupt")

    def test_concurrent_claims_have_one_winner(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        barrier = threading.Barrier(4)
        winners = []
        losers = []

        def contend(run_id):
            barrier.wait()
            try:
                if transitions.claim(self.ledger, self.candidate, run_id, LEASE, MAX_ATTEMPTS):
                    winners.append(run_id)
                else:
                    losers.append(run_id)
            except LedgerConflictError:
                losers.append(run_id)

        threads = [threading.Thread(target=contend, args=(f"run-{i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), 3)
        self.assertEqual(self.ledger.get(TEST_STREAM_ID).claimed_by, winners[0])
        self.assertEqual(self.ledger.get(TEST_STREAM_ID).attempt_count, 1)


class TestInMemoryLedger(LedgerContract, unittest.TestCase):
    def make_ledger(self):
        return InMemoryLedger()

    def test_records_lists_every_record(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        self.assertEqual([r.stream_id for r in self.ledger.records()], [TEST_STREAM_ID])

    def test_returned_records_are_copies(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        record = self.ledger.get(TEST_STREAM_ID)
        record.status = StreamStatus.COMPLETED
        self.assertEqual(self.ledger.get(TEST_STREAM_ID).status, StreamStatus.DISCOVERED)


class TestSqliteLedger(LedgerContract, unittest.TestCase):
    def make_ledger(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "nested", "ledger.db")
        return SqliteLedger(self.db_path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_creates_parent_directory(self):
        self.assertTrue(os.path.exists(self.db_path))

    def test_state_survives_reopen(self):
        record = transitions.claim(self.ledger, self.candidate, "run-a", LEASE, MAX_ATTEMPTS)
        record = transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)
        transitions.complete(self.ledger, record, make_summary())

        reopened = SqliteLedger(self.db_path)

        self.assertEqual(reopened.get(TEST_STREAM_ID).status, StreamStatus.COMPLETED)
        self.assertEqual(reopened.get_summary(TEST_STREAM_ID).text, "## Overview\nThe House met.")

    def test_opens_ledger_without_prompt_column(self):
        old_path = os.path.join(self.temp_dir, "old.db")
        conn = sqlite3.connect(old_path)
        conn.execute(
            "CREATE TABLE final_summaries (stream_id TEXT PRIMARY KEY, text TEXT NOT NULL, "
            "generated_at TEXT NOT NULL, model_version TEXT NOT NULL)"
        )
        conn.commit()
        conn.close()

        ledger = SqliteLedger(old_path)
        record = transitions.claim(ledger, self.candidate, "run-a", LEASE, MAX_ATTEMPTS)
        record = transitions.advance(ledger, record, StreamStatus.SUMMARIZING)
        transitions.complete(ledger, record, make_summary())

        self.assertEqual(
            ledger.get_summary(TEST_STREAM_ID).prompts, {"summarization/map_v1": "ab" * 32}
        )

    def test_memory_path_rejected(self):
        with self.assertRaises(ValueError):
            SqliteLedger(":memory:")

    def test_unwritable_location_is_unavailable(self):
        blocker = os.path.join(self.temp_dir, "blocker")
        with open(blocker, "w", encoding="utf-8") as f:
            f.write("not a directory")
        with self.assertRaises(LedgerUnavailableError):
            SqliteLedger(os.path.join(blocker, "ledger.db"))


class TestTransitions(unittest.TestCase):
    def setUp(self):
        self.ledger = InMemoryLedger()
        self.candidate = create_test_candidate()

    def claim(self, run_id="run-a", now=None):
        return transitions.claim(
            self.ledger, self.candidate, run_id, LEASE, MAX_ATTEMPTS, now=now
        )

    def fail_at(self, stage, retryable=True):
        record = self.claim()
        if stage is not StreamStatus.DOWNLOADING:
            record = transitions.advance(self.ledger, record, stage)
        return transitions.fail(
            self.ledger, record, record.status, "boom", retryable=retryable, failed_index=1
        )

    def test_first_claim_creates_record_and_starts_download(self):
        record = self.claim()

        self.assertEqual(record.status, StreamStatus.DOWNLOADING)
        self.assertEqual(record.attempt_count, 1)
        self.assertEqual(record.claimed_by, "run-a")
        self.assertIsNotNone(record.lease_expires_at)

    def test_advance_moves_forward(self):
        record = self.claim()
        record = transitions.advance(self.ledger, record, StreamStatus.TRANSCRIBING)
        self.assertEqual(record.status, StreamStatus.TRANSCRIBING)

    def test_advance_never_moves_backward(self):
        record = self.claim()
        record = transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)
        before = record.version

        record = transitions.advance(self.ledger, record, StreamStatus.TRANSCRIBING)

        self.assertEqual(record.status, StreamStatus.SUMMARIZING)
        self.assertEqual(record.version, before + 1)

    def test_advance_to_completed_is_rejected(self):
        record = self.claim()
        with self.assertRaises(InvalidTransitionError):
            transitions.advance(self.ledger, record, StreamStatus.COMPLETED)

    def test_complete_requires_summarizing(self):
        record = self.claim()
        with self.assertRaises(InvalidTransitionError):
            transitions.complete(self.ledger, record, make_summary())

    def test_stale_record_cannot_advance(self):
        stale = self.claim()
        transitions.advance(self.ledger, stale, StreamStatus.TRANSCRIBING)
        with self.assertRaises(LedgerConflictError):
            transitions.advance(self.ledger, stale, StreamStatus.TRANSCRIBING)

    def test_completed_stream_is_never_claimed(self):
        record = self.claim()
        record = transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)
        transitions.complete(self.ledger, record, make_summary())

        self.assertIsNone(self.claim("run-b"))
        self.assertEqual(
            transitions.skip_reason(self.ledger.get(TEST_STREAM_ID), "run-b", MAX_ATTEMPTS),
            "already completed",
        )

    def test_retryable_failure_resumes_at_failed_stage(self):
        self.fail_at(StreamStatus.TRANSCRIBING)

        record = self.claim("run-b")

        self.assertEqual(record.status, StreamStatus.TRANSCRIBING)
        self.assertEqual(record.attempt_count, 2)
        self.assertIsNone(record.failed_stage)
        self.assertIsNone(record.failed_index)

    def test_permanent_failure_is_terminal(self):
        self.fail_at(StreamStatus.DOWNLOADING, retryable=False)

        self.assertIsNone(self.claim("run-b"))
        self.assertEqual(
            transitions.skip_reason(self.ledger.get(TEST_STREAM_ID), "run-b", MAX_ATTEMPTS),
            "failed permanently",
        )

    def test_attempts_exhausted_is_terminal(self):
        for run_id in ("run-a", "run-b", "run-c"):
            record = self.claim(run_id)
            transitions.fail(self.ledger, record, record.status, "timeout", retryable=True)

        self.assertIsNone(self.claim("run-d"))
        record = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(record.attempt_count, 3)
        self.assertTrue(transitions.is_terminal_failure(record, MAX_ATTEMPTS))

    def test_active_lease_blocks_other_runs(self):
        self.claim("run-a")
        self.assertIsNone(self.claim("run-b"))
        reason = transitions.skip_reason(self.ledger.get(TEST_STREAM_ID), "run-b", MAX_ATTEMPTS)
        self.assertTrue(reason.startswith("claimed by run-a"))

    def test_expired_lease_can_be_taken_over(self):
        record = self.claim("run-a")
        record = transitions.advance(self.ledger, record, StreamStatus.TRANSCRIBING)

        later = utcnow() + timedelta(seconds=LEASE + 60)
        taken = self.claim("run-b", now=later)

        self.assertEqual(taken.claimed_by, "run-b")
        self.assertEqual(taken.status, StreamStatus.TRANSCRIBING)
        # The displaced worker's next write loses
        with self.assertRaises(LedgerConflictError):
            transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)

    def test_crashed_runs_do_not_retry_forever(self):
        start = utcnow()
        for attempt in range(MAX_ATTEMPTS):
            # Each run dies mid-stage without recording a failure
            later = start + timedelta(seconds=(LEASE + 60) * attempt)
            record = self.claim(f"run-{attempt}", now=later)
            self.assertEqual(record.attempt_count, attempt + 1)

        after_last_lease = start + timedelta(seconds=(LEASE + 60) * MAX_ATTEMPTS)
        stale = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(
            transitions.skip_reason(stale, "run-next", MAX_ATTEMPTS, now=after_last_lease),
            "lease expired after 3 attempts",
        )

        for offset in range(3):
            later = after_last_lease + timedelta(hours=offset)
            self.assertIsNone(self.claim("run-next", now=later))

        record = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(record.status, StreamStatus.FAILED)
        self.assertEqual(record.attempt_count, MAX_ATTEMPTS)
        self.assertEqual(record.failed_stage, StreamStatus.DOWNLOADING)
        self.assertEqual(record.last_error, "lease expired after 3 attempts")
        self.assertIsNone(record.claimed_by)
        self.assertTrue(transitions.is_terminal_failure(record, MAX_ATTEMPTS))

    def test_exhausted_record_keeps_its_live_lease(self):
        for attempt in range(MAX_ATTEMPTS):
            later = utcnow() + timedelta(seconds=(LEASE + 60) * attempt)
            self.claim(f"run-{attempt}", now=later)

        # The last attempt is still within its lease
        self.assertIsNone(self.claim("run-next"))
        record = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(record.status, StreamStatus.DOWNLOADING)
        self.assertEqual(record.claimed_by, f"run-{MAX_ATTEMPTS - 1}")

    def test_abandon_fails_only_our_active_record(self):
        self.claim("run-a")

        self.assertIsNone(transitions.abandon(self.ledger, TEST_STREAM_ID, "run-b"))
        record = transitions.abandon(self.ledger, TEST_STREAM_ID, "run-a")

        self.assertEqual(record.status, StreamStatus.FAILED)
        self.assertEqual(record.last_error, transitions.ABANDONED_REASON)
        self.assertTrue(record.retryable)
        self.assertEqual(record.failed_stage, StreamStatus.DOWNLOADING)

    def test_abandon_unknown_stream_is_noop(self):
        self.assertIsNone(transitions.abandon(self.ledger, "missing", "run-a"))

    def test_fail_requires_active_record(self):
        self.ledger.insert(ProcessingRecord.for_candidate(self.candidate))
        record = self.ledger.get(TEST_STREAM_ID)
        with self.assertRaises(InvalidTransitionError):
            transitions.fail(self.ledger, record, record.status, "boom", retryable=True)


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestLeaseKeeper(unittest.TestCase):
    def setUp(self):
        self.ledger = InMemoryLedger()
        self.clock = FakeMonotonic()
        record = transitions.claim(
            self.ledger, create_test_candidate(), "run-a", LEASE, MAX_ATTEMPTS
        )
        self.keeper = LeaseKeeper(self.ledger, record, LEASE, clock=self.clock)

    def test_default_interval_is_a_quarter_of_the_lease(self):
        self.assertEqual(self.keeper.interval, LEASE / 4)

    def test_touch_within_interval_writes_nothing(self):
        version = self.keeper.record.version
        self.clock.now = LEASE / 4 - 1

        self.keeper.touch()

        self.assertEqual(self.ledger.get(TEST_STREAM_ID).version, version)

    def test_touch_after_interval_pushes_lease_forward(self):
        before = self.ledger.get(TEST_STREAM_ID)
        self.clock.now = LEASE / 4

        self.keeper.touch()

        after = self.ledger.get(TEST_STREAM_ID)
        self.assertEqual(after.version, before.version + 1)
        self.assertEqual(after.status, StreamStatus.DOWNLOADING)
        self.assertGreaterEqual(after.lease_expires_at, before.lease_expires_at)
        self.assertEqual(self.keeper.record, after)

    def test_advance_keeps_version_current_for_later_writes(self):
        self.keeper.advance(StreamStatus.TRANSCRIBING)
        self.clock.now = LEASE

        self.keeper.touch()
        record = transitions.fail(
            self.ledger, self.keeper.record, StreamStatus.TRANSCRIBING, "boom", retryable=True
        )

        self.assertEqual(record.status, StreamStatus.FAILED)
        self.assertEqual(record.failed_stage, StreamStatus.TRANSCRIBING)

    def test_touch_after_claim_taken_raises_conflict(self):
        current = self.ledger.get(TEST_STREAM_ID)
        self.ledger.compare_and_swap(TEST_STREAM_ID, current.version, claimed_by="run-b")
        self.clock.now = LEASE

        with self.assertRaises(LedgerConflictError):
            self.keeper.touch()
