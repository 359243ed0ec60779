"""Unit tests for YouTube stream discovery and ledger-aware selection."""

from __future__ import annotations

import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from bunge_digest.discovery import discover, StaticChannelSource, YouTubeChannelSource
from bunge_digest.discovery.channel_source import ChannelSource
from bunge_digest.discovery.youtube import (
    extract_initial_data,
    infer_chamber,
    parse_duration,
    parse_streams,
    parse_time_ago,
)
from bunge_digest.exceptions import LedgerUnavailableError, NetworkError, ServiceError
from bunge_digest.ledger import InMemoryLedger
from bunge_digest.ledger import transitions
from bunge_digest.models import Chamber, FinalSummary, StreamStatus, utcnow
from tests.conftest import create_candidates, TEST_RUN_ID

pytestmark = pytest.mark.unit

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def video(video_id, title, length="3:05:12", published="Streamed 2 days ago", **extra):
    renderer = {
        "videoId": video_id,
        "title": {"runs": [{"text": title}]},
        "lengthText": {"simpleText": length},
        "publishedTimeText": {"simpleText": published},
        "viewCountText": {"simpleText": "1,234 views"},
    }
    renderer.update(extra)
    return {"richItemRenderer": {"content": {"videoRenderer": renderer}}}


def initial_data(*items):
    return {
        "contents": {
            "twoColumnBrowseResultsRenderer": {
                "tabs": [
                    {"tabRenderer": {"title": "Home"}},
                    {"tabRenderer": {"content": {"richGridRenderer": {"contents": list(items)}}}},
                ]
            }
        }
    }


def page(data):
    return (
        "<html><head></head><body><script nonce=\"x\">var ytInitialData = "
        f"{json.dumps(data)};</script></body></html>"
    )


class TestParsingHelpers(unittest.TestCase):
    def test_parse_duration(self):
        self.assertEqual(parse_duration("3:05:12"), 3 * 3600 + 5 * 60 + 12)
        self.assertEqual(parse_duration("45:00"), 2700)
        self.assertEqual(parse_duration("59"), 59)
        self.assertIsNone(parse_duration(""))
        self.assertIsNone(parse_duration("LIVE"))

    def test_parse_time_ago(self):
        self.assertEqual(parse_time_ago("Streamed 3 days ago", NOW), NOW - timedelta(days=3))
        self.assertEqual(parse_time_ago("1 hour ago", NOW), NOW - timedelta(hours=1))
        self.assertEqual(parse_time_ago("Streamed 2 weeks ago", NOW), NOW - timedelta(weeks=2))
        self.assertIsNone(parse_time_ago("Premieres tomorrow", NOW))

    def test_infer_chamber(self):
        self.assertEqual(infer_chamber("SENATE | Afternoon Sitting"), Chamber.SENATE)
        self.assertEqual(
            infer_chamber("National Assembly Morning Sitting"), Chamber.NATIONAL_ASSEMBLY
        )
        self.assertEqual(infer_chamber("Budget Committee hearing"), Chamber.UNKNOWN)

    def test_extract_initial_data(self):
        data = initial_data(video("abc", "Senate sitting"))
        self.assertEqual(extract_initial_data(page(data)), data)

    def test_extract_initial_data_missing_script(self):
        with self.assertRaises(ValueError):
            extract_initial_data("<html><body>No data here</body></html>")


class TestParseStreams(unittest.TestCase):
    def test_builds_candidates_from_grid(self):
        data = initial_data(
            video("vid00000001", "National Assembly Afternoon Sitting", published="Streamed 1 day ago")
        )

        candidates = parse_streams(data, NOW, channel_name="Parliament of Kenya")

        self.assertEqual(len(candidates), 1)
        candidate = candidates[0]
        self.assertEqual(candidate.id, "vid00000001")
        self.assertEqual(candidate.title, "National Assembly Afternoon Sitting")
        self.assertEqual(candidate.recorded_at, NOW - timedelta(days=1))
        self.assertEqual(candidate.chamber, Chamber.NATIONAL_ASSEMBLY)
        self.assertEqual(candidate.estimated_duration, float(3 * 3600 + 5 * 60 + 12))
        self.assertEqual(candidate.uri, "https://youtube.com/watch?v=vid00000001")
        self.assertEqual(candidate.source, "Parliament of Kenya")

    def test_skips_live_upcoming_and_short_items(self):
        data = initial_data(
            video("upcoming", "Senate sitting", upcomingEventData={"startTime": "1741600000"}),
            video("short", "Senate clip", length="4:30"),
            video("nolength", "Senate sitting", length=""),
            video("finished", "Senate sitting"),
        )
        live = video("live", "Senate sitting")
        del live["richItemRenderer"]["content"]["videoRenderer"]["viewCountText"]
        data["contents"]["twoColumnBrowseResultsRenderer"]["tabs"][1]["tabRenderer"]["content"][
            "richGridRenderer"
        ]["contents"].append(live)

        candidates = parse_streams(data, NOW, min_duration_seconds=600)

        self.assertEqual([c.id for c in candidates], ["finished"])

    def test_channel_chamber_overrides_title(self):
        data = initial_data(video("abc", "Afternoon Sitting"))
        candidates = parse_streams(data, NOW, chamber=Chamber.SENATE)
        self.assertEqual(candidates[0].chamber, Chamber.SENATE)

    def test_missing_grid_raises(self):
        with self.assertRaises(ValueError):
            parse_streams({"contents": {}}, NOW)


class TestYouTubeChannelSource(unittest.TestCase):
    def test_lists_streams_from_fetched_page(self):
        html = page(initial_data(video("abc", "Senate sitting")))
        source = YouTubeChannelSource("Senate", "https://www.youtube.com/@senate/streams")

        with patch("bunge_digest.discovery.youtube.fetch_text", return_value=html) as fetch:
            candidates = source.list_streams(NOW)

        self.assertEqual([c.id for c in candidates], ["abc"])
        self.assertEqual(fetch.call_args[0][0], "https://www.youtube.com/@senate/streams")

    def test_unparseable_page_is_a_service_error(self):
        source = YouTubeChannelSource("Senate", "https://www.youtube.com/@senate/streams")
        with patch("bunge_digest.discovery.youtube.fetch_text", return_value="<html></html>"):
            with self.assertRaises(ServiceError):
                source.list_streams(NOW)


class FailingSource(ChannelSource):
    name = "broken"

    def list_streams(self, now=None):
        raise NetworkError("connection reset", provider="HTTP")


class BrokenLedger(InMemoryLedger):
    def get_many(self, stream_ids):
        raise LedgerUnavailableError("database is locked")


class TestDiscover(unittest.TestCase):
    def setUp(self):
        self.ledger = InMemoryLedger()

    def complete(self, candidate):
        record = transitions.claim(self.ledger, candidate, "run-old", 60, 3)
        record = transitions.advance(self.ledger, record, StreamStatus.SUMMARIZING)
        transitions.complete(
            self.ledger,
            record,
            FinalSummary(candidate.id, "done", utcnow(), "fake-model"),
        )

    def test_completed_streams_are_skipped_before_the_cap(self):
        a, b, c = create_candidates("A", "B", "C")
        self.complete(a)
        source = StaticChannelSource("test", [a, b, c])

        result = discover([source], self.ledger, 2, TEST_RUN_ID, 3)

        self.assertEqual([x.id for x in result.candidates], ["B", "C"])
        self.assertEqual(result.skipped, {"A": "already completed"})

    def test_oldest_first_then_cap(self):
        a, b, c = create_candidates("A", "B", "C")
        source = StaticChannelSource("test", [c, a, b])

        result = discover([source], self.ledger, 2, TEST_RUN_ID, 3)

        self.assertEqual([x.id for x in result.candidates], ["A", "B"])

    def test_newest_first(self):
        a, b, c = create_candidates("A", "B", "C")
        source = StaticChannelSource("test", [a, b, c])

        result = discover([source], self.ledger, 2, TEST_RUN_ID, 3, order="newest_first")

        self.assertEqual([x.id for x in result.candidates], ["C", "B"])

    def test_duplicates_across_channels_kept_once(self):
        a, b = create_candidates("A", "B")
        sources = [StaticChannelSource("one", [a, b]), StaticChannelSource("two", [b])]

        result = discover(sources, self.ledger, 5, TEST_RUN_ID, 3)

        self.assertEqual([x.id for x in result.candidates], ["A", "B"])

    def test_failing_source_does_not_stop_discovery(self):
        (a,) = create_candidates("A")
        sources = [FailingSource(), StaticChannelSource("ok", [a])]

        result = discover(sources, self.ledger, 5, TEST_RUN_ID, 3)

        self.assertEqual([x.id for x in result.candidates], ["A"])
        self.assertEqual(result.failed_sources, ["broken"])

    def test_ledger_outage_propagates(self):
        (a,) = create_candidates("A")
        with self.assertRaises(LedgerUnavailableError):
            discover([StaticChannelSource("ok", [a])], BrokenLedger(), 5, TEST_RUN_ID, 3)

    def test_discovery_does_not_write_the_ledger(self):
        a, b = create_candidates("A", "B")
        discover([StaticChannelSource("ok", [a, b])], self.ledger, 5, TEST_RUN_ID, 3)
        self.assertEqual(self.ledger.records(), [])

    def test_crashed_stream_out_of_attempts_is_failed_and_skipped(self):
        a, b = create_candidates("A", "B")
        start = utcnow()
        for attempt in range(3):
            transitions.claim(
                self.ledger, a, f"run-{attempt}", 60, 3, now=start + timedelta(minutes=2 * attempt)
            )
        later = start + timedelta(hours=1)

        result = discover(
            [StaticChannelSource("ok", [a, b])], self.ledger, 5, TEST_RUN_ID, 3, now=later
        )

        self.assertEqual([x.id for x in result.candidates], ["B"])
        self.assertEqual(result.skipped, {"A": "lease expired after 3 attempts"})
        record = self.ledger.get("A")
        self.assertEqual(record.status, StreamStatus.FAILED)
        self.assertEqual(record.failed_stage, StreamStatus.DOWNLOADING)
        self.assertIsNone(record.claimed_by)
