"""Unit tests for bunge_digest.logging_setup."""

from __future__ import annotations

import logging
import os
import tempfile
import unittest

import pytest

from bunge_digest.logging_setup import apply_log_level, stream_logger

pytestmark = pytest.mark.unit


class TestApplyLogLevel(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self.saved_level = root.level
        self.saved_handlers = list(root.handlers)
        self.saved_handler_levels = [h.level for h in root.handlers]
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            if handler not in self.saved_handlers:
                root.removeHandler(handler)
                handler.close()
        for handler, level in zip(self.saved_handlers, self.saved_handler_levels):
            handler.setLevel(level)
        root.setLevel(self.saved_level)
        self.temp_dir.cleanup()

    def test_invalid_level(self):
        with self.assertRaises(ValueError):
            apply_log_level("CHATTY")

    def test_sets_root_level_and_quiets_libraries(self):
        apply_log_level("debug")
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertEqual(logging.getLogger("urllib3").level, logging.WARNING)
        self.assertEqual(logging.getLogger("openai").level, logging.WARNING)

    def test_log_file_added_once(self):
        log_file = os.path.join(self.temp_dir.name, "logs", "digest.log")

        apply_log_level("INFO", log_file)
        apply_log_level("INFO", log_file)

        file_handlers = [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)
        ]
        self.assertEqual(len(file_handlers), 1)
        self.assertTrue(os.path.exists(log_file))


class TestStreamLogger(unittest.TestCase):
    def test_prefixes_stream_id(self):
        base = logging.getLogger("bunge_digest.test.stream")
        with self.assertLogs(base, level="INFO") as captured:
            stream_logger(base, "abc123").info("Downloading %s", "audio")
        self.assertEqual(captured.records[0].getMessage(), "[abc123] Downloading audio")
