"""Pytest configuration for unit tests.

This module enforces network isolation for unit tests: any attempt to open
a socket fails the test. External collaborators (YouTube, yt-dlp, ffmpeg,
OpenAI) are always replaced by fakes or mocks in unit tests.

All helper functions from the main conftest are available via pytest's conftest
resolution.
"""

import socket
import sys
from pathlib import Path

import pytest

parent_tests_dir = Path(__file__).parent.parent
if str(parent_tests_dir) not in sys.path:
    sys.path.insert(0, str(parent_tests_dir))


class NetworkCallDetectedError(Exception):
    """Raised when a unit test tries to reach the network."""


@pytest.fixture(autouse=True)
def block_network_calls(monkeypatch):
    def _blocked(*args, **kwargs):
        raise NetworkCallDetectedError(
            "Network access is not allowed in unit tests. Mock the HTTP call instead."
        )

    monkeypatch.setattr(socket.socket, "connect", _blocked)
    monkeypatch.setattr(socket, "create_connection", _blocked)
    yield

