"""Retrying HTTP page fetches for channel discovery.

Each worker thread gets its own ``requests.Session`` with a urllib3 retry
adapter; sessions are closed at interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import threading
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import AuthRequiredError, NetworkError, NotFoundError, ServiceError

logger = logging.getLogger(__name__)

PAGE_RETRY_TOTAL = 4
PAGE_RETRY_BACKOFF = 0.5
PAGE_RETRY_STATUSES = (429, 500, 502, 503, 504)

_local = threading.local()
_sessions: List[requests.Session] = []
_sessions_lock = threading.Lock()


class _LoggedRetry(Retry):
    """urllib3 Retry that logs each retried page request."""

    def increment(self, method=None, url=None, *args, **kwargs):  # type: ignore[override]
        retry = super().increment(method=method, url=url, *args, **kwargs)
        cause = kwargs.get("error") or kwargs.get("response")
        logger.warning(
            "Retrying %s %s (%d retries left) after %s", method or "", url or "", retry.total, cause
        )
        return retry


def _new_session() -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(
        max_retries=_LoggedRetry(
            total=PAGE_RETRY_TOTAL,
            backoff_factor=PAGE_RETRY_BACKOFF,
            status_forcelist=PAGE_RETRY_STATUSES,
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def get_session() -> requests.Session:
    """Return this thread's page session, creating it on first use."""
    session = getattr(_local, "session", None)
    if session is None:
        session = _new_session()
        _local.session = session
        with _sessions_lock:
            _sessions.append(session)
        logger.debug("Opened HTTP session for thread %s", threading.current_thread().name)
    return session


@atexit.register
def _close_sessions() -> None:
    with _sessions_lock:
        while _sessions:
            session = _sessions.pop()
            try:
                session.close()
            except Exception as exc:  # pragma: no cover
                logger.debug("Error closing HTTP session: %s", exc)


def fetch_text(
    url: str,
    user_agent: str,
    timeout: int,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """GET ``url`` through the retry-enabled session and return its body.

    Raises:
        NotFoundError: On HTTP 404/410
        AuthRequiredError: On HTTP 401/403
        ServiceError: On any other HTTP error status
        NetworkError: On connection failures and timeouts
    """
    request_headers = {"User-Agent": user_agent, **(headers or {})}
    try:
        resp = get_session().get(url, headers=request_headers, timeout=timeout)
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to fetch {url}: {exc}", provider="HTTP") from exc

    status = resp.status_code
    if status in (404, 410):
        raise NotFoundError(f"{url} returned HTTP {status}", provider="HTTP")
    if status in (401, 403):
        raise AuthRequiredError(f"{url} returned HTTP {status}", provider="HTTP")
    if status >= 400:
        raise ServiceError(
            f"{url} returned HTTP {status}", provider="HTTP", retryable=status >= 500
        )
    logger.debug("Fetched %s (%d bytes)", url, len(resp.content))
    return resp.text
