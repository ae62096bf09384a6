"""
================================================================================
MangaHook - Retry Transport
================================================================================
Shared HTTP transport for every connector and the reader proxy.

RETRY POLICY:
  - Only transient network faults are retried (reset, refused, timeout,
    broken chunked body, DNS hiccup)
  - An HTTP error status is NOT a fault: the response is returned as-is and
    the caller decides what a 404 or a 503 means
  - Delay before attempt k+1 is base * 2^k ms (100ms, 200ms, ...), no jitter
  - Exhausted retries raise UpstreamUnavailable chained to the last fault

The policy lives in two pure functions (should_retry, backoff_delay) so the
send loop stays small and tests never need a socket.
================================================================================
"""

import logging
import os
import socket
import threading
import time
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter

from .errors import OperationCancelled, UpstreamUnavailable

logger = logging.getLogger(__name__)

USER_AGENT = "MangaHook/1.0"

DEFAULT_MAX_ATTEMPTS = int(os.environ.get("HTTP_MAX_ATTEMPTS", "3"))
DEFAULT_BASE_DELAY_MS = int(os.environ.get("HTTP_RETRY_BASE_MS", "100"))
DEFAULT_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "15"))

TRANSIENT_REQUEST_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

# Raw socket faults that escape requests' own wrapping
TRANSIENT_SOCKET_ERRORS = (ConnectionError, TimeoutError, socket.gaierror)


# =============================================================================
# POLICY
# =============================================================================

def is_transient(error: BaseException) -> bool:
    """Classify a failure as retry-recoverable."""
    if isinstance(error, requests.exceptions.SSLError):
        return False
    if isinstance(error, requests.exceptions.RequestException):
        return isinstance(error, TRANSIENT_REQUEST_ERRORS)
    return isinstance(error, TRANSIENT_SOCKET_ERRORS)


def should_retry(
    error: BaseException,
    attempt: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
) -> bool:
    """
    Decide whether a failed attempt gets another try.

    Args:
        error: What the attempt raised
        attempt: 0-based index of the attempt that failed
        max_attempts: Total attempts allowed (including the first)
    """
    return is_transient(error) and attempt + 1 < max_attempts


def backoff_delay(attempt: int, base_ms: int = DEFAULT_BASE_DELAY_MS) -> float:
    """Seconds to wait after failed attempt `attempt` (0-based)."""
    return base_ms * (2 ** attempt) / 1000.0


# =============================================================================
# TRANSPORT
# =============================================================================

def create_session() -> requests.Session:
    """Pooled session; urllib3's own retries are off so ours are the only ones."""
    session = requests.Session()
    session.headers.update({
        "User-Agent": USER_AGENT,
        "Accept": "application/json, image/*;q=0.9, */*;q=0.8",
    })
    adapter = HTTPAdapter(pool_connections=10, pool_maxsize=20, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class RetryTransport:
    """
    Thread-safe wrapper around a requests.Session.

    Holds configuration only; any number of request threads may share one
    instance.

    Usage:
        transport = RetryTransport()
        resp = transport.get("https://api.mangadex.org/manga", params={...})
        if resp.status_code == 404:
            ...
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session = session if session is not None else create_session()
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.timeout = timeout
        self._sleep = sleep

    def send(
        self,
        method: str,
        url: str,
        cancel_event: Optional[threading.Event] = None,
        **kwargs
    ) -> requests.Response:
        """
        Issue a request, retrying transient faults.

        The timeout applies per attempt. If `cancel_event` is set by the time
        a retry is due, the remaining attempts are abandoned.
        """
        kwargs.setdefault("timeout", self.timeout)
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"{method} {url} cancelled after {attempt} attempt(s)")
            try:
                return self.session.request(method, url, **kwargs)
            except Exception as exc:
                if not is_transient(exc):
                    raise
                if not should_retry(exc, attempt, self.max_attempts):
                    logger.warning("%s %s failed after %d attempt(s): %s", method, url, attempt + 1, exc)
                    raise UpstreamUnavailable(
                        f"{method} {url} unreachable after {attempt + 1} attempt(s): {exc}",
                        last_error=exc
                    ) from exc
                delay = backoff_delay(attempt, self.base_delay_ms)
                logger.info("Transient error on %s %s (attempt %d), retrying in %.2fs: %s",
                            method, url, attempt + 1, delay, exc)
                self._sleep(delay)
                attempt += 1

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.send("GET", url, **kwargs)
