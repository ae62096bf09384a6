import threading

import pytest
import requests

from sources.errors import OperationCancelled, UpstreamUnavailable
from sources.http_client import RetryTransport, backoff_delay, is_transient, should_retry

from fakes import FakeSession, make_response


def test_should_retry_transient_below_max_retries():
    error = requests.exceptions.ConnectionError("reset")
    assert should_retry(error, 0, 3)
    assert should_retry(error, 1, 3)
    assert not should_retry(error, 2, 3)


@pytest.mark.parametrize("error", [
    requests.exceptions.Timeout("slow"),
    requests.exceptions.ChunkedEncodingError("cut"),
    ConnectionResetError("peer reset"),
    TimeoutError("socket timeout"),
])
def test_transient_errors(error):
    assert is_transient(error)


@pytest.mark.parametrize("error", [
    ValueError("bad json"),
    requests.exceptions.SSLError("bad cert"),
    requests.exceptions.InvalidURL("nope"),
    KeyError("x"),
])
def test_non_transient_errors_never_retry(error):
    assert not is_transient(error)
    assert not should_retry(error, 0, 3)


def test_backoff_doubles_without_jitter():
    assert backoff_delay(0) == pytest.approx(0.1)
    assert backoff_delay(1) == pytest.approx(0.2)
    assert backoff_delay(2) == pytest.approx(0.4)
    assert backoff_delay(1, base_ms=250) == pytest.approx(0.5)


def test_exhausted_retries_raise_unavailable_with_cause():
    errors = [requests.exceptions.ConnectionError(f"reset {i}") for i in range(3)]
    session = FakeSession(errors)
    sleeps = []
    transport = RetryTransport(session=session, max_attempts=3, base_delay_ms=100, sleep=sleeps.append)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        transport.get("https://api.example.test/manga")

    assert len(session.calls) == 3
    assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]
    assert excinfo.value.__cause__ is errors[-1]
    assert excinfo.value.last_error is errors[-1]


def test_recovers_after_one_transient_failure():
    ok = make_response(200, json_body={"result": "ok"})
    session = FakeSession([requests.exceptions.Timeout("slow"), ok])
    sleeps = []
    transport = RetryTransport(session=session, sleep=sleeps.append)

    assert transport.get("https://api.example.test/manga") is ok
    assert len(session.calls) == 2
    assert sleeps == [pytest.approx(0.1)]


def test_non_transient_error_propagates_immediately():
    session = FakeSession([ValueError("boom")])
    sleeps = []
    transport = RetryTransport(session=session, sleep=sleeps.append)

    with pytest.raises(ValueError):
        transport.get("https://api.example.test/manga")
    assert len(session.calls) == 1
    assert sleeps == []


def test_http_error_status_is_returned_not_retried():
    session = FakeSession([make_response(503, content=b"busy")])
    transport = RetryTransport(session=session, sleep=lambda _: None)

    response = transport.get("https://api.example.test/manga")
    assert response.status_code == 503
    assert len(session.calls) == 1


def test_timeout_applies_per_attempt():
    session = FakeSession([requests.exceptions.ConnectionError("x"), make_response(200, content=b"")])
    transport = RetryTransport(session=session, timeout=7, sleep=lambda _: None)

    transport.get("https://api.example.test/manga")
    assert [call[2]["timeout"] for call in session.calls] == [7, 7]


def test_cancel_abandons_remaining_attempts():
    cancel = threading.Event()
    session = FakeSession([requests.exceptions.ConnectionError("x")] * 3)
    transport = RetryTransport(session=session, sleep=lambda _: cancel.set())

    with pytest.raises(OperationCancelled):
        transport.get("https://api.example.test/manga", cancel_event=cancel)
    assert len(session.calls) == 1


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryTransport(session=FakeSession([]), max_attempts=0)
