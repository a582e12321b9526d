"""Tests for the retry decorator."""
from unittest.mock import patch

import pytest

from gendeploy.core.retry import retry
from gendeploy.models.errors import AuthenticationError, TransientTransportError, TransportError


@patch('gendeploy.core.retry.time.sleep')
def test_retries_until_success(mock_sleep):
    calls = []

    @retry(max_attempts=3, delay=1, backoff=2, exceptions=(TransientTransportError,))
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientTransportError("Connection refused")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3
    assert [c[0][0] for c in mock_sleep.call_args_list] == [1, 2]


@patch('gendeploy.core.retry.time.sleep')
def test_other_errors_not_retried(mock_sleep):
    calls = []

    @retry(max_attempts=3, exceptions=(TransientTransportError,))
    def denied():
        calls.append(1)
        raise AuthenticationError("Permission denied")

    with pytest.raises(AuthenticationError):
        denied()

    assert len(calls) == 1
    mock_sleep.assert_not_called()


@patch('gendeploy.core.retry.time.sleep')
def test_zero_attempts_means_one(mock_sleep):
    calls = []

    @retry(max_attempts=0, exceptions=(TransientTransportError,))
    def unreachable():
        calls.append(1)
        raise TransientTransportError("No route to host")

    with pytest.raises(TransientTransportError):
        unreachable()

    assert len(calls) == 1


@patch('gendeploy.core.retry.time.sleep')
def test_dropped_connection_not_retried(mock_sleep):
    calls = []

    @retry(max_attempts=3, exceptions=(TransientTransportError,))
    def append_record():
        calls.append(1)
        raise TransportError("Connection lost: client_loop: send disconnect: Broken pipe")

    with pytest.raises(TransportError):
        append_record()

    assert len(calls) == 1
    mock_sleep.assert_not_called()
