"""Unit tests for pushrelay.push.circuit_breaker.CircuitBreakerPushTransport."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from pushrelay.config.settings import build_settings
from pushrelay.core.types import TransportReason
from pushrelay.push import (
    CircuitBreakerPushTransport,
    PushMessage,
    PushTransport,
    SendReport,
    TransportError,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MESSAGE = PushMessage("t", "b")
_OK = SendReport(sent_count=1, failed_count=0)
_ALL_FAILED = SendReport(sent_count=0, failed_count=2, error="unavailable")


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _make_mock_transport(send_side_effect=None, send_result=_OK) -> MagicMock:
    """Build a MagicMock that satisfies the PushTransport interface."""
    mock = MagicMock(spec=PushTransport)
    mock._settings = build_settings({"database": {"database": "d", "user": "u"}}).push
    if send_side_effect is not None:
        mock.send_to_user.side_effect = send_side_effect
    else:
        mock.send_to_user.return_value = send_result
    return mock


def _breaker(mock, threshold=3, timeout=10.0, clock=None):
    return CircuitBreakerPushTransport(
        mock,
        failure_threshold=threshold,
        recovery_timeout=timeout,
        clock=clock or _Clock(),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestClosedState:
    def test_initial_state_is_closed(self):
        assert _breaker(_make_mock_transport()).state == "closed"

    def test_send_passes_through(self):
        mock = _make_mock_transport()
        cb = _breaker(mock)
        assert cb.send_to_user("u", _MESSAGE) is _OK
        mock.send_to_user.assert_called_once_with("u", _MESSAGE)

    def test_success_resets_failure_count(self):
        mock = _make_mock_transport(
            send_side_effect=[TransportError("x"), TransportError("x"), _OK, TransportError("x")],
        )
        cb = _breaker(mock, threshold=3)
        for _ in range(2):
            with pytest.raises(TransportError):
                cb.send_to_user("u", _MESSAGE)
        cb.send_to_user("u", _MESSAGE)
        with pytest.raises(TransportError):
            cb.send_to_user("u", _MESSAGE)
        assert cb.state == "closed"

    def test_no_endpoints_counts_as_success(self):
        report = SendReport(0, 0, terminal_reason=TransportReason.NO_ENDPOINTS)
        mock = _make_mock_transport(send_result=report)
        cb = _breaker(mock, threshold=1)
        cb.send_to_user("u", _MESSAGE)
        assert cb.state == "closed"

    def test_delegates_availability_cache_and_close(self):
        mock = _make_mock_transport()
        mock.is_available.return_value = True
        mock.purge_cache.return_value = 4
        mock.validate_tokens.return_value = ["bad"]
        cb = _breaker(mock)
        assert cb.is_available() is True
        assert cb.purge_cache() == 4
        assert cb.validate_tokens(["ok", "bad"]) == ["bad"]
        cb.close()
        mock.close.assert_called_once()
        assert cb.wrapped is mock


class TestOpening:
    def test_opens_after_threshold(self):
        mock = _make_mock_transport(send_side_effect=TransportError("down"))
        cb = _breaker(mock, threshold=2)
        for _ in range(2):
            with pytest.raises(TransportError):
                cb.send_to_user("u", _MESSAGE)
        assert cb.state == "open"

        with pytest.raises(TransportError) as exc_info:
            cb.send_to_user("u", _MESSAGE)
        assert exc_info.value.reason is TransportReason.CIRCUIT_OPEN
        assert exc_info.value.retryable is True
        assert mock.send_to_user.call_count == 2

    def test_total_endpoint_failure_counts(self):
        mock = _make_mock_transport(send_result=_ALL_FAILED)
        cb = _breaker(mock, threshold=2)
        cb.send_to_user("u", _MESSAGE)
        cb.send_to_user("u", _MESSAGE)
        assert cb.state == "open"

    def test_unexpected_exception_wrapped_retryable(self):
        mock = _make_mock_transport(send_side_effect=RuntimeError("socket"))
        cb = _breaker(mock, threshold=5)
        with pytest.raises(TransportError) as exc_info:
            cb.send_to_user("u", _MESSAGE)
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_non_retryable_errors_not_counted(self):
        mock = _make_mock_transport(
            send_side_effect=TransportError("bad", retryable=False),
        )
        cb = _breaker(mock, threshold=1)
        with pytest.raises(TransportError):
            cb.send_to_user("u", _MESSAGE)
        assert cb.state == "closed"


class TestRecovery:
    def _open(self, clock):
        mock = _make_mock_transport(send_side_effect=TransportError("down"))
        cb = _breaker(mock, threshold=1, timeout=10.0, clock=clock)
        with pytest.raises(TransportError):
            cb.send_to_user("u", _MESSAGE)
        assert cb.state == "open"
        return mock, cb

    def test_half_open_trial_success_closes(self):
        clock = _Clock()
        mock, cb = self._open(clock)
        mock.send_to_user.side_effect = None
        mock.send_to_user.return_value = _OK

        clock.now += 10.0
        assert cb.send_to_user("u", _MESSAGE) is _OK
        assert cb.state == "closed"

    def test_half_open_trial_failure_reopens(self):
        clock = _Clock()
        _, cb = self._open(clock)

        clock.now += 10.0
        with pytest.raises(TransportError) as exc_info:
            cb.send_to_user("u", _MESSAGE)
        assert exc_info.value.reason is TransportReason.EXCEPTION
        assert cb.state == "open"

    def test_still_open_before_timeout(self):
        clock = _Clock()
        mock, cb = self._open(clock)
        clock.now += 5.0
        with pytest.raises(TransportError) as exc_info:
            cb.send_to_user("u", _MESSAGE)
        assert exc_info.value.reason is TransportReason.CIRCUIT_OPEN
        assert mock.send_to_user.call_count == 1

    def test_half_open_non_retryable_error_does_not_reopen(self):
        clock = _Clock()
        mock, cb = self._open(clock)
        mock.send_to_user.side_effect = TransportError("bad payload", retryable=False)

        clock.now += 10.0
        with pytest.raises(TransportError) as exc_info:
            cb.send_to_user("u", _MESSAGE)
        assert exc_info.value.retryable is False
        assert cb.state == "half_open"

        mock.send_to_user.side_effect = None
        mock.send_to_user.return_value = _OK
        assert cb.send_to_user("u", _MESSAGE) is _OK
        assert cb.state == "closed"
