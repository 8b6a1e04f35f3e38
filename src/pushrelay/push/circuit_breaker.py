"""Circuit breaker for push transport calls.

Wraps a :class:`PushTransport` so that a provider outage is detected
quickly and further sends fail fast instead of each waiting on the
provider.  Implements the standard closed/open/half-open state machine.

States:
    **closed**: sends pass through normally.  Total failures are counted.
    **open**: sends fail immediately with a retryable ``TransportError``.
    **half-open**: one trial send is allowed through; success resets
    to closed, failure reopens.

A send counts as a failure when it raises a retryable
:class:`TransportError` (or any other exception) or when every endpoint
failed.  "No endpoints" and partial success count as success.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING

from pushrelay.core.types import TransportReason
from pushrelay.push.base import PushMessage, PushTransport, SendReport, TransportError

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)


class _State(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerPushTransport(PushTransport):
    """Transparent circuit breaker wrapper around a real push transport.

    Parameters
    ----------
    transport:
        The real transport to protect.
    failure_threshold:
        Number of consecutive failures before opening the circuit.
    recovery_timeout:
        Seconds to wait in the open state before allowing a trial call.
    half_open_max_calls:
        Maximum concurrent trial calls in half-open state.

    """

    def __init__(
        self,
        transport: PushTransport,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max_calls: int = 1,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(transport._settings)  # noqa: SLF001
        self._transport = transport
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._lock = threading.Lock()
        self._state = _State.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Current circuit state as a string."""
        with self._lock:
            return self._state.value

    @property
    def wrapped(self) -> PushTransport:
        return self._transport

    def is_available(self) -> bool:
        return self._transport.is_available()

    def send_to_user(self, recipient_id: str, message: PushMessage) -> SendReport:
        self._check_state()
        try:
            report = self._transport.send_to_user(recipient_id, message)
        except TransportError as exc:
            self._on_failure(exc)
            raise
        except Exception as exc:
            self._on_failure(exc)
            raise TransportError(str(exc), retryable=True) from exc

        if report.delivered or report.failed_count == 0:
            self._on_success()
        else:
            self._on_failure(RuntimeError(report.error or "all endpoints failed"))
        return report

    def purge_cache(self) -> int:
        return self._transport.purge_cache()

    def validate_tokens(self, tokens: list[str]) -> list[str]:
        return self._transport.validate_tokens(tokens)

    def close(self) -> None:
        self._transport.close()

    def _check_state(self) -> None:
        """Raise immediately if the circuit is open (fail-fast)."""
        with self._lock:
            if self._state == _State.CLOSED:
                return

            if self._state == _State.OPEN:
                elapsed = self._clock() - self._last_failure_time
                if elapsed >= self._recovery_timeout:
                    self._state = _State.HALF_OPEN
                    self._half_open_calls = 0
                    log.info(
                        "Push circuit breaker: open -> half_open (recovery timeout %.1fs elapsed)",
                        elapsed,
                    )
                else:
                    msg = (
                        "Push transport circuit breaker is open; "
                        f"failing fast (retry in {self._recovery_timeout - elapsed:.0f}s)"
                    )
                    raise TransportError(
                        msg,
                        retryable=True,
                        reason=TransportReason.CIRCUIT_OPEN,
                    )

            if self._state == _State.HALF_OPEN:
                if self._half_open_calls >= self._half_open_max_calls:
                    msg = (
                        "Push transport circuit breaker is half-open; "
                        "trial call in progress, rejecting additional calls"
                    )
                    raise TransportError(
                        msg,
                        retryable=True,
                        reason=TransportReason.CIRCUIT_OPEN,
                    )
                self._half_open_calls += 1

    def _on_success(self) -> None:
        with self._lock:
            if self._state == _State.HALF_OPEN:
                log.info("Push circuit breaker: half_open -> closed (trial call succeeded)")
            self._state = _State.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    def _on_failure(self, exc: Exception) -> None:
        with self._lock:
            # Permanent errors say nothing about provider health; a half-open
            # trial call that hit one frees its slot for the next call.
            if isinstance(exc, TransportError) and not exc.retryable:
                if self._state == _State.HALF_OPEN:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
                return

            if self._state == _State.HALF_OPEN:
                self._state = _State.OPEN
                self._last_failure_time = self._clock()
                self._half_open_calls = 0
                log.warning(
                    "Push circuit breaker: half_open -> open (trial call failed: %s)",
                    exc,
                )
                return

            self._failure_count += 1
            if self._failure_count >= self._failure_threshold:
                self._state = _State.OPEN
                self._last_failure_time = self._clock()
                log.warning(
                    "Push circuit breaker: closed -> open (threshold %d reached: %s)",
                    self._failure_threshold,
                    exc,
                )
