"""Fire-and-forget writer for delivery-attempt records.

Attempt rows are submitted to a small :class:`ThreadPoolExecutor`;
the caller never waits on the database.  Failures are logged and
counted, never propagated, so they cannot mask a delivery outcome.

Usage::

    attempt_log = AttemptLogger(store, settings.attempt_log, metrics=metrics)
    attempt_log.record(DeliveryAttempt(...))
    ...
    attempt_log.shutdown()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pushrelay.config.settings import AttemptLogSettings
    from pushrelay.delivery.store import NotificationStore
    from pushrelay.metrics.collector import MetricsCollector
    from pushrelay.models.delivery_attempt import DeliveryAttempt

log = logging.getLogger(__name__)


class AttemptLogger:
    """Non-blocking, eventually-durable delivery-attempt log.

    Parameters
    ----------
    store:
        Store gateway whose :meth:`append_delivery_attempt` does the write.
    settings:
        The ``attempt_log`` section.
    metrics:
        Optional collector for written/failed counters.

    """

    def __init__(
        self,
        store: NotificationStore,
        settings: AttemptLogSettings,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._metrics = metrics
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_workers,
            thread_name_prefix="pushrelay-attempt-log",
        )
        self._shutdown_event = threading.Event()
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._written = 0
        self._errors = 0

    @property
    def written_count(self) -> int:
        with self._lock:
            return self._written

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._errors

    def record(self, attempt: DeliveryAttempt) -> None:
        """Queue *attempt* for writing and return immediately.

        After :meth:`shutdown` the write happens inline so late
        attempts (e.g. from the final batch flush) are not lost.
        """
        if self._shutdown_event.is_set():
            self._write(attempt)
            return
        try:
            future = self._executor.submit(self._write, attempt)
        except RuntimeError:
            self._write(attempt)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _write(self, attempt: DeliveryAttempt) -> None:
        try:
            self._store.append_delivery_attempt(attempt)
        except Exception:
            with self._lock:
                self._errors += 1
            log.exception(
                "Failed to record delivery attempt",
                extra={"notification_id": str(attempt.notification_id)},
            )
            if self._metrics:
                self._metrics.increment("pushrelay_attempt_log_errors_total")
            return
        with self._lock:
            self._written += 1
        if self._metrics:
            self._metrics.increment("pushrelay_attempt_log_written_total")

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued writes. Returns True if all finished in time."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        """Drain queued writes (bounded by the configured timeout) and stop."""
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()
        if not self.flush(timeout=self._settings.shutdown_timeout_seconds):
            log.warning(
                "Attempt log shutdown timed out with writes still pending",
            )
        self._executor.shutdown(wait=False)
        log.info(
            "Attempt logger stopped (written=%d, errors=%d)",
            self.written_count,
            self.error_count,
        )
