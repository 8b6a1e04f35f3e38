"""Exponential-backoff retry of failed deliveries.

Failed notifications are held in memory as :class:`RetryEntry` objects
keyed by notification id.  A daemon thread calls :meth:`RetryScheduler.tick`
every ``retry.tick_seconds``; each due entry is removed from the pending
set and handed to the attempt callback exactly once, so two attempts for
the same notification are never in flight together.

Delay after the k-th failure (k starting at 0)::

    delay(k) = min(initial_delay_seconds * 2**k, max_delay_seconds)

With the defaults a notification gets one initial attempt plus at most
five retries, roughly 2s, 4s, 8s, 16s and 30s apart.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from pushrelay.config.settings import RetrySettings
    from pushrelay.metrics.collector import MetricsCollector
    from pushrelay.models.notification import NotificationRequest

log = logging.getLogger(__name__)

_MAX_ERROR_BACKOFF = 60  # seconds


@dataclass
class RetryEntry:
    notification_id: UUID
    recipient_id: str
    request: NotificationRequest
    attempts: int
    next_attempt_at: float


class RetryScheduler:
    """Owns the pending retry set and its timer thread.

    Parameters
    ----------
    settings:
        The ``retry`` section.
    attempt:
        Called with a due :class:`RetryEntry`; returns True when the
        attempt failed for a retriable reason.  Normally
        :meth:`DeliveryOrchestrator.retry_entry`.
    metrics:
        Optional collector.
    clock:
        Monotonic time source (injectable for tests).

    """

    def __init__(
        self,
        settings: RetrySettings,
        attempt: Callable[[RetryEntry], bool] | None = None,
        metrics: MetricsCollector | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._attempt = attempt
        self._metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[UUID, RetryEntry] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0

    def set_attempt_callback(self, attempt: Callable[[RetryEntry], bool]) -> None:
        self._attempt = attempt

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def pending(self) -> list[RetryEntry]:
        """Snapshot of pending entries ordered by next attempt time."""
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.next_attempt_at)

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before the retry that follows *attempts* failed retries."""
        return min(
            self._settings.initial_delay_seconds * (2**attempts),
            self._settings.max_delay_seconds,
        )

    def schedule(
        self,
        notification_id: UUID,
        recipient_id: str,
        request: NotificationRequest,
        attempts: int = 0,
    ) -> RetryEntry | None:
        """Queue a retry.  Returns None when retries are disabled, stopped or exhausted."""
        if not self._settings.enabled:
            return None
        if self._stop_event.is_set():
            log.warning(
                "Retry scheduler stopped; notification %s left FAILED",
                notification_id,
                extra={"notification_id": str(notification_id)},
            )
            return None
        if attempts >= self._settings.max_attempts:
            log.warning(
                "Retry ceiling reached for notification %s after %d retries; leaving FAILED",
                notification_id,
                attempts,
                extra={"notification_id": str(notification_id), "attempts": attempts},
            )
            if self._metrics:
                self._metrics.increment("pushrelay_retries_exhausted_total")
            return None

        delay = self.backoff_delay(attempts)
        entry = RetryEntry(
            notification_id=notification_id,
            recipient_id=recipient_id,
            request=request,
            attempts=attempts,
            next_attempt_at=self._clock() + delay,
        )
        with self._lock:
            self._entries[notification_id] = entry
            pending = len(self._entries)
        log.info(
            "Scheduled retry %d/%d for notification %s in %.1fs",
            attempts + 1,
            self._settings.max_attempts,
            notification_id,
            delay,
            extra={"notification_id": str(notification_id), "delay_seconds": delay},
        )
        if self._metrics:
            self._metrics.increment("pushrelay_retries_scheduled_total")
            self._metrics.set_gauge("pushrelay_retry_pending", pending)
        return entry

    def tick(self, now: float | None = None) -> int:
        """Run every due retry once. Returns the number of attempts made."""
        if self._attempt is None:
            return 0
        current = self._clock() if now is None else now
        with self._lock:
            due = [e for e in self._entries.values() if e.next_attempt_at <= current]
            for entry in due:
                del self._entries[entry.notification_id]
        due.sort(key=lambda e: e.next_attempt_at)

        for entry in due:
            if self._stop_event.is_set():
                # Put it back untouched; shutdown drops in-memory retries.
                with self._lock:
                    self._entries.setdefault(entry.notification_id, entry)
                continue
            try:
                retriable = self._attempt(entry)
            except Exception:
                log.exception(
                    "Retry attempt raised for notification %s",
                    entry.notification_id,
                    extra={"notification_id": str(entry.notification_id)},
                )
                retriable = True
            if self._metrics:
                self._metrics.increment("pushrelay_retry_attempts_total")
            if retriable:
                self.schedule(
                    entry.notification_id,
                    entry.recipient_id,
                    entry.request,
                    attempts=entry.attempts + 1,
                )

        if self._metrics:
            self._metrics.set_gauge("pushrelay_retry_pending", self.pending_count)
        return len(due)

    # -- thread --------------------------------------------------------------

    def start(self) -> None:
        """Start the background retry thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="retry-scheduler",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Retry scheduler started (initial=%.1fs, max=%.1fs, ceiling=%d)",
            self._settings.initial_delay_seconds,
            self._settings.max_delay_seconds,
            self._settings.max_attempts,
        )

    def stop(self) -> None:
        """Signal the thread to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._settings.tick_seconds + 5)
            log.info("Retry scheduler stopped (%d pending retries dropped)", self.pending_count)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
                self._consecutive_failures = 0
            except Exception:
                self._consecutive_failures += 1
                log.exception(
                    "Retry tick error (consecutive failures: %d)",
                    self._consecutive_failures,
                )
                backoff = min(
                    self._settings.tick_seconds * (2**self._consecutive_failures),
                    _MAX_ERROR_BACKOFF,
                )
                self._stop_event.wait(timeout=backoff)
                continue
            self._stop_event.wait(timeout=self._settings.tick_seconds)
