"""Per-recipient batching of rapid-fire notifications.

Batchable requests are grouped by ``(recipient, type)``.  The first
request opens a batch with a deadline ``window_seconds`` away; later
requests append in arrival order.  A batch reaching ``max_batch_size``
is closed and made due at once, so the next request opens a fresh one.

A single daemon flusher thread waits on a :class:`threading.Condition`
until the earliest deadline and flushes due batches one at a time.
Each flush synthesises one request (see :func:`summarize_batch`) and
hands it to the flush callback, normally
:meth:`DeliveryOrchestrator.deliver_batch`.  A flushed batch is final.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pushrelay.core.types import NotificationType
from pushrelay.models.notification import NotificationRequest

if TYPE_CHECKING:
    from collections.abc import Callable

    from pushrelay.config.settings import BatchingSettings
    from pushrelay.metrics.collector import MetricsCollector

log = logging.getLogger(__name__)


class BatchingStoppedError(RuntimeError):
    """Raised by :meth:`BatchingAggregator.enqueue` once the aggregator is stopped."""


@dataclass
class PendingBatch:
    recipient_id: str
    type: NotificationType
    deadline: float
    requests: list[NotificationRequest] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Summary synthesis
# ---------------------------------------------------------------------------


def _summarize_messages(requests: list[NotificationRequest]) -> NotificationRequest:
    first = requests[0]
    count = len(requests)
    return NotificationRequest(
        type=first.type,
        title=f"{count} New Messages",
        body=f"You have {count} new messages",
        payload={**first.payload, "batchCount": count, "batched": True},
        click_action=first.click_action,
        badge=count,
    )


def _summarize_applications(requests: list[NotificationRequest]) -> NotificationRequest:
    count = len(requests)
    return NotificationRequest(
        type=requests[0].type,
        title=f"{count} New Applications",
        body=f"You have {count} new applications",
        payload={
            "batchCount": count,
            "batched": True,
            "applicationIds": [
                r.payload["applicationId"] for r in requests if r.payload.get("applicationId")
            ],
        },
        click_action="/applications",
        badge=count,
    )


def _summarize_generic(requests: list[NotificationRequest]) -> NotificationRequest:
    first = requests[0]
    count = len(requests)
    return NotificationRequest(
        type=first.type,
        title=f"{count} New Notifications",
        body=f"You have {count} new notifications",
        payload={"batchCount": count, "batched": True},
        click_action=first.click_action,
        badge=count,
    )


_SUMMARIZERS: dict[NotificationType, Callable[[list[NotificationRequest]], NotificationRequest]] = {
    NotificationType.CHAT_MESSAGE: _summarize_messages,
    NotificationType.APPLICATION_CREATED: _summarize_applications,
}


def summarize_batch(requests: list[NotificationRequest]) -> NotificationRequest:
    """Collapse a batch into one request.  A single request passes through."""
    if not requests:
        msg = "Cannot summarize an empty batch"
        raise ValueError(msg)
    if len(requests) == 1:
        return requests[0]
    summarizer = _SUMMARIZERS.get(requests[0].type, _summarize_generic)
    return summarizer(requests)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class BatchingAggregator:
    """Owns open batches and the flusher thread.

    Parameters
    ----------
    settings:
        The ``batching`` section.
    on_flush:
        Called with ``(recipient_id, synthesized_request)`` for each
        flushed batch.  May be set later via :meth:`set_flush_callback`.
    metrics:
        Optional collector.
    clock:
        Monotonic time source (injectable for tests).

    """

    def __init__(
        self,
        settings: BatchingSettings,
        on_flush: Callable[[str, NotificationRequest], None] | None = None,
        metrics: MetricsCollector | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._on_flush = on_flush
        self._metrics = metrics
        self._clock = clock
        self._batchable = frozenset(NotificationType(t) for t in settings.batchable_types)

        self._cond = threading.Condition()
        self._open: dict[tuple[str, NotificationType], PendingBatch] = {}
        self._ready: list[PendingBatch] = []
        # Serialises flush execution between the flusher thread and shutdown.
        self._flush_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    def set_flush_callback(self, on_flush: Callable[[str, NotificationRequest], None]) -> None:
        self._on_flush = on_flush

    def is_batchable(self, notification_type: NotificationType) -> bool:
        return self._settings.enabled and notification_type in self._batchable

    @property
    def open_batch_count(self) -> int:
        with self._cond:
            return len(self._open) + len(self._ready)

    def enqueue(self, recipient_id: str, request: NotificationRequest) -> None:
        """Add *request* to the open batch for ``(recipient_id, request.type)``.

        Raises
        ------
        ValueError
            If the type is not batchable.
        BatchingStoppedError
            If :meth:`stop` has been called.

        """
        if not self.is_batchable(request.type):
            msg = f"Notification type {request.type.value} is not batchable"
            raise ValueError(msg)

        key = (recipient_id, request.type)
        with self._cond:
            if self._closed:
                msg = "Batching aggregator is stopped"
                raise BatchingStoppedError(msg)
            now = self._clock()
            batch = self._open.get(key)
            if batch is None:
                batch = PendingBatch(
                    recipient_id=recipient_id,
                    type=request.type,
                    deadline=now + self._settings.window_seconds,
                )
                self._open[key] = batch
                log.debug(
                    "Opened batch for %s/%s (window %.1fs)",
                    recipient_id,
                    request.type.value,
                    self._settings.window_seconds,
                )
            batch.requests.append(request)

            if len(batch.requests) >= self._settings.max_batch_size:
                del self._open[key]
                batch.deadline = now
                self._ready.append(batch)
                log.debug(
                    "Batch for %s/%s reached max size %d, flushing early",
                    recipient_id,
                    request.type.value,
                    self._settings.max_batch_size,
                )
            self._cond.notify_all()

        if self._metrics:
            self._metrics.increment(
                "pushrelay_batched_requests_total",
                labels={"type": request.type.value},
            )

    # -- flushing ------------------------------------------------------------

    def _take_due(self, now: float) -> list[PendingBatch]:
        """Caller holds the condition."""
        due = list(self._ready)
        self._ready.clear()
        for key, batch in list(self._open.items()):
            if batch.deadline <= now:
                del self._open[key]
                due.append(batch)
        due.sort(key=lambda b: b.deadline)
        return due

    def _take_all(self) -> list[PendingBatch]:
        due = list(self._ready) + sorted(self._open.values(), key=lambda b: b.deadline)
        self._ready.clear()
        self._open.clear()
        return due

    def flush_due(self, now: float | None = None) -> int:
        """Flush every batch whose deadline has passed. Returns the count."""
        with self._cond:
            due = self._take_due(self._clock() if now is None else now)
        return self._flush(due)

    def flush_all(self) -> int:
        """Flush every open batch regardless of deadline."""
        with self._cond:
            due = self._take_all()
        if due:
            log.info("Flushing %d open batch(es)", len(due))
        return self._flush(due)

    def _flush(self, batches: list[PendingBatch]) -> int:
        flushed = 0
        with self._flush_lock:
            for batch in batches:
                request = summarize_batch(batch.requests)
                log.info(
                    "Flushing batch of %d %s for %s",
                    len(batch.requests),
                    batch.type.value,
                    batch.recipient_id,
                    extra={
                        "recipient_id": batch.recipient_id,
                        "batch_size": len(batch.requests),
                    },
                )
                if self._on_flush is None:
                    log.error("No flush callback set; dropping batch for %s", batch.recipient_id)
                    continue
                try:
                    self._on_flush(batch.recipient_id, request)
                except Exception:
                    log.exception(
                        "Batch flush failed for %s; batch dropped",
                        batch.recipient_id,
                        extra={"recipient_id": batch.recipient_id},
                    )
                    if self._metrics:
                        self._metrics.increment("pushrelay_batch_flush_errors_total")
                    continue
                flushed += 1
                if self._metrics:
                    self._metrics.increment(
                        "pushrelay_batches_flushed_total",
                        labels={"type": batch.type.value},
                    )
        return flushed

    # -- flusher thread ------------------------------------------------------

    def start(self) -> None:
        """Start the background flusher thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        with self._cond:
            self._closed = False
        self._thread = threading.Thread(
            target=self._run,
            name="batch-flusher",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Batch flusher started (window=%.1fs, max_size=%d, types=%s)",
            self._settings.window_seconds,
            self._settings.max_batch_size,
            sorted(t.value for t in self._batchable),
        )

    def stop(self, *, flush: bool = True) -> None:
        """Stop accepting requests and the flusher, then flush open batches best-effort."""
        self._stop_event.set()
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=self._settings.window_seconds + 5)
            log.info("Batch flusher stopped")
        if flush:
            self.flush_all()

    def _next_wait(self) -> float | None:
        """Seconds until the earliest deadline; caller holds the condition."""
        if self._ready:
            return 0.0
        if not self._open:
            return None
        earliest = min(b.deadline for b in self._open.values())
        return max(0.0, earliest - self._clock())

    def _run(self) -> None:
        while not self._stop_event.is_set():
            with self._cond:
                timeout = self._next_wait()
                if timeout is None or timeout > 0:
                    self._cond.wait(timeout=timeout)
                if self._stop_event.is_set():
                    break
                due = self._take_due(self._clock())
            if due:
                self._flush(due)
