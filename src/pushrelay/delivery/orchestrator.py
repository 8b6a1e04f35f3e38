"""Delivery orchestrator: the façade business events submit to.

Order of operations for :meth:`DeliveryOrchestrator.submit`:

1. Batchable types go to the :class:`BatchingAggregator` and return
   immediately; the flushed summary is delivered later through
   :meth:`deliver_batch`.  After shutdown they are delivered directly.
2. Other types are checked against the duplicate cache, then against
   the store over a trailing window.
3. The notification is persisted PENDING, one transport attempt is made,
   the attempt is logged (fire-and-forget) and the status updated.
4. A retriable failure is handed to the :class:`RetryScheduler`.

Store failures on create propagate as :class:`StoreError`.  Transport
failures never propagate; they become FAILED plus a retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pushrelay.core.state import assert_transition, log_transition
from pushrelay.core.types import DeliveryMethod, DeliveryStatus, TransportReason
from pushrelay.delivery.batching import BatchingStoppedError
from pushrelay.delivery.dedup import build_duplicate_key
from pushrelay.delivery.store import StoreError
from pushrelay.logging.setup import delivery_context
from pushrelay.models.delivery_attempt import DeliveryAttempt, DeliveryStats
from pushrelay.models.notification import DeliveryResult
from pushrelay.push.base import PushMessage, SendReport, TransportError, stringify_data

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from pushrelay.config.settings import DeduplicationSettings
    from pushrelay.delivery.attempt_log import AttemptLogger
    from pushrelay.delivery.batching import BatchingAggregator
    from pushrelay.delivery.dedup import DuplicateSuppressionCache
    from pushrelay.delivery.maintenance import MaintenanceWorker
    from pushrelay.delivery.retry import RetryEntry, RetryScheduler
    from pushrelay.delivery.store import NotificationStore
    from pushrelay.metrics.collector import MetricsCollector
    from pushrelay.models.notification import NotificationRequest
    from pushrelay.push.base import PushTransport

log = logging.getLogger(__name__)

_SUCCESS_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED_NO_ENDPOINT})


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one attempt-and-record pass."""

    status: DeliveryStatus
    method: DeliveryMethod
    retriable: bool
    report: SendReport | None = None


class DeliveryOrchestrator:
    """Applies suppression, batching, storage, transport and retry in order.

    Parameters
    ----------
    store:
        Notification store gateway.
    transport:
        Push transport (possibly wrapped in a circuit breaker).
    dedup_cache:
        Short-TTL duplicate cache.
    batching:
        Batching aggregator; its flush callback is bound to
        :meth:`deliver_batch`.
    retry:
        Retry scheduler; its attempt callback is bound to
        :meth:`retry_entry`.
    attempt_log:
        Fire-and-forget attempt writer.
    dedup_settings:
        The ``deduplication`` section (enable flag, store window).
    maintenance:
        Optional maintenance worker started and stopped with the engine.
    metrics:
        Optional collector.
    wall_clock:
        Returns the current UTC time; used for the durable duplicate window.

    """

    def __init__(
        self,
        store: NotificationStore,
        transport: PushTransport,
        *,
        dedup_cache: DuplicateSuppressionCache,
        batching: BatchingAggregator,
        retry: RetryScheduler,
        attempt_log: AttemptLogger,
        dedup_settings: DeduplicationSettings,
        maintenance: MaintenanceWorker | None = None,
        metrics: MetricsCollector | None = None,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._transport = transport
        self._dedup = dedup_cache
        self._batching = batching
        self._retry = retry
        self._attempt_log = attempt_log
        self._dedup_settings = dedup_settings
        self._maintenance = maintenance
        self._metrics = metrics
        self._wall_clock = wall_clock
        self._started = False
        self._stopped = False

        self._batching.set_flush_callback(self.deliver_batch)
        self._retry.set_attempt_callback(self.retry_entry)

    # -- public façade -------------------------------------------------------

    def submit(self, recipient_id: str, request: NotificationRequest) -> DeliveryResult:
        """Accept a notification for *recipient_id*.

        Raises
        ------
        ValueError
            If *recipient_id* is empty.
        StoreError
            If the notification cannot be persisted.  A failed
            duplicate lookup is logged and the request treated as new.

        """
        if not recipient_id:
            msg = "recipient_id must not be empty"
            raise ValueError(msg)

        with delivery_context(recipient_id=recipient_id):
            if self._batching.is_batchable(request.type):
                try:
                    self._batching.enqueue(recipient_id, request)
                except BatchingStoppedError:
                    log.warning(
                        "Batching stopped; delivering %s for %s directly",
                        request.type.value,
                        recipient_id,
                    )
                else:
                    self._count("pushrelay_submissions_total", "batched")
                    return DeliveryResult(stored=True, delivered=True, batched=True)

            key = None
            if self._dedup_settings.enabled:
                key = build_duplicate_key(recipient_id, request)
                if not self._dedup.claim(key.value):
                    log.info(
                        "Suppressed duplicate %s for %s (cache)",
                        request.type.value,
                        recipient_id,
                        extra={"duplicate_key": key.value},
                    )
                    self._count("pushrelay_submissions_total", "duplicate")
                    return DeliveryResult(stored=False, delivered=False, duplicate=True)

                since = self._wall_clock() - timedelta(
                    seconds=self._dedup_settings.store_window_seconds,
                )
                try:
                    found = self._store.find_recent_by_key(key, since)
                except StoreError:
                    log.exception(
                        "Duplicate lookup failed for %s; treating as new",
                        recipient_id,
                        extra={"duplicate_key": key.value},
                    )
                    found = False
                if found:
                    log.info(
                        "Suppressed duplicate %s for %s (store)",
                        request.type.value,
                        recipient_id,
                        extra={"duplicate_key": key.value},
                    )
                    self._count("pushrelay_submissions_total", "duplicate")
                    return DeliveryResult(stored=False, delivered=False, duplicate=True)

            try:
                result = self._persist_and_attempt(recipient_id, request)
            except StoreError:
                # The event producer may retry; do not suppress that retry.
                if key is not None:
                    self._dedup.forget(key.value)
                raise
            self._count("pushrelay_submissions_total", "direct")
            return result

    def deliver_batch(self, recipient_id: str, request: NotificationRequest) -> DeliveryResult:
        """Deliver a flushed batch summary.  Duplicate suppression does not apply."""
        with delivery_context(recipient_id=recipient_id):
            return self._persist_and_attempt(recipient_id, request, batched=True)

    def retry_entry(self, entry: RetryEntry) -> bool:
        """Retry callback.  Returns True when the attempt failed retriably."""
        outcome = self.attempt_delivery(
            entry.notification_id,
            entry.recipient_id,
            entry.request,
            DeliveryStatus.FAILED,
        )
        return outcome.retriable

    def attempt_delivery(
        self,
        notification_id: UUID,
        recipient_id: str,
        request: NotificationRequest,
        current_status: DeliveryStatus,
    ) -> AttemptOutcome:
        """Make one transport attempt, log it and persist the resulting status.

        Shared by first delivery, batch flush and retries.  Never raises
        for transport or status-update failures.
        """
        with delivery_context(notification_id, recipient_id):
            outcome, details = self._dispatch(notification_id, recipient_id, request)

            self._attempt_log.record(
                DeliveryAttempt(
                    notification_id=notification_id,
                    method=outcome.method,
                    success=outcome.status in _SUCCESS_STATUSES,
                    details=details,
                    attempted_at=self._wall_clock(),
                ),
            )
            self._record_status(notification_id, current_status, outcome)
            self._count("pushrelay_delivery_attempts_total", outcome.status.value.lower())
            return outcome

    def get_delivery_stats(self, notification_id: UUID) -> DeliveryStats:
        """Attempt counts and history for one notification."""
        attempts = self._store.find_attempts(notification_id)
        successful = sum(1 for a in attempts if a.success)
        return DeliveryStats(
            total_attempts=len(attempts),
            push_attempts=sum(1 for a in attempts if a.method == DeliveryMethod.PUSH),
            successful_attempts=successful,
            failed_attempts=len(attempts) - successful,
            attempts=tuple(attempts),
        )

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Start the retry scheduler, batch flusher and maintenance worker."""
        if self._started:
            return
        self._started = True
        self._retry.start()
        self._batching.start()
        if self._maintenance is not None:
            self._maintenance.start()
        log.info("Delivery orchestrator started")

    def shutdown(self, *, flush_batches: bool = True) -> None:
        """Flush open batches best-effort, stop background threads, drain the attempt log."""
        if self._stopped:
            return
        self._stopped = True
        log.info("Delivery orchestrator shutting down")
        if self._maintenance is not None:
            self._maintenance.stop()
        self._batching.stop(flush=flush_batches)
        self._retry.stop()
        self._attempt_log.shutdown()
        self._transport.close()
        log.info("Delivery orchestrator stopped")

    # -- internals -----------------------------------------------------------

    def _persist_and_attempt(
        self,
        recipient_id: str,
        request: NotificationRequest,
        *,
        batched: bool = False,
    ) -> DeliveryResult:
        notification = self._store.create_notification(recipient_id, request)
        log.info(
            "Stored notification %s (%s) for %s",
            notification.id,
            request.type.value,
            recipient_id,
            extra={"notification_id": str(notification.id)},
        )

        outcome = self.attempt_delivery(
            notification.id,
            recipient_id,
            request,
            DeliveryStatus.PENDING,
        )
        if outcome.retriable:
            self._retry.schedule(notification.id, recipient_id, request)

        return DeliveryResult(
            stored=True,
            delivered=outcome.status == DeliveryStatus.DELIVERED,
            batched=batched,
            notification_id=notification.id,
            status=outcome.status,
            method=outcome.method,
        )

    @staticmethod
    def _render(notification_id: UUID, request: NotificationRequest) -> PushMessage:
        data = stringify_data(request.payload)
        data["type"] = request.type.value
        data["notificationId"] = str(notification_id)
        return PushMessage(
            title=request.title,
            body=request.body,
            data=data,
            click_action=request.click_action,
            badge=request.badge,
        )

    def _dispatch(
        self,
        notification_id: UUID,
        recipient_id: str,
        request: NotificationRequest,
    ) -> tuple[AttemptOutcome, dict]:
        """Call the transport and classify the result."""
        if not self._transport.is_available():
            log.warning(
                "Push transport unavailable; notification %s left FAILED without retry",
                notification_id,
            )
            return (
                AttemptOutcome(DeliveryStatus.FAILED, DeliveryMethod.NONE, retriable=False),
                {"reason": TransportReason.SERVICE_NOT_INITIALIZED.value},
            )

        try:
            message = self._render(notification_id, request)
            report = self._transport.send_to_user(recipient_id, message)
        except TransportError as exc:
            log.warning(
                "Push transport error for notification %s: %s",
                notification_id,
                exc.detail,
            )
            method = (
                DeliveryMethod.NONE
                if exc.reason == TransportReason.SERVICE_NOT_INITIALIZED
                else DeliveryMethod.PUSH
            )
            return (
                AttemptOutcome(DeliveryStatus.FAILED, method, retriable=exc.retryable),
                {"error": exc.detail, "reason": exc.reason.value},
            )
        except Exception as exc:
            log.exception("Push transport raised for notification %s", notification_id)
            return (
                AttemptOutcome(DeliveryStatus.FAILED, DeliveryMethod.PUSH, retriable=True),
                {"error": str(exc), "reason": TransportReason.EXCEPTION.value},
            )

        if report.delivered:
            status, retriable = DeliveryStatus.DELIVERED, False
        elif report.no_endpoints:
            status, retriable = DeliveryStatus.SKIPPED_NO_ENDPOINT, False
        else:
            status, retriable = DeliveryStatus.FAILED, True
        return (
            AttemptOutcome(status, DeliveryMethod.PUSH, retriable=retriable, report=report),
            report.to_details(),
        )

    def _record_status(
        self,
        notification_id: UUID,
        current: DeliveryStatus,
        outcome: AttemptOutcome,
    ) -> None:
        try:
            assert_transition(current, outcome.status)
        except ValueError:
            log.exception("Refusing status update for notification %s", notification_id)
            return

        try:
            updated = self._store.update_status(notification_id, outcome.status, outcome.method)
        except StoreError:
            log.exception(
                "Failed to persist status %s for notification %s",
                outcome.status.value,
                notification_id,
            )
            return
        if updated:
            reason = None
            if outcome.report is not None and outcome.report.no_endpoints:
                reason = TransportReason.NO_ENDPOINTS.value
            log_transition(notification_id, current, outcome.status, reason=reason)

    def _count(self, name: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.increment(name, labels={"outcome": outcome})
