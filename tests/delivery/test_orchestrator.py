"""Unit tests for pushrelay.delivery.orchestrator.DeliveryOrchestrator.

Store, transport and attempt log are mocks; the duplicate cache,
batching aggregator and retry scheduler are real objects driven by
fake clocks so no background thread is started.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from pushrelay.core.types import (
    DeliveryMethod,
    DeliveryStatus,
    NotificationType,
    TransportReason,
)
from pushrelay.delivery import (
    BatchingAggregator,
    DeliveryOrchestrator,
    DuplicateSuppressionCache,
    RetryScheduler,
    StoreError,
)
from pushrelay.metrics.collector import MetricsCollector
from pushrelay.models import DeliveryAttempt, Notification, NotificationRequest
from pushrelay.push import PushTransport, SendReport, TransportError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
_DELIVERED = SendReport(sent_count=1, failed_count=0)
_NO_ENDPOINTS = SendReport(0, 0, terminal_reason=TransportReason.NO_ENDPOINTS)
_ALL_FAILED = SendReport(0, 2, error="unavailable")


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _accepted(app_id="a-1") -> NotificationRequest:
    return NotificationRequest(
        NotificationType.APPLICATION_ACCEPTED,
        "Application accepted",
        "Your application was accepted",
        {"applicationId": app_id},
    )


def _chat(text="hi") -> NotificationRequest:
    return NotificationRequest(
        NotificationType.CHAT_MESSAGE,
        "New Message",
        text,
        {"conversationId": "c-1", "senderId": "s-1"},
    )


def _stored(recipient_id, request):
    return Notification(
        id=uuid4(),
        recipient_id=recipient_id,
        type=request.type,
        title=request.title,
        body=request.body,
        payload=dict(request.payload),
    )


class _Harness(SimpleNamespace):
    pass


@pytest.fixture()
def harness():
    clock = _Clock()
    store = MagicMock()
    store.create_notification.side_effect = _stored
    store.find_recent_by_key.return_value = False
    store.update_status.return_value = True

    transport = MagicMock(spec=PushTransport)
    transport.is_available.return_value = True
    transport.send_to_user.return_value = _DELIVERED

    batching = BatchingAggregator(
        SimpleNamespace(
            enabled=True,
            window_seconds=5.0,
            max_batch_size=10,
            batchable_types=("CHAT_MESSAGE", "APPLICATION_CREATED"),
        ),
        clock=clock,
    )
    retry = RetryScheduler(
        SimpleNamespace(
            enabled=True,
            initial_delay_seconds=2.0,
            max_delay_seconds=30.0,
            max_attempts=5,
            tick_seconds=1.0,
        ),
        clock=clock,
    )
    metrics = MetricsCollector()
    attempt_log = MagicMock()
    orchestrator = DeliveryOrchestrator(
        store,
        transport,
        dedup_cache=DuplicateSuppressionCache(30, clock=clock),
        batching=batching,
        retry=retry,
        attempt_log=attempt_log,
        dedup_settings=SimpleNamespace(
            enabled=True,
            cache_ttl_seconds=30.0,
            store_window_seconds=30.0,
        ),
        metrics=metrics,
        wall_clock=lambda: _NOW,
    )
    return _Harness(
        clock=clock,
        store=store,
        transport=transport,
        batching=batching,
        retry=retry,
        metrics=metrics,
        attempt_log=attempt_log,
        orchestrator=orchestrator,
    )


def _recorded_attempts(h) -> list[DeliveryAttempt]:
    return [c.args[0] for c in h.attempt_log.record.call_args_list]


# ---------------------------------------------------------------------------
# Direct delivery
# ---------------------------------------------------------------------------


class TestDirectDelivery:
    def test_delivered(self, harness):
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.stored is True
        assert result.delivered is True
        assert result.duplicate is False
        assert result.status is DeliveryStatus.DELIVERED
        assert result.method is DeliveryMethod.PUSH
        harness.store.update_status.assert_called_once_with(
            result.notification_id,
            DeliveryStatus.DELIVERED,
            DeliveryMethod.PUSH,
        )
        (attempt,) = _recorded_attempts(harness)
        assert attempt.success is True
        assert attempt.method is DeliveryMethod.PUSH
        assert attempt.details == {"sent": 1, "failed": 0}
        assert attempt.attempted_at == _NOW
        assert harness.retry.pending_count == 0

    def test_rendered_message(self, harness):
        result = harness.orchestrator.submit("u1", _accepted())
        recipient, message = harness.transport.send_to_user.call_args[0]
        assert recipient == "u1"
        assert message.title == "Application accepted"
        assert message.data["type"] == "APPLICATION_ACCEPTED"
        assert message.data["applicationId"] == "a-1"
        assert message.data["notificationId"] == str(result.notification_id)

    def test_empty_recipient_rejected(self, harness):
        with pytest.raises(ValueError, match="recipient_id"):
            harness.orchestrator.submit("", _accepted())
        harness.store.create_notification.assert_not_called()

    def test_no_endpoints_skipped(self, harness):
        harness.transport.send_to_user.return_value = _NO_ENDPOINTS
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.stored is True
        assert result.delivered is False
        assert result.status is DeliveryStatus.SKIPPED_NO_ENDPOINT
        (attempt,) = _recorded_attempts(harness)
        assert attempt.success is True
        assert attempt.details["reason"] == "no_endpoints"
        assert harness.retry.pending_count == 0

    def test_empty_report_treated_as_no_endpoints(self, harness):
        harness.transport.send_to_user.return_value = SendReport(sent_count=0, failed_count=0)
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.status is DeliveryStatus.SKIPPED_NO_ENDPOINT
        assert harness.retry.pending_count == 0
        (attempt,) = _recorded_attempts(harness)
        assert attempt.success is True
        assert attempt.details["reason"] == "no_endpoints"

    def test_unavailable_transport_fails_without_retry(self, harness):
        harness.transport.is_available.return_value = False
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.status is DeliveryStatus.FAILED
        assert result.method is DeliveryMethod.NONE
        harness.transport.send_to_user.assert_not_called()
        (attempt,) = _recorded_attempts(harness)
        assert attempt.success is False
        assert attempt.details == {"reason": "service_not_initialized"}
        assert harness.retry.pending_count == 0

    def test_all_endpoints_failed_schedules_retry(self, harness):
        harness.transport.send_to_user.return_value = _ALL_FAILED
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.stored is True
        assert result.delivered is False
        assert result.status is DeliveryStatus.FAILED
        (entry,) = harness.retry.pending()
        assert entry.notification_id == result.notification_id
        assert entry.next_attempt_at == 2.0

    def test_transport_error_schedules_retry(self, harness):
        harness.transport.send_to_user.side_effect = TransportError("fcm down")
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.status is DeliveryStatus.FAILED
        assert result.method is DeliveryMethod.PUSH
        assert harness.retry.pending_count == 1
        (attempt,) = _recorded_attempts(harness)
        assert attempt.details == {"error": "fcm down", "reason": "exception"}

    def test_non_retryable_transport_error(self, harness):
        harness.transport.send_to_user.side_effect = TransportError(
            "not configured",
            retryable=False,
            reason=TransportReason.SERVICE_NOT_INITIALIZED,
        )
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.method is DeliveryMethod.NONE
        assert harness.retry.pending_count == 0

    def test_unexpected_transport_exception_contained(self, harness):
        harness.transport.send_to_user.side_effect = RuntimeError("socket closed")
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.status is DeliveryStatus.FAILED
        assert harness.retry.pending_count == 1

    def test_metrics(self, harness):
        harness.orchestrator.submit("u1", _accepted())
        m = harness.metrics
        assert m.get("pushrelay_submissions_total", {"outcome": "direct"}) == 1
        assert m.get("pushrelay_delivery_attempts_total", {"outcome": "delivered"}) == 1


# ---------------------------------------------------------------------------
# Duplicate suppression
# ---------------------------------------------------------------------------


class TestDuplicateSuppression:
    def test_second_submit_within_ttl_suppressed(self, harness):
        first = harness.orchestrator.submit("u1", _accepted())
        second = harness.orchestrator.submit("u1", _accepted())

        assert first.stored is True
        assert second.duplicate is True
        assert second.stored is False
        assert second.delivered is False
        assert harness.store.create_notification.call_count == 1
        assert harness.transport.send_to_user.call_count == 1

    def test_different_application_not_suppressed(self, harness):
        harness.orchestrator.submit("u1", _accepted("a-1"))
        result = harness.orchestrator.submit("u1", _accepted("a-2"))
        assert result.duplicate is False
        assert harness.store.create_notification.call_count == 2

    def test_store_window_hit_suppressed(self, harness):
        harness.store.find_recent_by_key.return_value = True
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.duplicate is True
        harness.store.create_notification.assert_not_called()
        key, since = harness.store.find_recent_by_key.call_args[0]
        assert key.value == "u1_APPLICATION_ACCEPTED_a-1"
        assert since == _NOW - timedelta(seconds=30)

    def test_accepted_again_after_ttl(self, harness):
        harness.orchestrator.submit("u1", _accepted())
        harness.clock.now += 31
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.duplicate is False
        assert harness.store.create_notification.call_count == 2

    def test_dedup_disabled(self, harness):
        harness.orchestrator._dedup_settings = SimpleNamespace(
            enabled=False,
            cache_ttl_seconds=30.0,
            store_window_seconds=30.0,
        )
        harness.orchestrator.submit("u1", _accepted())
        harness.orchestrator.submit("u1", _accepted())
        assert harness.store.create_notification.call_count == 2
        harness.store.find_recent_by_key.assert_not_called()

    def test_duplicate_metric(self, harness):
        harness.orchestrator.submit("u1", _accepted())
        harness.orchestrator.submit("u1", _accepted())
        assert harness.metrics.get("pushrelay_submissions_total", {"outcome": "duplicate"}) == 1


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


class TestStoreFailures:
    def test_create_failure_propagates_and_releases_key(self, harness):
        harness.store.create_notification.side_effect = StoreError("db down")
        with pytest.raises(StoreError):
            harness.orchestrator.submit("u1", _accepted())
        harness.transport.send_to_user.assert_not_called()

        harness.store.create_notification.side_effect = _stored
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.stored is True

    def test_lookup_failure_treated_as_not_duplicate(self, harness):
        harness.store.find_recent_by_key.side_effect = StoreError("db down")
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.stored is True
        assert result.duplicate is False
        assert result.status is DeliveryStatus.DELIVERED
        harness.transport.send_to_user.assert_called_once()

        # The cache claim still holds, so an immediate repeat is suppressed.
        assert harness.orchestrator.submit("u1", _accepted()).duplicate is True

    def test_status_update_failure_swallowed(self, harness):
        harness.store.update_status.side_effect = StoreError("db down")
        result = harness.orchestrator.submit("u1", _accepted())
        assert result.stored is True
        assert result.status is DeliveryStatus.DELIVERED
        harness.attempt_log.record.assert_called_once()


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


class TestStatusTransitions:
    def test_delivered_is_never_overwritten(self, harness):
        harness.transport.send_to_user.return_value = _ALL_FAILED
        outcome = harness.orchestrator.attempt_delivery(
            uuid4(),
            "u1",
            _accepted(),
            DeliveryStatus.DELIVERED,
        )
        assert outcome.status is DeliveryStatus.FAILED
        harness.store.update_status.assert_not_called()

    def test_failed_to_delivered_on_retry(self, harness):
        nid = uuid4()
        outcome = harness.orchestrator.attempt_delivery(
            nid,
            "u1",
            _accepted(),
            DeliveryStatus.FAILED,
        )
        assert outcome.status is DeliveryStatus.DELIVERED
        harness.store.update_status.assert_called_once_with(
            nid,
            DeliveryStatus.DELIVERED,
            DeliveryMethod.PUSH,
        )


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    def test_failure_then_success_via_scheduler(self, harness):
        harness.transport.send_to_user.side_effect = [_ALL_FAILED, _ALL_FAILED, _DELIVERED]
        result = harness.orchestrator.submit("u1", _accepted())

        harness.clock.now = 2.0
        harness.retry.tick()
        harness.clock.now = 6.0
        harness.retry.tick()

        assert harness.transport.send_to_user.call_count == 3
        assert harness.retry.pending_count == 0
        statuses = [c.args[1] for c in harness.store.update_status.call_args_list]
        assert statuses == [DeliveryStatus.FAILED, DeliveryStatus.FAILED, DeliveryStatus.DELIVERED]
        assert [a.success for a in _recorded_attempts(harness)] == [False, False, True]
        assert all(
            c.args[0] == result.notification_id for c in harness.store.update_status.call_args_list
        )

    def test_ceiling_leaves_failed_after_six_attempts(self, harness):
        harness.transport.send_to_user.return_value = _ALL_FAILED
        result = harness.orchestrator.submit("u1", _accepted())

        for _ in range(10):
            harness.clock.now += 60
            harness.retry.tick()

        attempts = _recorded_attempts(harness)
        assert len(attempts) == 6
        assert not any(a.success for a in attempts)
        assert harness.transport.send_to_user.call_count == 6
        assert harness.retry.pending_count == 0
        last_call = harness.store.update_status.call_args_list[-1]
        assert last_call.args[:2] == (result.notification_id, DeliveryStatus.FAILED)

    def test_retry_entry_reports_retriable(self, harness):
        harness.transport.send_to_user.return_value = _ALL_FAILED
        harness.orchestrator.submit("u1", _accepted())
        (entry,) = harness.retry.pending()
        assert harness.orchestrator.retry_entry(entry) is True

        harness.transport.send_to_user.return_value = _DELIVERED
        assert harness.orchestrator.retry_entry(entry) is False


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


class TestBatching:
    def test_batchable_type_enqueued(self, harness):
        result = harness.orchestrator.submit("u1", _chat())
        assert result.batched is True
        assert result.stored is True
        assert result.delivered is True
        assert result.notification_id is None
        harness.store.create_notification.assert_not_called()
        assert harness.batching.open_batch_count == 1

    def test_three_chats_delivered_as_one_summary(self, harness):
        for text in ("a", "b", "c"):
            harness.orchestrator.submit("u1", _chat(text))

        harness.clock.now = 5.0
        assert harness.batching.flush_due() == 1

        harness.store.create_notification.assert_called_once()
        recipient, summary = harness.store.create_notification.call_args[0]
        assert recipient == "u1"
        assert summary.body == "You have 3 new messages"
        harness.transport.send_to_user.assert_called_once()
        harness.store.find_recent_by_key.assert_not_called()

    def test_batched_metric(self, harness):
        harness.orchestrator.submit("u1", _chat())
        assert harness.metrics.get("pushrelay_submissions_total", {"outcome": "batched"}) == 1

    def test_deliver_batch_marks_result(self, harness):
        result = harness.orchestrator.deliver_batch("u1", _chat())
        assert result.batched is True
        assert result.status is DeliveryStatus.DELIVERED


# ---------------------------------------------------------------------------
# Statistics and lifecycle
# ---------------------------------------------------------------------------


class TestStatsAndLifecycle:
    def test_delivery_stats(self, harness):
        nid = uuid4()
        harness.store.find_attempts.return_value = [
            DeliveryAttempt(nid, DeliveryMethod.PUSH, False),
            DeliveryAttempt(nid, DeliveryMethod.PUSH, True),
            DeliveryAttempt(nid, DeliveryMethod.NONE, False),
        ]
        stats = harness.orchestrator.get_delivery_stats(nid)
        assert stats.total_attempts == 3
        assert stats.push_attempts == 2
        assert stats.successful_attempts == 1
        assert stats.failed_attempts == 2
        assert len(stats.attempts) == 3

    def test_stats_for_unknown_notification(self, harness):
        harness.store.find_attempts.return_value = []
        stats = harness.orchestrator.get_delivery_stats(uuid4())
        assert stats.total_attempts == 0

    def test_shutdown_flushes_and_closes(self, harness):
        harness.orchestrator.submit("u1", _chat())
        harness.orchestrator.shutdown()

        harness.store.create_notification.assert_called_once()
        harness.attempt_log.shutdown.assert_called_once()
        harness.transport.close.assert_called_once()

        harness.orchestrator.shutdown()
        harness.transport.close.assert_called_once()

    def test_shutdown_without_flush_drops_batches(self, harness):
        harness.orchestrator.submit("u1", _chat())
        harness.orchestrator.shutdown(flush_batches=False)
        harness.store.create_notification.assert_not_called()

    def test_start_is_idempotent(self, harness):
        harness.orchestrator.start()
        harness.orchestrator.start()
        harness.orchestrator.shutdown()

    def test_batchable_submit_after_shutdown_delivered_directly(self, harness):
        harness.orchestrator.shutdown()
        result = harness.orchestrator.submit("u1", _chat())

        assert result.batched is False
        assert result.stored is True
        assert result.status is DeliveryStatus.DELIVERED
        assert harness.batching.open_batch_count == 0
        harness.store.create_notification.assert_called_once()

    def test_failure_after_shutdown_not_queued_for_retry(self, harness):
        harness.orchestrator.shutdown()
        harness.transport.send_to_user.return_value = _ALL_FAILED
        result = harness.orchestrator.submit("u1", _accepted())

        assert result.status is DeliveryStatus.FAILED
        assert harness.retry.pending_count == 0
