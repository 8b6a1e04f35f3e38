"""Notification store gateway.

Thin façade over the pypgkit repositories that gives the delivery
engine one error type, :class:`StoreError`, for every persistence
failure.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import uuid4

from pushrelay.core.types import DeliveryMethod, DeliveryStatus
from pushrelay.db.init import DATABASE_ERRORS
from pushrelay.models.notification import Notification

if TYPE_CHECKING:
    from uuid import UUID

    from pushrelay.delivery.dedup import DuplicateKey
    from pushrelay.models.delivery_attempt import DeliveryAttempt
    from pushrelay.models.notification import NotificationRequest
    from pushrelay.repositories.delivery_attempt import DeliveryAttemptRepository
    from pushrelay.repositories.notification import NotificationRepository

log = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the notification store cannot complete an operation."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class NotificationStore:
    """Persistence gateway used by the orchestrator and attempt logger.

    Parameters
    ----------
    notifications:
        Repository for the ``notifications`` table.
    attempts:
        Repository for the ``notification_delivery_attempts`` table.

    """

    def __init__(
        self,
        notifications: NotificationRepository,
        attempts: DeliveryAttemptRepository,
    ) -> None:
        self._notifications = notifications
        self._attempts = attempts

    def create_notification(
        self,
        recipient_id: str,
        request: NotificationRequest,
    ) -> Notification:
        """Insert a PENDING notification and return the stored row."""
        entity = Notification(
            id=uuid4(),
            recipient_id=recipient_id,
            type=request.type,
            title=request.title,
            body=request.body,
            payload=dict(request.payload),
            click_action=request.click_action,
            delivery_status=DeliveryStatus.PENDING,
            delivery_method=DeliveryMethod.NONE,
        )
        try:
            return self._notifications.create(entity)
        except DATABASE_ERRORS as exc:
            msg = f"Failed to create notification for {recipient_id}: {exc}"
            raise StoreError(msg) from exc

    def update_status(
        self,
        notification_id: UUID,
        status: DeliveryStatus,
        method: DeliveryMethod,
    ) -> bool:
        """Persist a status change. Returns False if the row was not updated."""
        try:
            updated = self._notifications.update_status(notification_id, status, method)
        except DATABASE_ERRORS as exc:
            msg = f"Failed to update status of notification {notification_id}: {exc}"
            raise StoreError(msg) from exc
        if updated is None:
            log.warning(
                "Status update to %s skipped for notification %s (missing or delivered)",
                status.value,
                notification_id,
                extra={"notification_id": str(notification_id)},
            )
            return False
        return True

    def find_recent_by_key(self, key: DuplicateKey, since: datetime) -> bool:
        """Return True if a notification matching *key* exists since *since*."""
        try:
            return self._notifications.exists_recent(
                key.recipient_id,
                key.type,
                since,
                match_fields=key.match_fields,
                payload=key.payload,
            )
        except DATABASE_ERRORS as exc:
            msg = f"Duplicate lookup failed for {key.recipient_id}: {exc}"
            raise StoreError(msg) from exc

    def append_delivery_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        try:
            return self._attempts.create(attempt)
        except DATABASE_ERRORS as exc:
            msg = f"Failed to record delivery attempt for {attempt.notification_id}: {exc}"
            raise StoreError(msg) from exc

    def find_attempts(self, notification_id: UUID) -> list[DeliveryAttempt]:
        try:
            return self._attempts.find_by_notification(notification_id)
        except DATABASE_ERRORS as exc:
            msg = f"Failed to load delivery attempts for {notification_id}: {exc}"
            raise StoreError(msg) from exc

    @staticmethod
    def now() -> datetime:
        return datetime.now(UTC)
