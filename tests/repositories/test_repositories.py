"""Unit tests for the pushrelay repository layer with a mocked Database."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch
from uuid import uuid4

from psycopg.types.json import Jsonb

from pushrelay.core.types import DeliveryMethod, DeliveryStatus, NotificationType
from pushrelay.models import DeliveryAttempt, Notification
from pushrelay.repositories import (
    DeliveryAttemptRepository,
    DeviceTokenRepository,
    NotificationRepository,
)

_NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _notification_row(**overrides) -> dict:
    row = {
        "id": uuid4(),
        "recipient_id": "user-1",
        "type": "PAYMENT_COMPLETED",
        "title": "Paid",
        "body": "Payment completed",
        "payload": {"applicationId": "app-1"},
        "click_action": None,
        "read": False,
        "delivery_status": "DELIVERED",
        "delivery_method": "push",
        "created_at": _NOW,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# NotificationRepository
# ---------------------------------------------------------------------------


class TestNotificationRepositoryMapping:
    def test_row_to_entity(self):
        repo = NotificationRepository(MagicMock())
        n = repo._row_to_entity(_notification_row())
        assert n.type is NotificationType.PAYMENT_COMPLETED
        assert n.delivery_status is DeliveryStatus.DELIVERED
        assert n.delivery_method is DeliveryMethod.PUSH
        assert n.payload == {"applicationId": "app-1"}

    def test_null_payload_becomes_empty(self):
        repo = NotificationRepository(MagicMock())
        assert repo._row_to_entity(_notification_row(payload=None)).payload == {}

    def test_entity_to_row_wraps_payload(self):
        repo = NotificationRepository(MagicMock())
        n = Notification(
            id=uuid4(),
            recipient_id="user-1",
            type=NotificationType.CHAT_MESSAGE,
            title="t",
            body="b",
            payload={"k": "v"},
        )
        row = repo._entity_to_row(n)
        assert isinstance(row["payload"], Jsonb)
        assert row["type"] == "CHAT_MESSAGE"
        assert row["delivery_status"] == "PENDING"
        assert row["delivery_method"] == "none"


class TestNotificationRepositoryQueries:
    @patch("pushrelay.repositories.notification.Database")
    def test_update_status_excludes_delivered_rows(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.fetch_one.return_value = _notification_row()
        repo = NotificationRepository(MagicMock())
        nid = uuid4()

        result = repo.update_status(nid, DeliveryStatus.DELIVERED, DeliveryMethod.PUSH)

        assert result is not None
        sql, params = db.fetch_one.call_args[0]
        assert "delivery_status <> %s" in sql
        assert "RETURNING *" in sql
        assert params == ("DELIVERED", "push", nid, "DELIVERED")

    @patch("pushrelay.repositories.notification.Database")
    def test_update_status_no_row_returns_none(self, mock_db_class):
        mock_db_class.get_instance.return_value.fetch_one.return_value = None
        repo = NotificationRepository(MagicMock())
        assert repo.update_status(uuid4(), DeliveryStatus.FAILED, DeliveryMethod.PUSH) is None

    @patch("pushrelay.repositories.notification.Database")
    def test_exists_recent_with_match_fields_uses_containment(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.fetch_one.return_value = (1,)
        repo = NotificationRepository(MagicMock())

        found = repo.exists_recent(
            "user-1",
            NotificationType.APPLICATION_ACCEPTED,
            _NOW,
            match_fields={"applicationId": "app-1"},
        )

        assert found is True
        sql, params = db.fetch_one.call_args[0]
        assert "payload @> %s" in sql
        assert params[:3] == ("user-1", "APPLICATION_ACCEPTED", _NOW)
        assert isinstance(params[3], Jsonb)

    @patch("pushrelay.repositories.notification.Database")
    def test_exists_recent_without_match_fields_uses_equality(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.fetch_one.return_value = None
        repo = NotificationRepository(MagicMock())

        found = repo.exists_recent(
            "user-1",
            NotificationType.PAYOUT_RELEASED,
            _NOW,
            payload={"amount": 10},
        )

        assert found is False
        sql, _ = db.fetch_one.call_args[0]
        assert "payload = %s" in sql


# ---------------------------------------------------------------------------
# DeliveryAttemptRepository
# ---------------------------------------------------------------------------


class TestDeliveryAttemptRepository:
    def test_entity_to_row(self):
        repo = DeliveryAttemptRepository(MagicMock())
        row = repo._entity_to_row(
            DeliveryAttempt(
                notification_id=uuid4(),
                method=DeliveryMethod.PUSH,
                success=False,
                details={"reason": "exception"},
            ),
        )
        assert row["method"] == "push"
        assert row["success"] is False
        assert isinstance(row["details"], Jsonb)
        assert "id" not in row

    @patch("pushrelay.repositories.delivery_attempt.Database")
    def test_find_by_notification_oldest_first(self, mock_db_class):
        nid = uuid4()
        db = mock_db_class.get_instance.return_value
        db.fetch_all.return_value = [
            {
                "id": 1,
                "notification_id": nid,
                "method": "none",
                "success": False,
                "details": None,
                "attempted_at": _NOW,
            },
        ]
        repo = DeliveryAttemptRepository(MagicMock())

        attempts = repo.find_by_notification(nid)

        assert attempts[0].method is DeliveryMethod.NONE
        assert attempts[0].details == {}
        assert "ORDER BY attempted_at, id" in db.fetch_all.call_args[0][0]


# ---------------------------------------------------------------------------
# DeviceTokenRepository
# ---------------------------------------------------------------------------


class TestDeviceTokenRepository:
    @patch("pushrelay.repositories.device_token.Database")
    def test_find_active_tokens(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.fetch_all.return_value = [{"token": "tok-a"}, {"token": "tok-b"}]
        repo = DeviceTokenRepository(MagicMock())

        assert repo.find_active_tokens("user-1") == ["tok-a", "tok-b"]
        assert db.fetch_all.call_args[0][1] == ("user-1",)

    @patch("pushrelay.repositories.device_token.Database")
    def test_delete_tokens(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.execute.return_value = 2
        repo = DeviceTokenRepository(MagicMock())

        assert repo.delete_tokens(["a", "b"]) == 2
        sql, params = db.execute.call_args[0]
        assert "token = ANY(%s)" in sql
        assert params == (["a", "b"],)

    @patch("pushrelay.repositories.device_token.Database")
    def test_empty_lists_skip_database(self, mock_db_class):
        repo = DeviceTokenRepository(MagicMock())
        assert repo.delete_tokens([]) == 0
        assert repo.touch_last_used([]) == 0
        mock_db_class.get_instance.assert_not_called()

    @patch("pushrelay.repositories.device_token.Database")
    def test_touch_last_used(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.execute.return_value = 1
        repo = DeviceTokenRepository(MagicMock())
        assert repo.touch_last_used(["a"]) == 1
        assert "last_used_at = now()" in db.execute.call_args[0][0]

    @patch("pushrelay.repositories.device_token.Database")
    def test_find_stale_tokens(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.fetch_all.return_value = [{"token": "old-a"}, {"token": "old-b"}]
        repo = DeviceTokenRepository(MagicMock())

        assert repo.find_stale_tokens(_NOW, limit=50) == ["old-a", "old-b"]
        sql, params = db.fetch_all.call_args[0]
        assert "is_active AND last_used_at < %s" in sql
        assert "ORDER BY last_used_at ASC" in sql
        assert params == (_NOW, 50)

    @patch("pushrelay.repositories.device_token.Database")
    def test_delete_inactive(self, mock_db_class):
        db = mock_db_class.get_instance.return_value
        db.execute.return_value = 3
        repo = DeviceTokenRepository(MagicMock())

        assert repo.delete_inactive(_NOW) == 3
        sql, params = db.execute.call_args[0]
        assert "NOT is_active AND last_used_at < %s" in sql
        assert params == (_NOW,)
