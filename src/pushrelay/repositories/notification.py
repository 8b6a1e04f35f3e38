"""Notification repository."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository, Database

from pushrelay.core.types import DeliveryMethod, DeliveryStatus, NotificationType
from pushrelay.models.notification import Notification

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID


class NotificationRepository(BaseRepository[Notification]):
    table_name = "notifications"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Notification:
        return Notification(
            id=row["id"],
            recipient_id=row["recipient_id"],
            type=NotificationType(row["type"]),
            title=row["title"],
            body=row["body"],
            payload=row.get("payload") or {},
            click_action=row.get("click_action"),
            read=row.get("read", False),
            delivery_status=DeliveryStatus(row["delivery_status"]),
            delivery_method=DeliveryMethod(row["delivery_method"]),
            created_at=row["created_at"],
        )

    def _entity_to_row(self, entity: Notification) -> dict:
        return {
            "id": entity.id,
            "recipient_id": entity.recipient_id,
            "type": entity.type.value,
            "title": entity.title,
            "body": entity.body,
            "payload": Jsonb(entity.payload),
            "click_action": entity.click_action,
            "read": entity.read,
            "delivery_status": entity.delivery_status.value,
            "delivery_method": entity.delivery_method.value,
        }

    def update_status(
        self,
        notification_id: UUID,
        status: DeliveryStatus,
        method: DeliveryMethod,
    ) -> Notification | None:
        """Set delivery status and method.

        A row already ``DELIVERED`` is never moved; ``None`` is returned
        when the id is unknown or the row is terminal.
        """
        db = Database.get_instance()
        row = db.fetch_one(
            "UPDATE notifications "
            "SET delivery_status = %s, delivery_method = %s "
            "WHERE id = %s AND delivery_status <> %s "
            "RETURNING *",
            (status.value, method.value, notification_id, DeliveryStatus.DELIVERED.value),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def exists_recent(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        since: datetime,
        *,
        match_fields: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Return True if a matching notification was created at or after *since*.

        With *match_fields* the stored payload must contain those
        key/value pairs; otherwise the whole stored payload must equal
        *payload*.
        """
        db = Database.get_instance()
        if match_fields is not None:
            clause = "payload @> %s"
            discriminator = Jsonb(match_fields)
        else:
            clause = "payload = %s"
            discriminator = Jsonb(payload or {})
        row = db.fetch_one(
            "SELECT 1 FROM notifications "
            "WHERE recipient_id = %s AND type = %s AND created_at >= %s "
            f"AND {clause} "
            "LIMIT 1",
            (recipient_id, notification_type.value, since, discriminator),
        )
        return row is not None

