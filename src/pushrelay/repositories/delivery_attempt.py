"""Delivery-attempt repository (append-only)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository, Database

from pushrelay.core.types import DeliveryMethod
from pushrelay.models.delivery_attempt import DeliveryAttempt

if TYPE_CHECKING:
    from uuid import UUID


class DeliveryAttemptRepository(BaseRepository[DeliveryAttempt]):
    table_name = "notification_delivery_attempts"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> DeliveryAttempt:
        return DeliveryAttempt(
            id=row["id"],
            notification_id=row["notification_id"],
            method=DeliveryMethod(row["method"]),
            success=row["success"],
            details=row.get("details") or {},
            attempted_at=row["attempted_at"],
        )

    def _entity_to_row(self, entity: DeliveryAttempt) -> dict:
        return {
            "notification_id": entity.notification_id,
            "method": entity.method.value,
            "success": entity.success,
            "details": Jsonb(entity.details),
        }

    def find_by_notification(self, notification_id: UUID) -> list[DeliveryAttempt]:
        """All attempts for a notification, oldest first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM notification_delivery_attempts "
            "WHERE notification_id = %s "
            "ORDER BY attempted_at, id",
            (notification_id,),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]
