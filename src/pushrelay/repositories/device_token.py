"""Device-token repository.

Registration and unregistration belong to the account service; the
delivery engine reads active tokens, prunes invalid or long-inactive
ones and records usage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import BaseRepository, Database

from pushrelay.models.device_token import DeviceToken

if TYPE_CHECKING:
    from datetime import datetime


class DeviceTokenRepository(BaseRepository[DeviceToken]):
    table_name = "device_tokens"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> DeviceToken:
        return DeviceToken(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            device_type=row.get("device_type", "unknown"),
            is_active=row.get("is_active", True),
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
        )

    def _entity_to_row(self, entity: DeviceToken) -> dict:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "token": entity.token,
            "device_type": entity.device_type,
            "is_active": entity.is_active,
        }

    def find_active_tokens(self, user_id: str) -> list[str]:
        """Token strings of every active device registered to *user_id*."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT token FROM device_tokens "
            "WHERE user_id = %s AND is_active "
            "ORDER BY last_used_at DESC",
            (user_id,),
            as_dict=True,
        )
        return [r["token"] for r in rows]

    def delete_tokens(self, tokens: list[str]) -> int:
        """Delete rows for the given token strings. Returns count deleted."""
        if not tokens:
            return 0
        db = Database.get_instance()
        return db.execute(
            "DELETE FROM device_tokens WHERE token = ANY(%s)",
            (list(tokens),),
        )

    def touch_last_used(self, tokens: list[str]) -> int:
        """Record that *tokens* just received a message."""
        if not tokens:
            return 0
        db = Database.get_instance()
        return db.execute(
            "UPDATE device_tokens SET last_used_at = now() WHERE token = ANY(%s)",
            (list(tokens),),
        )

    def find_stale_tokens(self, older_than: datetime, limit: int = 100) -> list[str]:
        """Active tokens not used since *older_than*, least recently used first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT token FROM device_tokens "
            "WHERE is_active AND last_used_at < %s "
            "ORDER BY last_used_at ASC "
            "LIMIT %s",
            (older_than, limit),
            as_dict=True,
        )
        return [r["token"] for r in rows]

    def delete_inactive(self, older_than: datetime) -> int:
        """Delete deactivated tokens last used before *older_than*."""
        db = Database.get_instance()
        return db.execute(
            "DELETE FROM device_tokens WHERE NOT is_active AND last_used_at < %s",
            (older_than,),
        )
