"""Registered push endpoint (device token) entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class DeviceToken:
    id: UUID
    user_id: str
    token: str
    device_type: str = "unknown"
    is_active: bool = True
    last_used_at: datetime = _EPOCH
    created_at: datetime = _EPOCH
