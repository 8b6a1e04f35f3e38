"""DeliveryAttempt audit record and per-notification statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from uuid import UUID

    from pushrelay.core.types import DeliveryMethod

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class DeliveryAttempt:
    notification_id: UUID
    method: DeliveryMethod
    success: bool
    details: dict[str, Any] = field(default_factory=dict)
    attempted_at: datetime = _EPOCH
    id: int | None = None


@dataclass(frozen=True)
class DeliveryStats:
    total_attempts: int
    push_attempts: int
    successful_attempts: int
    failed_attempts: int
    attempts: tuple[DeliveryAttempt, ...] = ()
