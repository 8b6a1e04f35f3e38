"""Notification entity, inbound request, and submission result."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pushrelay.core.types import DeliveryMethod, DeliveryStatus

if TYPE_CHECKING:
    from uuid import UUID

    from pushrelay.core.types import NotificationType

# Sentinel for timestamps not yet assigned by the database.
_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class NotificationRequest:
    """A raw notification raised by a business event.

    ``payload`` is forwarded to the client for routing (e.g.
    ``applicationId``, ``senderId``) and also feeds duplicate-key
    derivation.
    """

    type: NotificationType
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)
    click_action: str | None = None
    badge: int = 1


@dataclass(frozen=True)
class Notification:
    id: UUID
    recipient_id: str
    type: NotificationType
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)
    click_action: str | None = None
    read: bool = False
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_method: DeliveryMethod = DeliveryMethod.NONE
    created_at: datetime = _EPOCH


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of :meth:`DeliveryOrchestrator.submit`."""

    stored: bool
    delivered: bool
    duplicate: bool = False
    batched: bool = False
    notification_id: UUID | None = None
    status: DeliveryStatus | None = None
    method: DeliveryMethod | None = None
