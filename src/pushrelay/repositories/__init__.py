"""Repository classes for the pushrelay persistence layer.

Each repository extends :class:`pypgkit.BaseRepository` with custom
query methods for notification delivery.
"""

from pushrelay.repositories.delivery_attempt import DeliveryAttemptRepository
from pushrelay.repositories.device_token import DeviceTokenRepository
from pushrelay.repositories.notification import NotificationRepository

__all__ = [
    "DeliveryAttemptRepository",
    "DeviceTokenRepository",
    "NotificationRepository",
]
