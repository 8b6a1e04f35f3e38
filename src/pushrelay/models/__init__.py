"""Entity models for the pushrelay persistence layer.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from pushrelay.models.delivery_attempt import DeliveryAttempt, DeliveryStats
from pushrelay.models.device_token import DeviceToken
from pushrelay.models.notification import DeliveryResult, Notification, NotificationRequest

__all__ = [
    "DeliveryAttempt",
    "DeliveryResult",
    "DeliveryStats",
    "DeviceToken",
    "Notification",
    "NotificationRequest",
]
