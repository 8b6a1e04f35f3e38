"""Notification delivery state machine.

Defines the valid delivery-status transitions.  All status updates
issued by the engine are checked via :func:`assert_transition`.

Usage::

    from pushrelay.core.state import DELIVERY_TRANSITIONS, assert_transition
    from pushrelay.core.types import DeliveryStatus

    assert_transition(
        DeliveryStatus.PENDING, DeliveryStatus.DELIVERED,
        DELIVERY_TRANSITIONS,
    )
"""

from __future__ import annotations

import logging

from pushrelay.core.types import DeliveryStatus

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# pending → delivered/failed/skipped, failed → delivered/failed/skipped.
# delivered & skipped are terminal.  failed → failed is a failed retry.
# ---------------------------------------------------------------------------

DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset(
        {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.FAILED,
            DeliveryStatus.SKIPPED_NO_ENDPOINT,
        }
    ),
    DeliveryStatus.FAILED: frozenset(
        {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.FAILED,  # retry
            DeliveryStatus.SKIPPED_NO_ENDPOINT,
        }
    ),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.SKIPPED_NO_ENDPOINT: frozenset(),
}

TERMINAL_STATUSES: frozenset[DeliveryStatus] = frozenset(
    status for status, targets in DELIVERY_TRANSITIONS.items() if not targets
)


def assert_transition(
    current: DeliveryStatus,
    target: DeliveryStatus,
    table: dict = DELIVERY_TRANSITIONS,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current delivery status of the notification.
    target:
        The desired new status.
    table:
        Transition table, :data:`DELIVERY_TRANSITIONS` by default.

    """
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown status {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def log_transition(
    notification_id,
    from_status,
    to_status,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a delivery-status transition."""
    extra = {
        "event": "state_transition",
        "notification_id": str(notification_id),
        "from_status": from_status.value if hasattr(from_status, "value") else str(from_status),
        "to_status": to_status.value if hasattr(to_status, "value") else str(to_status),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "notification %s: %s -> %s%s",
        notification_id,
        extra["from_status"],
        extra["to_status"],
        f" ({reason})" if reason else "",
        extra=extra,
    )
