"""Enumerated types for the pushrelay persistence layer.

All enums inherit from ``StrEnum`` so their ``.value`` is a plain
string that psycopg serialises as TEXT and JSON round-trips naturally.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Notification types
# ---------------------------------------------------------------------------


class NotificationType(StrEnum):
    CHAT_MESSAGE = "CHAT_MESSAGE"
    APPLICATION_CREATED = "APPLICATION_CREATED"
    APPLICATION_ACCEPTED = "APPLICATION_ACCEPTED"
    APPLICATION_CANCELLED = "APPLICATION_CANCELLED"
    MOU_ACCEPTED_BY_BRAND = "MOU_ACCEPTED_BY_BRAND"
    MOU_ACCEPTED_BY_INFLUENCER = "MOU_ACCEPTED_BY_INFLUENCER"
    MOU_FULLY_ACCEPTED = "MOU_FULLY_ACCEPTED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    SCRIPT_SUBMITTED = "SCRIPT_SUBMITTED"
    SCRIPT_REVIEW = "SCRIPT_REVIEW"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    WORK_REVIEW = "WORK_REVIEW"
    CAMPAIGN_COMPLETED = "CAMPAIGN_COMPLETED"
    PAYOUT_RELEASED = "PAYOUT_RELEASED"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class DeliveryStatus(StrEnum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    # Transport succeeded but the recipient has no active endpoint
    SKIPPED_NO_ENDPOINT = "SKIPPED_NO_ENDPOINT"


class DeliveryMethod(StrEnum):
    NONE = "none"
    PUSH = "push"


class TransportReason(StrEnum):
    """Machine-readable reasons recorded in delivery-attempt details."""

    NO_ENDPOINTS = "no_endpoints"
    SERVICE_NOT_INITIALIZED = "service_not_initialized"
    ALL_ENDPOINTS_FAILED = "all_endpoints_failed"
    CIRCUIT_OPEN = "circuit_open"
    EXCEPTION = "exception"
