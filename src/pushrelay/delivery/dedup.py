"""Duplicate suppression: key derivation and the short-TTL cache.

A duplicate key is ``recipient_type_discriminator``.  The discriminator
comes from a closed strategy table keyed by notification type:

- chat messages use the conversation id and the sender id;
- single-instance-per-context types use the application id;
- anything else (or a payload missing those fields) uses a stable JSON
  serialisation of the whole payload.

The cache is crash-volatile; :class:`DuplicateKey` also carries the
fields the durable store check matches on, so both layers agree on what
"the same notification" means.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pushrelay.core.types import NotificationType

if TYPE_CHECKING:
    from collections.abc import Callable

    from pushrelay.models.notification import NotificationRequest

log = logging.getLogger(__name__)

_CONVERSATION_FIELDS = ("applicationId", "conversationId")


def stable_json(payload: dict[str, Any]) -> str:
    """Serialise *payload* with sorted keys and compact separators."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class DuplicateKey:
    """Cache key plus the discriminator used by the durable check.

    ``match_fields`` is the subset of payload fields a stored
    notification must contain; ``None`` means the whole payload must
    match.
    """

    value: str
    recipient_id: str
    type: NotificationType
    match_fields: dict[str, Any] | None = field(default=None, compare=False)
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


# ---------------------------------------------------------------------------
# Key strategies
# ---------------------------------------------------------------------------


def _payload_key(recipient_id: str, request: NotificationRequest) -> DuplicateKey:
    return DuplicateKey(
        value=f"{recipient_id}_{request.type.value}_{stable_json(request.payload)}",
        recipient_id=recipient_id,
        type=request.type,
        payload=dict(request.payload),
    )


def _conversation_key(recipient_id: str, request: NotificationRequest) -> DuplicateKey:
    payload = request.payload
    conv_field = next((f for f in _CONVERSATION_FIELDS if payload.get(f)), None)
    sender = payload.get("senderId")
    if conv_field is None or not sender:
        return _payload_key(recipient_id, request)
    conversation = payload[conv_field]
    return DuplicateKey(
        value=f"{recipient_id}_{request.type.value}_{conversation}_{sender}",
        recipient_id=recipient_id,
        type=request.type,
        match_fields={conv_field: conversation, "senderId": sender},
        payload=dict(payload),
    )


def _application_key(recipient_id: str, request: NotificationRequest) -> DuplicateKey:
    application_id = request.payload.get("applicationId")
    if not application_id:
        return _payload_key(recipient_id, request)
    return DuplicateKey(
        value=f"{recipient_id}_{request.type.value}_{application_id}",
        recipient_id=recipient_id,
        type=request.type,
        match_fields={"applicationId": application_id},
        payload=dict(request.payload),
    )


KEY_STRATEGIES: dict[NotificationType, Callable[[str, NotificationRequest], DuplicateKey]] = {
    NotificationType.CHAT_MESSAGE: _conversation_key,
    NotificationType.APPLICATION_CREATED: _application_key,
    NotificationType.APPLICATION_ACCEPTED: _application_key,
    NotificationType.APPLICATION_CANCELLED: _application_key,
    NotificationType.MOU_ACCEPTED_BY_BRAND: _application_key,
    NotificationType.MOU_ACCEPTED_BY_INFLUENCER: _application_key,
    NotificationType.MOU_FULLY_ACCEPTED: _application_key,
    NotificationType.PAYMENT_COMPLETED: _application_key,
    NotificationType.SCRIPT_SUBMITTED: _application_key,
    NotificationType.SCRIPT_REVIEW: _application_key,
    NotificationType.WORK_SUBMITTED: _application_key,
    NotificationType.WORK_REVIEW: _application_key,
    NotificationType.CAMPAIGN_COMPLETED: _application_key,
    NotificationType.PAYOUT_RELEASED: _application_key,
}


def build_duplicate_key(recipient_id: str, request: NotificationRequest) -> DuplicateKey:
    """Derive the duplicate key for *request* addressed to *recipient_id*."""
    strategy = KEY_STRATEGIES.get(request.type, _payload_key)
    return strategy(recipient_id, request)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class DuplicateSuppressionCache:
    """Thread-safe map of duplicate key → time of last accepted request.

    Parameters
    ----------
    ttl_seconds:
        An entry younger than this suppresses a new request with the
        same key.
    clock:
        Monotonic time source (injectable for tests).

    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, float] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _fresh(self, key: str, now: float) -> bool:
        """Caller holds the lock.  Expired entries are purged here."""
        seen = self._entries.get(key)
        if seen is None:
            return False
        if now - seen < self._ttl:
            return True
        del self._entries[key]
        return False

    def should_suppress(self, key: str) -> bool:
        """Return True if *key* was accepted less than the TTL ago."""
        with self._lock:
            return self._fresh(key, self._clock())

    def remember(self, key: str) -> None:
        """Record *key* as accepted now."""
        with self._lock:
            self._entries[key] = self._clock()

    def claim(self, key: str) -> bool:
        """Atomically remember *key* unless it is fresh.

        Returns True when the caller won the key, False when it must be
        suppressed.  Two concurrent submissions of the same key can
        never both win.
        """
        with self._lock:
            now = self._clock()
            if self._fresh(key, now):
                return False
            self._entries[key] = now
            return True

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Purge every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, seen in self._entries.items() if now - seen >= self._ttl]
            for k in expired:
                del self._entries[k]
        if expired:
            log.debug("Duplicate cache sweep: removed %d expired keys", len(expired))
        return len(expired)
