"""Abstract base class for push transports.

All push transports (built-in and custom) must inherit from
:class:`PushTransport` and implement :meth:`is_available` and
:meth:`send_to_user`.

``send_to_user`` resolves the recipient's active endpoints itself and
returns a :class:`SendReport`.  Per-endpoint failures are reported, not
raised; :class:`TransportError` is reserved for failures of the whole
call (provider unreachable, token lookup failed, circuit open).
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pushrelay.core.types import TransportReason

if TYPE_CHECKING:
    from pushrelay.config.settings import PushSettings
    from pushrelay.repositories.device_token import DeviceTokenRepository

log = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised by push transports when a send cannot be performed at all.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    retryable:
        Whether the failure is transient and the delivery may be retried.
    reason:
        Machine-readable reason recorded with the delivery attempt.

    """

    def __init__(
        self,
        detail: str,
        *,
        retryable: bool = True,
        reason: TransportReason = TransportReason.EXCEPTION,
    ) -> None:
        self.detail = detail
        self.retryable = retryable
        self.reason = reason
        super().__init__(detail)


def stringify_data(data: dict[str, Any]) -> dict[str, str]:
    """Coerce payload values to strings for a push data map; drops None."""
    out: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, str):
            out[key] = value
        else:
            out[key] = json.dumps(value, separators=(",", ":"), default=str)
    return out


@dataclass(frozen=True)
class PushMessage:
    """A rendered notification ready for the wire.

    ``data`` values are strings; FCM rejects any other type.
    """

    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    click_action: str | None = None
    badge: int = 1
    image_url: str | None = None


@dataclass(frozen=True)
class EndpointError:
    token: str
    code: str | None
    message: str
    removed: bool = False


@dataclass(frozen=True)
class SendReport:
    """Outcome of sending one message to every endpoint of one user."""

    sent_count: int
    failed_count: int
    endpoint_errors: tuple[EndpointError, ...] = ()
    terminal_reason: TransportReason | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.sent_count > 0

    @property
    def no_endpoints(self) -> bool:
        """True when the user had nothing to send to.

        A report with no sends and no failures means the same thing even
        when the transport did not set ``terminal_reason``.
        """
        if self.terminal_reason == TransportReason.NO_ENDPOINTS:
            return True
        return self.terminal_reason is None and self.sent_count == 0 and self.failed_count == 0

    def to_details(self) -> dict[str, Any]:
        """Structured attempt details (tokens already masked by the transport)."""
        details: dict[str, Any] = {
            "sent": self.sent_count,
            "failed": self.failed_count,
        }
        if self.terminal_reason is not None:
            details["reason"] = self.terminal_reason.value
        elif self.no_endpoints:
            details["reason"] = TransportReason.NO_ENDPOINTS.value
        elif self.sent_count == 0 and self.failed_count > 0:
            details["reason"] = TransportReason.ALL_ENDPOINTS_FAILED.value
        if self.error:
            details["error"] = self.error
        if self.endpoint_errors:
            details["endpoint_errors"] = [
                {"token": e.token, "code": e.code, "message": e.message, "removed": e.removed}
                for e in self.endpoint_errors
            ]
        return details


class PushTransport(abc.ABC):
    """Base class for all push transport implementations.

    Subclasses receive the ``push`` settings section and the
    device-token repository and must implement :meth:`is_available`
    and :meth:`send_to_user`.
    """

    def __init__(
        self,
        push_settings: PushSettings,
        tokens: DeviceTokenRepository | None = None,
    ) -> None:
        self._settings = push_settings
        self._tokens = tokens

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True when the transport is initialised and can send."""

    @abc.abstractmethod
    def send_to_user(self, recipient_id: str, message: PushMessage) -> SendReport:
        """Send *message* to every active endpoint of *recipient_id*.

        Raises
        ------
        TransportError
            If the send could not be attempted at all.

        """

    def purge_cache(self) -> int:  # noqa: PLR6301
        """Drop expired cached state. Returns the number of entries removed."""
        return 0

    def validate_tokens(self, tokens: list[str]) -> list[str]:  # noqa: PLR6301, ARG002
        """Check *tokens* with the provider without notifying anyone.

        Returns the tokens the provider reports as invalid.  Transports
        that cannot validate return an empty list.
        """
        return []

    def close(self) -> None:  # noqa: B027
        """Release provider resources. Called once during shutdown."""


class DisabledPushTransport(PushTransport):
    """Transport that is never available.

    Selected with ``push.transport: disabled``; every notification is
    stored and marked FAILED without a retry.
    """

    def is_available(self) -> bool:
        return False

    def send_to_user(self, recipient_id: str, message: PushMessage) -> SendReport:
        msg = "Push transport is disabled"
        raise TransportError(
            msg,
            retryable=False,
            reason=TransportReason.SERVICE_NOT_INITIALIZED,
        )
