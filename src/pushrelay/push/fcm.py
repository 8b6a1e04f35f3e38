"""Firebase Cloud Messaging push transport.

Sends one multicast message per recipient to all of the recipient's
active device tokens using a named ``firebase_admin`` app, so the
engine never collides with another Firebase app in the same process.

Token lookups are cached per user for ``push.fcm.token_cache_ttl_seconds``.
Tokens that FCM reports as unregistered or bound to another sender are
deleted; successful tokens have ``last_used_at`` refreshed.  Stale tokens
can be checked with a dry-run send through :meth:`FcmPushTransport.validate_tokens`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError, InvalidArgumentError

from pushrelay.core.types import TransportReason
from pushrelay.db.init import DATABASE_ERRORS
from pushrelay.logging.sanitize import mask_token
from pushrelay.push.base import (
    EndpointError,
    PushMessage,
    PushTransport,
    SendReport,
    TransportError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from pushrelay.config.settings import PushSettings
    from pushrelay.repositories.device_token import DeviceTokenRepository

log = logging.getLogger(__name__)

# FCM rejects multicast messages with more tokens than this.
_MULTICAST_LIMIT = 500

_REMOVABLE_ERRORS = (messaging.UnregisteredError, messaging.SenderIdMismatchError)

# A dry run that fails with one of these means the token itself is bad.
_INVALID_TOKEN_ERRORS = (*_REMOVABLE_ERRORS, InvalidArgumentError)


class FcmPushTransport(PushTransport):
    """Push transport backed by ``firebase_admin.messaging``.

    Parameters
    ----------
    push_settings:
        The ``push`` section; ``push_settings.fcm`` holds credentials
        and message defaults.
    tokens:
        Device-token repository used to resolve, prune and touch tokens.
    clock:
        Monotonic clock used for the token cache (injectable for tests).

    """

    def __init__(
        self,
        push_settings: PushSettings,
        tokens: DeviceTokenRepository | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(push_settings, tokens)
        self._fcm = push_settings.fcm
        self._clock = clock
        self._cache_lock = threading.Lock()
        self._token_cache: dict[str, tuple[float, list[str]]] = {}
        self._app: firebase_admin.App | None = self._init_app()

    # -- initialisation ------------------------------------------------------

    def _init_app(self) -> firebase_admin.App | None:
        """Initialise (or reuse) the named Firebase app.

        Failures leave the transport unavailable rather than raising, so
        notifications are still stored when FCM is misconfigured.
        """
        name = self._fcm.app_name
        try:
            return firebase_admin.get_app(name)
        except ValueError:
            pass

        try:
            if self._fcm.credentials_file:
                cred = credentials.Certificate(self._fcm.credentials_file)
            else:
                cred = credentials.ApplicationDefault()
            options = {"projectId": self._fcm.project_id} if self._fcm.project_id else None
            app = firebase_admin.initialize_app(cred, options, name=name)
        except (ValueError, OSError, FirebaseError) as exc:
            log.error(
                "FCM initialisation failed, push delivery unavailable: %s",
                exc,
                extra={"event": "fcm_init_failed"},
            )
            return None

        log.info("FCM transport initialised (app=%s)", name)
        return app

    def is_available(self) -> bool:
        return self._app is not None

    # -- token cache ---------------------------------------------------------

    def _active_tokens(self, recipient_id: str) -> list[str]:
        ttl = self._fcm.token_cache_ttl_seconds
        now = self._clock()
        if ttl > 0:
            with self._cache_lock:
                cached = self._token_cache.get(recipient_id)
                if cached is not None and cached[0] > now:
                    return list(cached[1])

        if self._tokens is None:
            return []
        try:
            tokens = self._tokens.find_active_tokens(recipient_id)
        except DATABASE_ERRORS as exc:
            msg = f"Failed to load device tokens: {exc}"
            raise TransportError(msg, retryable=True) from exc

        if ttl > 0:
            with self._cache_lock:
                self._token_cache[recipient_id] = (now + ttl, list(tokens))
        return tokens

    def invalidate(self, recipient_id: str) -> None:
        with self._cache_lock:
            self._token_cache.pop(recipient_id, None)

    def purge_cache(self) -> int:
        now = self._clock()
        with self._cache_lock:
            expired = [uid for uid, (exp, _) in self._token_cache.items() if exp <= now]
            for uid in expired:
                del self._token_cache[uid]
        return len(expired)

    # -- sending -------------------------------------------------------------

    def _build_message(self, tokens: list[str], message: PushMessage) -> messaging.MulticastMessage:
        click_action = message.click_action or self._fcm.default_click_action
        data = dict(message.data)
        data.setdefault("click_action", click_action)
        data.setdefault("title", message.title)
        data.setdefault("body", message.body)

        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(
                title=message.title,
                body=message.body,
                image=message.image_url,
            ),
            data=data,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    sound="default",
                    channel_id=self._fcm.android_channel_id,
                    priority="high",
                ),
            ),
            apns=messaging.APNSConfig(
                headers={
                    "apns-priority": "10",
                    "apns-push-type": "alert",
                    "apns-expiration": "0",
                },
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        alert=messaging.ApsAlert(title=message.title, body=message.body),
                        sound="default",
                        badge=message.badge,
                        category="MESSAGE_CATEGORY",
                        mutable_content=True,
                    ),
                    **message.data,
                ),
            ),
        )

    def send_to_user(self, recipient_id: str, message: PushMessage) -> SendReport:
        if self._app is None:
            msg = "FCM transport not initialised"
            raise TransportError(
                msg,
                retryable=False,
                reason=TransportReason.SERVICE_NOT_INITIALIZED,
            )

        tokens = self._active_tokens(recipient_id)
        if not tokens:
            log.info(
                "No active device tokens for recipient %s",
                recipient_id,
                extra={"recipient_id": recipient_id},
            )
            return SendReport(
                sent_count=0,
                failed_count=0,
                terminal_reason=TransportReason.NO_ENDPOINTS,
            )

        successful: list[str] = []
        removable: list[str] = []
        errors: list[EndpointError] = []

        for start in range(0, len(tokens), _MULTICAST_LIMIT):
            chunk = tokens[start : start + _MULTICAST_LIMIT]
            try:
                batch = messaging.send_each_for_multicast(
                    self._build_message(chunk, message),
                    app=self._app,
                )
            except (FirebaseError, ValueError) as exc:
                # Earlier chunks already went out; record them before failing.
                self._after_send(recipient_id, successful, removable)
                msg = f"FCM multicast failed: {exc}"
                raise TransportError(msg, retryable=True) from exc

            for token, response in zip(chunk, batch.responses, strict=True):
                if response.success:
                    successful.append(token)
                    continue
                exc = response.exception
                remove = isinstance(exc, _REMOVABLE_ERRORS)
                if remove:
                    removable.append(token)
                errors.append(
                    EndpointError(
                        token=mask_token(token),
                        code=getattr(exc, "code", None),
                        message=str(exc) if exc else "send failed",
                        removed=remove,
                    ),
                )

        self._after_send(recipient_id, successful, removable)

        log.info(
            "FCM send to %s: %d sent, %d failed",
            recipient_id,
            len(successful),
            len(errors),
            extra={
                "recipient_id": recipient_id,
                "sent": len(successful),
                "failed": len(errors),
            },
        )
        return SendReport(
            sent_count=len(successful),
            failed_count=len(errors),
            endpoint_errors=tuple(errors),
            error=None if successful else (errors[0].message if errors else None),
        )

    def validate_tokens(self, tokens: list[str]) -> list[str]:
        """Dry-run a silent data message to each token; return the invalid ones.

        Provider errors that do not implicate the token are logged and the
        token is left alone.
        """
        if self._app is None or not tokens:
            return []

        invalid: list[str] = []
        for token in tokens:
            check = messaging.Message(
                token=token,
                data={"test": "validation"},
                android=messaging.AndroidConfig(priority="normal"),
                apns=messaging.APNSConfig(headers={"apns-priority": "5"}),
            )
            try:
                messaging.send(check, dry_run=True, app=self._app)
            except _INVALID_TOKEN_ERRORS:
                invalid.append(token)
            except (FirebaseError, ValueError) as exc:
                log.warning(
                    "Could not validate device token %s: %s",
                    mask_token(token),
                    exc,
                )
        log.info(
            "Validated %d device token(s), %d invalid",
            len(tokens),
            len(invalid),
        )
        return invalid

    def _after_send(
        self,
        recipient_id: str,
        successful: list[str],
        removable: list[str],
    ) -> None:
        """Prune invalid tokens and refresh usage; bookkeeping never fails a send."""
        if self._tokens is None:
            return
        if removable:
            self.invalidate(recipient_id)
            try:
                removed = self._tokens.delete_tokens(removable)
                log.info(
                    "Removed %d invalid device token(s) for %s",
                    removed,
                    recipient_id,
                    extra={"recipient_id": recipient_id},
                )
            except DATABASE_ERRORS:
                log.exception("Failed to remove invalid device tokens for %s", recipient_id)
        if successful:
            try:
                self._tokens.touch_last_used(successful)
            except DATABASE_ERRORS:
                log.exception("Failed to update last_used_at for %s", recipient_id)

    def close(self) -> None:
        if self._app is not None:
            firebase_admin.delete_app(self._app)
            self._app = None
