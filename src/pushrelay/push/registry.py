"""Push transport registry.

Loads the configured push transport by name and returns an initialised
:class:`PushTransport` instance.  Supports built-in transports (``fcm``,
``disabled``) and custom transports via the ``ext:`` prefix.  When
``push.circuit_breaker_failure_threshold`` is positive the transport is
wrapped in a :class:`CircuitBreakerPushTransport`.

Usage::

    from pushrelay.push.registry import load_push_transport

    transport = load_push_transport(settings.push, DeviceTokenRepository(db))
    report = transport.send_to_user(user_id, message)
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from pushrelay.push.base import PushTransport, TransportError
from pushrelay.push.circuit_breaker import CircuitBreakerPushTransport

if TYPE_CHECKING:
    from pushrelay.config.settings import PushSettings
    from pushrelay.repositories.device_token import DeviceTokenRepository

log = logging.getLogger(__name__)

# Maps config string → (module_path, class_name)
_BUILTIN_TRANSPORTS: dict[str, tuple[str, str]] = {
    "fcm": ("pushrelay.push.fcm", "FcmPushTransport"),
    "disabled": ("pushrelay.push.base", "DisabledPushTransport"),
}


def load_push_transport(
    push_settings: PushSettings,
    tokens: DeviceTokenRepository | None = None,
) -> PushTransport:
    """Load and return the configured push transport.

    Parameters
    ----------
    push_settings:
        The ``push`` section from :class:`PushrelaySettings`.
    tokens:
        Device-token repository handed to the transport.

    Raises
    ------
    TransportError
        If the transport cannot be loaded.

    """
    name = push_settings.transport

    if name in _BUILTIN_TRANSPORTS:
        transport = _load_builtin(name, push_settings, tokens)
    elif name.startswith("ext:"):
        transport = _load_external(name[4:], push_settings, tokens)
    else:
        msg = (
            f"Unknown push transport '{name}'; "
            f"built-in options: {sorted(_BUILTIN_TRANSPORTS)}. "
            f"Use 'ext:mypackage.module.ClassName' for custom transports."
        )
        raise TransportError(msg, retryable=False)

    if push_settings.circuit_breaker_failure_threshold > 0:
        log.info(
            "Push circuit breaker enabled (threshold=%d, recovery=%.1fs)",
            push_settings.circuit_breaker_failure_threshold,
            push_settings.circuit_breaker_recovery_timeout,
        )
        return CircuitBreakerPushTransport(
            transport,
            failure_threshold=push_settings.circuit_breaker_failure_threshold,
            recovery_timeout=push_settings.circuit_breaker_recovery_timeout,
        )
    return transport


def _load_builtin(
    name: str,
    push_settings: PushSettings,
    tokens: DeviceTokenRepository | None,
) -> PushTransport:
    mod_path, cls_name = _BUILTIN_TRANSPORTS[name]

    try:
        module = importlib.import_module(mod_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load built-in push transport '{name}': {exc}"
        raise TransportError(msg, retryable=False) from exc

    _validate_class(cls, name)
    transport = cls(push_settings, tokens)
    log.info("Loaded push transport: %s", name)
    return transport


def _load_external(
    fqn: str,
    push_settings: PushSettings,
    tokens: DeviceTokenRepository | None,
) -> PushTransport:
    """Load a custom push transport by fully-qualified class name.

    Parameters
    ----------
    fqn:
        e.g. ``"mycompany.push.ApnsTransport"``

    """
    module_path, _, cls_name = fqn.rpartition(".")
    if not module_path:
        msg = (
            f"Invalid external push transport '{fqn}': must be fully "
            "qualified (e.g. 'mypackage.module.ClassName')"
        )
        raise TransportError(msg, retryable=False)

    try:
        module = importlib.import_module(module_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load external push transport '{fqn}': {exc}"
        raise TransportError(msg, retryable=False) from exc

    _validate_class(cls, f"ext:{fqn}")
    transport = cls(push_settings, tokens)
    log.info("Loaded external push transport: %s", fqn)
    return transport


def _validate_class(cls: type, label: str) -> None:
    """Verify that a transport class has the required methods."""
    if not (isinstance(cls, type) and issubclass(cls, PushTransport)):
        msg = f"Push transport '{label}' is not a subclass of PushTransport"
        raise TransportError(msg, retryable=False)

    for method_name in ("is_available", "send_to_user"):
        method = getattr(cls, method_name, None)
        if method is None or getattr(method, "__isabstractmethod__", False):
            msg = f"Push transport '{label}' does not implement '{method_name}()'"
            raise TransportError(msg, retryable=False)
