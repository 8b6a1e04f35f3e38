"""Structured logging configuration for pushrelay.

Provides JSON and text formatters, a delivery-context filter that
injects the notification currently being processed into every log
record, and a one-call ``configure_logging`` function driven by
config settings.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pushrelay.config.settings import LoggingSettings

# Attributes that are part of the standard LogRecord; everything
# else is considered "extra" and gets included in structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        # Context attributes handled explicitly:
        "notification_id",
        "recipient_id",
    }
)

_current_notification: ContextVar[str | None] = ContextVar(
    "pushrelay_notification_id",
    default=None,
)
_current_recipient: ContextVar[str | None] = ContextVar(
    "pushrelay_recipient_id",
    default=None,
)


@contextmanager
def delivery_context(
    notification_id: object | None = None,
    recipient_id: object | None = None,
) -> Iterator[None]:
    """Tag every record logged inside the block with the given ids."""
    n_token = _current_notification.set(
        str(notification_id) if notification_id is not None else None,
    )
    r_token = _current_recipient.set(
        str(recipient_id) if recipient_id is not None else None,
    )
    try:
        yield
    finally:
        _current_recipient.reset(r_token)
        _current_notification.reset(n_token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for production logging.

    Every record becomes a single JSON object on one line containing
    the standard fields plus any *extra* attributes passed by the
    caller or injected by filters.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(
                record.created,
                tz=UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        notification_id = getattr(record, "notification_id", None)
        if notification_id is not None:
            data["notification_id"] = notification_id

        recipient_id = getattr(record, "recipient_id", None)
        if recipient_id is not None:
            data["recipient_id"] = recipient_id

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development / console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(notification_id)s] %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class DeliveryContextFilter(logging.Filter):
    """Inject the active delivery context into every log record.

    Explicit ``extra={"notification_id": ...}`` values win over the
    context set by :func:`delivery_context`.
    """

    CONTEXT_ATTRS = frozenset({"notification_id", "recipient_id"})

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if getattr(record, "notification_id", None) is None:
            record.notification_id = _current_notification.get() or "-"  # type: ignore[attr-defined]
        if getattr(record, "recipient_id", None) is None:
            record.recipient_id = _current_recipient.get()  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``pushrelay`` logger hierarchy from settings.

    Replaces any bootstrap handlers with properly formatted output.
    Returns the root ``pushrelay`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("pushrelay")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(DeliveryContextFilter())
    root.addHandler(console)

    # Quieten noisy third-party loggers
    for lib in ("firebase_admin", "google.auth", "urllib3", "psycopg.pool"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root
