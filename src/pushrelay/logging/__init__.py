"""Logging subsystem for pushrelay.

Public API::

    from pushrelay.logging import configure_logging

    configure_logging(settings.logging)
"""

from pushrelay.logging.setup import configure_logging, delivery_context

__all__ = ["configure_logging", "delivery_context"]
