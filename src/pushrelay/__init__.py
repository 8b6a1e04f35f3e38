"""pushrelay: durable, idempotent push-notification delivery engine."""

__version__ = "1.0.0"
