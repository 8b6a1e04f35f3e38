"""Sensitive data sanitization for log output.

Device tokens are bearer credentials for a user's device; only a
short prefix is ever written to logs.
"""

from __future__ import annotations

_VISIBLE_PREFIX = 8


def mask_token(token: str) -> str:
    """Return *token* truncated to a short prefix followed by ``...``."""
    if len(token) <= _VISIBLE_PREFIX:
        return "[REDACTED]"
    return f"{token[:_VISIBLE_PREFIX]}..."

