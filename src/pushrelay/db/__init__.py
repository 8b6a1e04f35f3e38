"""Database subsystem for pushrelay.

Public API::

    from pushrelay.db import init_database
"""

from pushrelay.db.init import DATABASE_ERRORS, init_database

__all__ = ["DATABASE_ERRORS", "init_database"]
