"""Database initialisation from pushrelay configuration.

Usage::

    from pushrelay.config import get_config
    from pushrelay.db.init import init_database

    init_database(get_config().settings.database)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import psycopg
from pypgkit import Database, DatabaseConfig, PyPgKitError

if TYPE_CHECKING:
    from pushrelay.config.settings import DatabaseSettings

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

log = logging.getLogger(__name__)

# Raw queries surface psycopg errors; BaseRepository CRUD wraps them.
DATABASE_ERRORS: tuple[type[Exception], ...] = (PyPgKitError, psycopg.Error)


def _settings_to_config(settings: DatabaseSettings) -> DatabaseConfig:
    """Map pushrelay DatabaseSettings to PyPGKit DatabaseConfig."""
    return DatabaseConfig(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=settings.password,
        sslmode=settings.sslmode,
        min_connections=settings.min_connections,
        max_connections=settings.max_connections,
        connection_timeout=settings.connection_timeout,
    )


def init_database(settings: DatabaseSettings) -> Database:
    """Initialise the :class:`Database` singleton from config settings.

    If the singleton is already initialised, returns the existing instance.
    When ``auto_setup`` is enabled the bundled ``schema.sql`` creating the
    notification, delivery-attempt and device-token tables is applied.
    """
    if Database.is_initialized():
        log.debug("Database already initialised, returning existing instance")
        return Database.get_instance()

    log.info(
        "Initialising database connection: %s@%s:%s/%s",
        settings.user,
        settings.host,
        settings.port,
        settings.database,
    )

    db = Database.init(
        config=_settings_to_config(settings),
        schema_path=_SCHEMA_PATH if settings.auto_setup else None,
        auto_setup=settings.auto_setup,
        interactive=False,
    )

    log.info("Database initialised successfully")
    return db
