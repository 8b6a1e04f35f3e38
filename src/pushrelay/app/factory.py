"""Engine factory for pushrelay.

Usage::

    from pushrelay.app import create_engine
    from pushrelay.config import PushrelayConfig

    config = PushrelayConfig(config_file="pushrelay.yaml", schema_file="bundled")
    engine = create_engine(config)
    engine.start()
"""

from __future__ import annotations

import atexit
import logging
from typing import TYPE_CHECKING

from pushrelay.app.container import Container
from pushrelay.app.shutdown import ShutdownCoordinator
from pushrelay.metrics.collector import MetricsCollector

if TYPE_CHECKING:
    from pypgkit import Database

    from pushrelay.config.pushrelay_config import PushrelayConfig
    from pushrelay.push.base import PushTransport

log = logging.getLogger(__name__)


def create_engine(
    config: PushrelayConfig | None = None,
    database: Database | None = None,
    *,
    transport: PushTransport | None = None,
    register_signals: bool = False,
) -> Container:
    """Create and wire the delivery engine.

    Parameters
    ----------
    config:
        Loaded :class:`PushrelayConfig`.  Falls back to :func:`get_config`
        when ``None``.
    database:
        Initialised :class:`Database`.  When ``None`` it is initialised
        from ``settings.database``.
    transport:
        Optional pre-built push transport, mostly for tests and embedding.
    register_signals:
        Install SIGTERM/SIGINT handlers that trigger graceful shutdown.
        Only valid from the main thread.

    Returns
    -------
    Container
        The wired engine.  Background workers are not started.

    """
    if config is None:
        from pushrelay.config import get_config  # noqa: PLC0415

        config = get_config()

    settings = config.settings

    from pushrelay.logging import configure_logging  # noqa: PLC0415

    configure_logging(settings.logging)

    if database is None:
        from pushrelay.db import init_database  # noqa: PLC0415

        database = init_database(settings.database)

    coordinator = ShutdownCoordinator(
        graceful_timeout=settings.shutdown.graceful_timeout_seconds,
    )
    engine = Container(
        database,
        settings,
        shutdown_coordinator=coordinator,
        transport=transport,
        metrics=MetricsCollector(),
    )

    atexit.register(coordinator.initiate)
    if register_signals:
        coordinator.register_signals()

    log.info(
        "pushrelay engine created (transport=%s, dedup=%s, batching=%s, retry=%s)",
        settings.push.transport,
        settings.deduplication.enabled,
        settings.batching.enabled,
        settings.retry.enabled,
    )
    return engine
