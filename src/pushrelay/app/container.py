"""Dependency container for the pushrelay delivery engine.

Built once at startup by :func:`pushrelay.app.factory.create_engine`.

Usage::

    from pushrelay.app import create_engine

    engine = create_engine(config)
    engine.start()
    engine.submit(user_id, request)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pypgkit import Database

    from pushrelay.app.shutdown import ShutdownCoordinator
    from pushrelay.config.settings import PushrelaySettings
    from pushrelay.delivery import (
        AttemptLogger,
        BatchingAggregator,
        DeliveryOrchestrator,
        DuplicateSuppressionCache,
        MaintenanceWorker,
        NotificationStore,
        RetryScheduler,
    )
    from pushrelay.metrics.collector import MetricsCollector
    from pushrelay.models.notification import DeliveryResult, NotificationRequest
    from pushrelay.push.base import PushTransport
    from pushrelay.repositories import (
        DeliveryAttemptRepository,
        DeviceTokenRepository,
        NotificationRepository,
    )

log = logging.getLogger(__name__)


class Container:
    """Engine-wide dependency container.

    Holds the :class:`Database` singleton, the repositories sharing its
    pool and every delivery component wired to the orchestrator.

    Parameters
    ----------
    db:
        Initialised database singleton.
    settings:
        Typed settings tree.
    shutdown_coordinator:
        Optional coordinator; when given, :meth:`shutdown` is registered
        as its stop callback and :meth:`submit` is tracked as in-flight work.
    transport:
        Pre-built push transport.  Loaded from ``settings.push`` when ``None``.
    metrics:
        Optional metrics collector shared by all components.

    """

    def __init__(
        self,
        db: Database,
        settings: PushrelaySettings,
        shutdown_coordinator: ShutdownCoordinator | None = None,
        *,
        transport: PushTransport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        from pushrelay.delivery import (  # noqa: PLC0415
            AttemptLogger as _AL,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            BatchingAggregator as _BA,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            DeliveryOrchestrator as _DO,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            DuplicateSuppressionCache as _DSC,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            MaintenanceWorker as _MW,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            NotificationStore as _NS,  # noqa: N814
        )
        from pushrelay.delivery import (  # noqa: PLC0415
            RetryScheduler as _RS,  # noqa: N814
        )
        from pushrelay.repositories import (  # noqa: PLC0415
            DeliveryAttemptRepository as _DAR,  # noqa: N814
        )
        from pushrelay.repositories import (  # noqa: PLC0415
            DeviceTokenRepository as _DTR,  # noqa: N814
        )
        from pushrelay.repositories import (  # noqa: PLC0415
            NotificationRepository as _NR,  # noqa: N814
        )

        self.db: Database = db
        self.settings: PushrelaySettings = settings
        self.shutdown_coordinator = shutdown_coordinator
        self.metrics: MetricsCollector | None = metrics

        # Repositories
        self.notifications: NotificationRepository = _NR(db)
        self.attempts: DeliveryAttemptRepository = _DAR(db)
        self.device_tokens: DeviceTokenRepository = _DTR(db)

        # Gateways
        self.store: NotificationStore = _NS(self.notifications, self.attempts)
        if transport is None:
            from pushrelay.push.registry import load_push_transport  # noqa: PLC0415

            transport = load_push_transport(settings.push, self.device_tokens)
        self.transport: PushTransport = transport

        # Delivery components
        self.dedup_cache: DuplicateSuppressionCache = _DSC(
            settings.deduplication.cache_ttl_seconds,
        )
        self.batching: BatchingAggregator = _BA(settings.batching, metrics=metrics)
        self.retry: RetryScheduler = _RS(settings.retry, metrics=metrics)
        self.attempt_log: AttemptLogger = _AL(
            self.store,
            settings.attempt_log,
            metrics=metrics,
        )
        self.maintenance: MaintenanceWorker = _MW(
            self.dedup_cache,
            self.transport,
            settings,
            metrics=metrics,
            device_tokens=self.device_tokens,
        )

        self.orchestrator: DeliveryOrchestrator = _DO(
            self.store,
            self.transport,
            dedup_cache=self.dedup_cache,
            batching=self.batching,
            retry=self.retry,
            attempt_log=self.attempt_log,
            dedup_settings=settings.deduplication,
            maintenance=self.maintenance,
            metrics=metrics,
        )

        if shutdown_coordinator is not None:
            shutdown_coordinator.on_shutdown(self.shutdown)

        log.debug(
            "Container initialised (transport=%s, batching=%s, retry=%s)",
            type(self.transport).__name__,
            settings.batching.enabled,
            settings.retry.enabled,
        )

    def start(self) -> None:
        """Start background workers."""
        self.orchestrator.start()

    def submit(self, recipient_id: str, request: NotificationRequest) -> DeliveryResult:
        """Submit through the orchestrator, tracked as in-flight work."""
        if self.shutdown_coordinator is None:
            return self.orchestrator.submit(recipient_id, request)
        with self.shutdown_coordinator.track("submit"):
            return self.orchestrator.submit(recipient_id, request)

    def shutdown(self) -> None:
        """Flush batches (if configured), stop workers and drain the attempt log."""
        self.orchestrator.shutdown(flush_batches=self.settings.shutdown.flush_batches)
