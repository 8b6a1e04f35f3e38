"""Maintenance worker: periodic sweeps and device-token upkeep.

Single daemon thread running each task on its own interval.  Each task
tracks its own ``last_run`` timestamp; a failure in one task does not
block the others.

Tasks:

- ``dedup_sweep``: purge expired duplicate-cache keys, every cache TTL.
- ``token_cache_sweep``: purge expired device-token cache entries held
  by the push transport.
- ``stale_token_check``: dry-run tokens unused for ``stale_token_days``
  through the transport; delete the invalid ones, touch the rest.
- ``inactive_token_cleanup``: delete deactivated tokens not used for
  ``inactive_token_days``.

The token tasks need the device-token repository and are skipped
without one.

Usage::

    worker = MaintenanceWorker(dedup_cache, transport, settings, device_tokens=repo)
    worker.start()
    ...
    worker.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from pushrelay.config.settings import PushrelaySettings
    from pushrelay.delivery.dedup import DuplicateSuppressionCache
    from pushrelay.metrics.collector import MetricsCollector
    from pushrelay.push.base import PushTransport
    from pushrelay.repositories.device_token import DeviceTokenRepository

log = logging.getLogger(__name__)


class _MaintenanceTask:
    """Internal: a named task with its own interval and last-run tracking."""

    __slots__ = ("_last_run", "consecutive_failures", "func", "interval_seconds", "name")

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], int],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._last_run: float | None = None
        self.consecutive_failures: int = 0

    def is_due(self, now: float) -> bool:
        if self._last_run is None:
            self._last_run = now
            return False
        return (now - self._last_run) >= self.interval_seconds

    def run(self, now: float) -> int:
        self._last_run = now
        return self.func()


class MaintenanceWorker:
    """Daemon thread that runs periodic sweeps on independent intervals."""

    def __init__(
        self,
        dedup_cache: DuplicateSuppressionCache | None,
        transport: PushTransport | None,
        settings: PushrelaySettings,
        metrics: MetricsCollector | None = None,
        *,
        device_tokens: DeviceTokenRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._tasks: list[_MaintenanceTask] = []
        self._transport = transport
        self._device_tokens = device_tokens
        self._maintenance = settings.maintenance
        self._wall_clock = wall_clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._metrics = metrics
        self._clock = clock
        self._loop_interval = settings.maintenance.loop_interval_seconds

        if dedup_cache is not None and settings.deduplication.enabled:
            self._tasks.append(
                _MaintenanceTask(
                    name="dedup_sweep",
                    interval_seconds=settings.deduplication.cache_ttl_seconds,
                    func=dedup_cache.sweep,
                )
            )

        if transport is not None:
            self._tasks.append(
                _MaintenanceTask(
                    name="token_cache_sweep",
                    interval_seconds=settings.maintenance.token_cache_sweep_seconds,
                    func=transport.purge_cache,
                )
            )

        if device_tokens is not None:
            if transport is not None:
                self._tasks.append(
                    _MaintenanceTask(
                        name="stale_token_check",
                        interval_seconds=settings.maintenance.stale_token_check_seconds,
                        func=self.check_stale_tokens,
                    )
                )
            self._tasks.append(
                _MaintenanceTask(
                    name="inactive_token_cleanup",
                    interval_seconds=settings.maintenance.inactive_token_cleanup_seconds,
                    func=self.cleanup_inactive_tokens,
                )
            )

    # -- token tasks ----------------------------------------------------------

    def check_stale_tokens(self) -> int:
        """Validate tokens unused for ``stale_token_days``.  Returns the number removed.

        Invalid tokens are deleted.  Valid ones have ``last_used_at``
        refreshed so the next run moves on to other tokens.
        """
        if self._device_tokens is None or self._transport is None:
            return 0
        if not self._transport.is_available():
            log.debug("Push transport unavailable, skipping stale token check")
            return 0

        cutoff = self._wall_clock() - timedelta(days=self._maintenance.stale_token_days)
        stale = self._device_tokens.find_stale_tokens(
            cutoff,
            limit=self._maintenance.stale_token_batch_size,
        )
        if not stale:
            return 0

        invalid = set(self._transport.validate_tokens(stale))
        removed = self._device_tokens.delete_tokens([t for t in stale if t in invalid])
        self._device_tokens.touch_last_used([t for t in stale if t not in invalid])
        log.info(
            "Stale token check: %d checked, %d invalid removed",
            len(stale),
            removed,
        )
        return removed

    def cleanup_inactive_tokens(self) -> int:
        """Delete deactivated tokens idle for ``inactive_token_days``."""
        if self._device_tokens is None:
            return 0
        cutoff = self._wall_clock() - timedelta(days=self._maintenance.inactive_token_days)
        removed = self._device_tokens.delete_inactive(cutoff)
        if removed:
            log.info("Removed %d inactive device token(s)", removed)
        return removed

    @property
    def task_names(self) -> list[str]:
        return [t.name for t in self._tasks]

    def start(self) -> None:
        """Start the background worker thread."""
        if not self._tasks:
            return
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="maintenance-worker",
            daemon=True,
        )
        self._thread.start()
        log.info("Maintenance worker started (tasks: %s)", self.task_names)

    def stop(self) -> None:
        """Signal the worker to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._loop_interval + 5)
            log.info("Maintenance worker stopped")

    def run_due(self, now: float | None = None) -> None:
        """Run every task whose interval has elapsed."""
        current = self._clock() if now is None else now
        for task in self._tasks:
            if self._stop_event.is_set():
                break
            if task.is_due(current):
                self._execute_task(task, current)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_due()
            self._stop_event.wait(timeout=self._loop_interval)

    def _execute_task(self, task: _MaintenanceTask, now: float) -> None:
        """Execute a single task with error tracking and metrics."""
        try:
            removed = task.run(now)
            task.consecutive_failures = 0
            if removed:
                log.debug("Maintenance task '%s' removed %d entries", task.name, removed)
            if self._metrics:
                self._metrics.increment(
                    "pushrelay_maintenance_runs_total",
                    labels={"task": task.name},
                )
        except Exception:
            task.consecutive_failures += 1
            log.exception(
                "Maintenance task '%s' failed (consecutive: %d)",
                task.name,
                task.consecutive_failures,
            )
            if self._metrics:
                self._metrics.increment(
                    "pushrelay_maintenance_errors_total",
                    labels={"task": task.name},
                )
