"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation; these builders
are what the application actually reads.

Access pattern::

    from pushrelay.config import get_config

    retry = get_config().settings.retry
    print(retry.initial_delay_seconds, retry.max_attempts)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

_DEFAULT_BATCHABLE_TYPES = ("CHAT_MESSAGE", "APPLICATION_CREATED")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format)."""

    level: str
    format: str


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """PostgreSQL connection and pool settings."""

    host: str
    port: int
    database: str
    user: str
    password: str
    sslmode: str
    min_connections: int
    max_connections: int
    connection_timeout: float
    auto_setup: bool


def _build_database(data: dict | None) -> DatabaseSettings:
    d = data or {}
    return DatabaseSettings(
        host=d.get("host", "localhost"),
        port=d.get("port", 5432),
        database=d["database"],
        user=d["user"],
        password=d.get("password", ""),
        sslmode=d.get("sslmode", "prefer"),
        min_connections=d.get("min_connections", 2),
        max_connections=d.get("max_connections", 10),
        connection_timeout=d.get("connection_timeout", 30.0),
        auto_setup=d.get("auto_setup", False),
    )


# ---------------------------------------------------------------------------
# Duplicate suppression
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeduplicationSettings:
    """In-memory TTL cache and durable trailing-window check."""

    enabled: bool
    cache_ttl_seconds: float
    store_window_seconds: float


def _build_deduplication(data: dict | None) -> DeduplicationSettings:
    d = data or {}
    return DeduplicationSettings(
        enabled=d.get("enabled", True),
        cache_ttl_seconds=d.get("cache_ttl_seconds", 30.0),
        store_window_seconds=d.get("store_window_seconds", 30.0),
    )


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchingSettings:
    """Per-recipient aggregation window for batchable types."""

    enabled: bool
    window_seconds: float
    max_batch_size: int
    batchable_types: tuple[str, ...]


def _build_batching(data: dict | None) -> BatchingSettings:
    d = data or {}
    return BatchingSettings(
        enabled=d.get("enabled", True),
        window_seconds=d.get("window_seconds", 5.0),
        max_batch_size=d.get("max_batch_size", 10),
        batchable_types=tuple(d.get("batchable_types", _DEFAULT_BATCHABLE_TYPES)),
    )


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrySettings:
    """Exponential-backoff retry of failed deliveries."""

    enabled: bool
    initial_delay_seconds: float
    max_delay_seconds: float
    max_attempts: int
    tick_seconds: float


def _build_retry(data: dict | None) -> RetrySettings:
    d = data or {}
    return RetrySettings(
        enabled=d.get("enabled", True),
        initial_delay_seconds=d.get("initial_delay_seconds", 2.0),
        max_delay_seconds=d.get("max_delay_seconds", 30.0),
        max_attempts=d.get("max_attempts", 5),
        tick_seconds=d.get("tick_seconds", 1.0),
    )


# ---------------------------------------------------------------------------
# Push transport
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FcmSettings:
    """Firebase Cloud Messaging credentials and message defaults."""

    credentials_file: str | None
    project_id: str | None
    app_name: str
    android_channel_id: str
    default_click_action: str
    token_cache_ttl_seconds: float


@dataclass(frozen=True)
class PushSettings:
    """Push transport selection and circuit breaker."""

    transport: str
    fcm: FcmSettings
    circuit_breaker_failure_threshold: int
    circuit_breaker_recovery_timeout: float
    transport_config: dict[str, Any]


def _build_push(data: dict | None) -> PushSettings:
    d = data or {}
    f = d.get("fcm") or {}
    return PushSettings(
        transport=d.get("transport", "fcm"),
        fcm=FcmSettings(
            credentials_file=f.get("credentials_file"),
            project_id=f.get("project_id"),
            app_name=f.get("app_name", "pushrelay"),
            android_channel_id=f.get("android_channel_id", "pushrelay_notifications"),
            default_click_action=f.get("default_click_action", "FLUTTER_NOTIFICATION_CLICK"),
            token_cache_ttl_seconds=f.get("token_cache_ttl_seconds", 60.0),
        ),
        circuit_breaker_failure_threshold=d.get("circuit_breaker_failure_threshold", 0),
        circuit_breaker_recovery_timeout=d.get("circuit_breaker_recovery_timeout", 30.0),
        transport_config=dict(d.get("transport_config") or {}),
    )


# ---------------------------------------------------------------------------
# Attempt log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttemptLogSettings:
    """Background writer for delivery-attempt audit rows."""

    max_workers: int
    shutdown_timeout_seconds: float


def _build_attempt_log(data: dict | None) -> AttemptLogSettings:
    d = data or {}
    return AttemptLogSettings(
        max_workers=d.get("max_workers", 2),
        shutdown_timeout_seconds=d.get("shutdown_timeout_seconds", 10.0),
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MaintenanceSettings:
    """Periodic sweeps run by the maintenance worker.

    Token checks compare against ``last_used_at``; ``*_days`` are ages.
    """

    loop_interval_seconds: float
    token_cache_sweep_seconds: float
    stale_token_check_seconds: float
    stale_token_days: int
    stale_token_batch_size: int
    inactive_token_cleanup_seconds: float
    inactive_token_days: int


def _build_maintenance(data: dict | None) -> MaintenanceSettings:
    d = data or {}
    return MaintenanceSettings(
        loop_interval_seconds=d.get("loop_interval_seconds", 5.0),
        token_cache_sweep_seconds=d.get("token_cache_sweep_seconds", 60.0),
        stale_token_check_seconds=d.get("stale_token_check_seconds", 3600.0),
        stale_token_days=d.get("stale_token_days", 7),
        stale_token_batch_size=d.get("stale_token_batch_size", 100),
        inactive_token_cleanup_seconds=d.get("inactive_token_cleanup_seconds", 86400.0),
        inactive_token_days=d.get("inactive_token_days", 30),
    )


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShutdownSettings:
    graceful_timeout_seconds: int
    flush_batches: bool


def _build_shutdown(data: dict | None) -> ShutdownSettings:
    d = data or {}
    return ShutdownSettings(
        graceful_timeout_seconds=d.get("graceful_timeout_seconds", 30),
        flush_batches=d.get("flush_batches", True),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PushrelaySettings:
    logging: LoggingSettings
    database: DatabaseSettings
    deduplication: DeduplicationSettings
    batching: BatchingSettings
    retry: RetrySettings
    push: PushSettings
    attempt_log: AttemptLogSettings
    maintenance: MaintenanceSettings
    shutdown: ShutdownSettings


def build_settings(data: dict) -> PushrelaySettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`PushrelayConfig` initialization after
    schema validation and environment-variable resolution.
    """
    return PushrelaySettings(
        logging=_build_logging(data.get("logging")),
        database=_build_database(data.get("database")),
        deduplication=_build_deduplication(data.get("deduplication")),
        batching=_build_batching(data.get("batching")),
        retry=_build_retry(data.get("retry")),
        push=_build_push(data.get("push")),
        attempt_log=_build_attempt_log(data.get("attempt_log")),
        maintenance=_build_maintenance(data.get("maintenance")),
        shutdown=_build_shutdown(data.get("shutdown")),
    )
