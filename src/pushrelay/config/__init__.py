"""Configuration subsystem for pushrelay.

Public API::

    from pushrelay.config import get_config, PushrelayConfig

    # At startup:
    PushrelayConfig(config_file="config.yaml", schema_file="bundled")

    # Everywhere else:
    cfg = get_config()
    window = cfg.settings.batching.window_seconds
"""

from pushrelay.config.pushrelay_config import (
    ConfigValidationError,
    PushrelayConfig,
    get_config,
)
from pushrelay.config.settings import (
    AttemptLogSettings,
    BatchingSettings,
    DatabaseSettings,
    DeduplicationSettings,
    FcmSettings,
    LoggingSettings,
    MaintenanceSettings,
    PushrelaySettings,
    PushSettings,
    RetrySettings,
    ShutdownSettings,
)

__all__ = [
    "AttemptLogSettings",
    "BatchingSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "DeduplicationSettings",
    "FcmSettings",
    "LoggingSettings",
    "MaintenanceSettings",
    "PushSettings",
    "PushrelayConfig",
    "PushrelaySettings",
    "RetrySettings",
    "ShutdownSettings",
    "get_config",
]
