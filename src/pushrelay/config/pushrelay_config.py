"""pushrelay configuration loader built on ConfigKit.

Lifecycle::

    # 1. The process entry point creates the singleton (once, at startup)
    PushrelayConfig(config_file="/etc/pushrelay/config.yaml", schema_file="bundled")

    # 2. Any module retrieves it afterwards
    from pushrelay.config import get_config
    cfg = get_config()
    cfg.settings.retry.max_attempts  # typed access

    # 3. Extension / dynamic access
    cfg.get("push.transport_config.endpoint", default="http://localhost:9000")
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from pushrelay.config.settings import PushrelaySettings, build_settings
from pushrelay.core.types import NotificationType

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_CLASS_PATH_RE = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$",
)

_BUILTIN_TRANSPORTS = frozenset({"fcm", "disabled"})

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: PushrelayConfig | None = None


def get_config() -> PushrelayConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`PushrelayConfig` has not
    been created yet.
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "PushrelayConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


# ---------------------------------------------------------------------------
# Validation error collector
# ---------------------------------------------------------------------------


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(data: Any, path: str = "") -> None:  # noqa: ANN401
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class PushrelayConfig(ConfigKit):
    """Central configuration for the delivery engine.

    The JSON schema is bundled at ``config/schema.json``; callers pass
    ``schema_file="bundled"`` to satisfy the singleton guard.  After
    construction the typed settings tree is available at
    :pyattr:`settings`.
    """

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        """Initialise the configuration singleton.

        Parameters
        ----------
        config_file:
            Path to the YAML/JSON configuration file.
        schema_file:
            Ignored; the bundled schema is always used.  Must be
            truthy on first instantiation (:class:`ConfigKitMeta`).

        """
        global _instance  # noqa: PLW0603

        super().__init__(
            config_file=config_file,
            schema_file=_SCHEMA_PATH,
        )
        self._settings: PushrelaySettings = build_settings(self.data)
        _instance = self

    # -- lifecycle overrides ------------------------------------------------

    def _load(self) -> None:
        """Load config file then resolve ``${VAR}`` env-var references.

        Resolution runs before schema validation so substituted values
        are checked against the schema's type constraints.
        """
        super()._load()
        _resolve_env_vars(self._data)  # noqa: SLF001

    # -- typed access -------------------------------------------------------

    @property
    def settings(self) -> PushrelaySettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    # -- cross-field validation ---------------------------------------------

    def additional_checks(self) -> None:  # noqa: C901, PLR0912
        """Semantic & cross-field validation.

        Called automatically by ConfigKit **after** schema validation
        passes.
        """
        errors: list[str] = []
        warnings: list[str] = []

        dedup = self.data.get("deduplication") or {}
        batching = self.data.get("batching") or {}
        retry = self.data.get("retry") or {}
        push = self.data.get("push") or {}
        database = self.data.get("database") or {}

        # -- deduplication --
        cache_ttl = dedup.get("cache_ttl_seconds", 30)
        store_window = dedup.get("store_window_seconds", 30)
        if store_window < cache_ttl:
            warnings.append(
                f"deduplication.store_window_seconds ({store_window}) is shorter than "
                f"deduplication.cache_ttl_seconds ({cache_ttl}); restarts will widen "
                "the duplicate gap",
            )

        # -- batching --
        known_types = {t.value for t in NotificationType}
        for name in batching.get("batchable_types", []):
            if name not in known_types:
                errors.append(
                    f"batching.batchable_types contains unknown notification type {name!r}",
                )

        # -- retry --
        initial = retry.get("initial_delay_seconds", 2)
        max_delay = retry.get("max_delay_seconds", 30)
        if initial > max_delay:
            errors.append(
                f"retry.initial_delay_seconds ({initial}) must be <= "
                f"retry.max_delay_seconds ({max_delay})",
            )

        # -- push --
        transport = push.get("transport", "fcm")
        if transport.startswith("ext:"):
            class_path = transport[4:]
            if not _CLASS_PATH_RE.match(class_path):
                errors.append(
                    f"push.transport {transport!r} must be 'ext:' followed by a "
                    "fully qualified class path",
                )
        elif transport not in _BUILTIN_TRANSPORTS:
            errors.append(
                f"push.transport must be one of {sorted(_BUILTIN_TRANSPORTS)} "
                f"or 'ext:<class path>' (got {transport!r})",
            )
        if transport == "fcm":
            fcm = push.get("fcm") or {}
            if not fcm.get("credentials_file") and not os.environ.get(
                "GOOGLE_APPLICATION_CREDENTIALS",
            ):
                warnings.append(
                    "push.fcm.credentials_file is not set and "
                    "GOOGLE_APPLICATION_CREDENTIALS is empty; "
                    "push delivery will be unavailable",
                )
            elif fcm.get("credentials_file") and not Path(
                fcm["credentials_file"],
            ).is_file():
                warnings.append(
                    f"push.fcm.credentials_file {fcm['credentials_file']!r} does not exist; "
                    "push delivery will be unavailable",
                )

        # -- database --
        min_conn = database.get("min_connections", 2)
        max_conn = database.get("max_connections", 10)
        if min_conn > max_conn:
            errors.append(
                f"database.min_connections ({min_conn}) must be <= "
                f"database.max_connections ({max_conn})",
            )

        for w in warnings:
            log.warning("Config warning: %s", w)

        if errors:
            raise ConfigValidationError(errors)

    # -- helpers ------------------------------------------------------------

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        return f"<PushrelayConfig config_file={self._config_path}>"
