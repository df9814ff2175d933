"""Configuration management with validation.

All settings come from environment variables and are validated when the
Config is built, so a misconfigured process fails at start-up rather than on
its first reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta

from .admission import DriftSettings


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DRIFT_CONTROLLER_INTERVAL_SECONDS = 300
DEFAULT_DRIFT_INTERVAL_SECONDS = 3 * 60 * 60
DEFAULT_DRIFT_THRESHOLD = 0.10

DEFAULT_MAX_CONCURRENT_RECONCILES = 10
MAX_CONCURRENT_RECONCILES_LIMIT = 100

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 300

# Limit on manifest files read by the loader
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

CONTROLLERS = ("cloudresource", "drift", "plan", "provider", "revision")

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Drift detection
    drift_controller_interval_seconds: int = DEFAULT_DRIFT_CONTROLLER_INTERVAL_SECONDS
    drift_interval_seconds: int = DEFAULT_DRIFT_INTERVAL_SECONDS
    drift_threshold: float = DEFAULT_DRIFT_THRESHOLD

    # Workers
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    reconcile_timeout_seconds: int = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    # Scope; empty means every namespace
    watch_namespaces: tuple[str, ...] = ()

    # Controllers to run
    enabled_controllers: frozenset[str] = field(default_factory=lambda: frozenset(CONTROLLERS))

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.drift_controller_interval_seconds <= 0:
            errors.append("DRIFT_CONTROLLER_INTERVAL must be greater than 0")

        if self.drift_interval_seconds <= 0:
            errors.append("DRIFT_INTERVAL must be greater than 0")

        if not 0 <= self.drift_threshold <= 1:
            errors.append(f"DRIFT_THRESHOLD must be between 0 and 1: {self.drift_threshold}")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if self.reconcile_timeout_seconds <= 0:
            errors.append("RECONCILE_TIMEOUT must be greater than 0")

        unknown = sorted(self.enabled_controllers - set(CONTROLLERS))
        if unknown:
            errors.append(f"Unknown controllers {unknown}; must be among {list(CONTROLLERS)}")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def drift_settings(self) -> DriftSettings:
        return DriftSettings(
            check_interval=timedelta(seconds=self.drift_controller_interval_seconds),
            drift_interval=timedelta(seconds=self.drift_interval_seconds),
            threshold=self.drift_threshold,
        )

    def is_enabled(self, controller: str) -> bool:
        return controller in self.enabled_controllers

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DRIFT_CONTROLLER_INTERVAL: Seconds between drift checks of a configuration (default: 300)
            DRIFT_INTERVAL: Minimum seconds since the last plan or apply before drift runs (default: 10800)
            DRIFT_THRESHOLD: Largest share of configurations drifting at once (default: 0.10)
            MAX_CONCURRENT_RECONCILES: Workers per controller (default: 10)
            RECONCILE_TIMEOUT: Deadline of a single reconciliation in seconds (default: 300)
            WATCH_NAMESPACES: Comma separated namespaces to watch (default: all)
            ENABLE_<NAME>_CONTROLLER: "false" disables a controller, e.g.
                ENABLE_DRIFT_CONTROLLER=false (default: all enabled)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        enabled = frozenset(
            name for name in CONTROLLERS if get_bool(f"ENABLE_{name.upper()}_CONTROLLER", True)
        )

        return cls(
            drift_controller_interval_seconds=get_int(
                "DRIFT_CONTROLLER_INTERVAL", DEFAULT_DRIFT_CONTROLLER_INTERVAL_SECONDS
            ),
            drift_interval_seconds=get_int("DRIFT_INTERVAL", DEFAULT_DRIFT_INTERVAL_SECONDS),
            drift_threshold=get_float("DRIFT_THRESHOLD", DEFAULT_DRIFT_THRESHOLD),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            reconcile_timeout_seconds=get_int(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            watch_namespaces=get_list("WATCH_NAMESPACES"),
            enabled_controllers=enabled,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
