"""config/ — Runtime settings (config.yaml + environment)."""

from compliance_scheduler.config.settings import (
    ConfigError,
    EngineConfig,
    LoggingConfig,
    Settings,
    TelemetryConfig,
    get_settings,
    load_settings,
    reset_settings,
)

__all__ = [
    "ConfigError",
    "EngineConfig",
    "LoggingConfig",
    "Settings",
    "TelemetryConfig",
    "get_settings",
    "load_settings",
    "reset_settings",
]
