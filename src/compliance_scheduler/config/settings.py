"""
config/settings.py — Compliance Scheduler Runtime Settings

Merges config.yaml (defaults/structure) with environment variables and .env.
Every section is a pydantic model, so bad values fail at load time.

  - EngineConfig rejects a non-positive kill grace or output cap at parse time
  - TelemetryConfig validates the statsd port range and metric prefix
  - LoggingConfig normalises the level name
  - validate_all() checks what field validators cannot (directories on
    disk, cross-field rules) and raises one ConfigError naming them all
  - load_settings() respects the COMPLIANCE_SCHEDULER_CONFIG env var as a
    fallback when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import re
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_ENV_VAR = "COMPLIANCE_SCHEDULER_CONFIG"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Startup validation found at least one problem; the message lists them."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_METRIC_PREFIX_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class EngineConfig(BaseModel):
    modules_dir: str = "./modules"
    source_id: str = "compliance-scheduler"
    machine_id: str = ""
    customer_id: str = ""
    send_failed_results: bool = True
    kill_grace_seconds: float = 2.0
    max_output_bytes: int = 1_000_000
    default_future_runs: int = 10

    @field_validator("kill_grace_seconds")
    @classmethod
    def _positive_grace(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("engine.kill_grace_seconds must be > 0")
        return v

    @field_validator("max_output_bytes")
    @classmethod
    def _positive_output_cap(cls, v: int) -> int:
        if v < 1024:
            raise ValueError("engine.max_output_bytes must be >= 1024")
        return v

    @field_validator("default_future_runs")
    @classmethod
    def _positive_runs(cls, v: int) -> int:
        if v < 1:
            raise ValueError("engine.default_future_runs must be >= 1")
        return v


class TelemetryConfig(BaseModel):
    statsd_enabled: bool = False
    statsd_host: str = "127.0.0.1"
    statsd_port: int = 8125
    metric_prefix: str = "compliance"

    @field_validator("statsd_port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("telemetry.statsd_port must be between 1 and 65535")
        return v

    @field_validator("metric_prefix")
    @classmethod
    def _valid_prefix(cls, v: str) -> str:
        if not _METRIC_PREFIX_RE.match(v):
            raise ValueError(
                f"telemetry.metric_prefix '{v}' is not valid. Use letters, "
                f"digits, '_', '.' or '-' (no ':' or '|')."
            )
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Compliance scheduler runtime settings.

    Sources, first one wins:
      1. config.yaml sections passed to load_settings()
      2. Environment variables (ENGINE__MODULES_DIR=...)
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("engine", mode="before")
    @classmethod
    def _coerce_engine(cls, v: Any) -> Any:
        return EngineConfig(**v) if isinstance(v, dict) else v

    @field_validator("telemetry", mode="before")
    @classmethod
    def _coerce_telemetry(cls, v: Any) -> Any:
        return TelemetryConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Shortcuts ------------------------------------------------------------

    @property
    def modules_dir(self) -> Path:
        return Path(self.engine.modules_dir).expanduser()

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Check the loaded settings against the machine they will run on.

        Field validators catch type/value errors at parse time; this catches
        the problems they cannot see (missing directories, cross-field
        combinations).
        """
        errors: list[str] = []

        # ── Modules directory exists ─────────────────────────────────────────
        if not self.modules_dir.is_dir():
            errors.append(
                f"engine.modules_dir '{self.engine.modules_dir}' does not exist "
                f"or is not a directory."
            )

        # ── Source id is used as the event container fallback ────────────────
        if not self.engine.source_id.strip():
            errors.append("engine.source_id must not be empty.")

        # ── Statsd needs a host when enabled ─────────────────────────────────
        if self.telemetry.statsd_enabled and not self.telemetry.statsd_host.strip():
            errors.append(
                "telemetry.statsd_enabled is true but telemetry.statsd_host is empty."
            )

        # ── Log rotation ─────────────────────────────────────────────────────
        if self.logging.max_file_size_mb < 1:
            errors.append("logging.max_file_size_mb must be >= 1.")
        if self.logging.backup_count < 0:
            errors.append("logging.backup_count must be >= 0.")

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nCompliance scheduler startup failed — {len(errors)} "
                f"configuration problem(s) found:\n\n{numbered}\n\n"
                f"Correct config/config.yaml or the matching SECTION__FIELD variables "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"engine", "telemetry", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Which config file to read:
      1. the --config path, when given
      2. $COMPLIANCE_SCHEDULER_CONFIG
      3. config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default config
    path on first use.

    Thread-safe: guarded by _singleton_lock to prevent double-initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                   if k in _KNOWN_SECTIONS}
            )
    return _singleton


def reset_settings() -> None:
    """Drop the singleton (tests, config reload)."""
    global _singleton
    with _singleton_lock:
        _singleton = None
