"""
Configuration settings management for snapkeep.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.snapkeep/config.yaml by default, with the
path overridable via the SNAPKEEP_CONFIG environment variable.

The encryption passphrase is never part of the configuration file. It is
read from SNAPKEEP_PASSPHRASE when a backup manager is built.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".snapkeep"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

PASSPHRASE_ENV_VAR = "SNAPKEEP_PASSPHRASE"

# Tracked entities in dependency order: referenced collections come first
DEFAULT_ENTITIES = [
    "users",
    "providers",
    "services",
    "bookings",
    "payments",
    "reviews",
    "notifications",
    "messages",
    "favorites",
]


@dataclass
class BackupConfig:
    """Backup and restore settings."""

    database_url: str = "sqlite:///data/app.db"
    backup_dir: str = "./backups"
    retention_days: int = 7
    encryption_enabled: bool = False
    compression_enabled: bool = True
    # None or 0 disables timeouts
    operation_timeout_seconds: float | None = 300
    entities: list[str] = field(default_factory=lambda: list(DEFAULT_ENTITIES))


@dataclass
class ScheduleConfig:
    """Recurring backup settings."""

    interval_hours: float = 24
    # 0 disables scheduled incremental backups
    incremental_interval_hours: float = 6


@dataclass
class OffsiteConfig:
    """Off-site (S3) copy settings. An empty bucket disables uploads."""

    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_prefix: str = "backups/"


@dataclass
class Settings:
    """
    Complete snapkeep configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with SNAPKEEP_.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Data store, backup directory and encoding settings.
        schedule: Recurring backup intervals.
        offsite: Optional S3 upload target.
    """

    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    offsite: OffsiteConfig = field(default_factory=OffsiteConfig)

    @property
    def backup_path(self) -> Path:
        return Path(self.backup.backup_dir).expanduser()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from SNAPKEEP_CONFIG environment variable if set,
    otherwise returns the default path (~/.snapkeep/config.yaml).

    Returns:
        Path to the configuration file.
    """
    env_path = os.environ.get("SNAPKEEP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def get_passphrase() -> str | None:
    """Return the encryption passphrase from the environment, if set."""
    return os.environ.get(PASSPHRASE_ENV_VAR) or None


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.
    A missing file is not an error; defaults are used.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses SNAPKEEP_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        try:
            settings = _apply_config_data(settings, config_data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid value in config file: {e}") from e

    try:
        settings = _apply_environment_overrides(settings)
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment override: {e}") from e

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_timeout(value: Any) -> float | None:
    if value is None or value == "":
        return None
    timeout = float(value)
    return timeout if timeout > 0 else None


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    snapkeep_data = data.get("snapkeep") or {}

    if "log_level" in snapkeep_data:
        settings.log_level = str(snapkeep_data["log_level"]).upper()

    backup = data.get("backup") or {}
    if "database_url" in backup:
        settings.backup.database_url = str(backup["database_url"])
    if "backup_dir" in backup:
        settings.backup.backup_dir = str(backup["backup_dir"])
    if "retention_days" in backup:
        settings.backup.retention_days = int(backup["retention_days"])
    if "encryption_enabled" in backup:
        settings.backup.encryption_enabled = _parse_bool(backup["encryption_enabled"])
    if "compression_enabled" in backup:
        settings.backup.compression_enabled = _parse_bool(backup["compression_enabled"])
    if "operation_timeout_seconds" in backup:
        settings.backup.operation_timeout_seconds = _parse_timeout(
            backup["operation_timeout_seconds"]
        )
    if "entities" in backup:
        settings.backup.entities = [str(e) for e in backup["entities"] or []]

    schedule = data.get("schedule") or {}
    if "interval_hours" in schedule:
        settings.schedule.interval_hours = float(schedule["interval_hours"])
    if "incremental_interval_hours" in schedule:
        settings.schedule.incremental_interval_hours = float(
            schedule["incremental_interval_hours"]
        )

    offsite = data.get("offsite") or {}
    if "s3_bucket" in offsite:
        settings.offsite.s3_bucket = str(offsite["s3_bucket"] or "")
    if "s3_region" in offsite:
        settings.offsite.s3_region = str(offsite["s3_region"])
    if "s3_prefix" in offsite:
        settings.offsite.s3_prefix = str(offsite["s3_prefix"] or "")

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "SNAPKEEP_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "SNAPKEEP_DATABASE_URL": ("backup.database_url", str),
        "SNAPKEEP_BACKUP_DIR": ("backup.backup_dir", str),
        "SNAPKEEP_RETENTION_DAYS": ("backup.retention_days", int),
        "SNAPKEEP_ENCRYPTION": ("backup.encryption_enabled", _parse_bool),
        "SNAPKEEP_COMPRESSION": ("backup.compression_enabled", _parse_bool),
        "SNAPKEEP_SCHEDULE_HOURS": ("schedule.interval_hours", float),
        "SNAPKEEP_S3_BUCKET": ("offsite.s3_bucket", str),
        "SNAPKEEP_S3_REGION": ("offsite.s3_region", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if not settings.backup.database_url:
        raise ConfigurationError("database_url must not be empty")

    if not settings.backup.backup_dir:
        raise ConfigurationError("backup_dir must not be empty")

    if settings.backup.retention_days < 1:
        raise ConfigurationError("retention_days must be at least 1")

    if settings.schedule.interval_hours <= 0:
        raise ConfigurationError("interval_hours must be greater than 0")

    if settings.schedule.incremental_interval_hours < 0:
        raise ConfigurationError("incremental_interval_hours must not be negative")

    entities = settings.backup.entities
    if not entities:
        raise ConfigurationError("At least one entity must be tracked")
    duplicates = sorted({e for e in entities if entities.count(e) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate entities: {', '.join(duplicates)}")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "snapkeep": {
            "log_level": settings.log_level,
        },
        "backup": {
            "database_url": settings.backup.database_url,
            "backup_dir": settings.backup.backup_dir,
            "retention_days": settings.backup.retention_days,
            "encryption_enabled": settings.backup.encryption_enabled,
            "compression_enabled": settings.backup.compression_enabled,
            "operation_timeout_seconds": settings.backup.operation_timeout_seconds,
            "entities": list(settings.backup.entities),
        },
        "schedule": {
            "interval_hours": settings.schedule.interval_hours,
            "incremental_interval_hours": settings.schedule.incremental_interval_hours,
        },
        "offsite": {
            "s3_bucket": settings.offsite.s3_bucket,
            "s3_region": settings.offsite.s3_region,
            "s3_prefix": settings.offsite.s3_prefix,
        },
    }
