"""
Configuration settings management for Checkpoint.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.checkpoint/config.yaml by default, with the
path overridable via the CHECKPOINT_CONFIG environment variable. Settings
objects are immutable; components receive the section they need through
their constructors and never read the environment themselves.
"""

from __future__ import annotations

import dataclasses
import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_HOME_DIR = Path.home() / ".checkpoint"
DEFAULT_CONFIG_FILE = DEFAULT_HOME_DIR / "config.yaml"

DEFAULT_EXCLUDES = (
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "*.pyc",
    ".DS_Store",
    "*.log",
    ".cache",
    "dist",
    "build",
)

# "22-07" or "22:00-07:30"
QUIET_HOURS_PATTERN = re.compile(
    r"^\s*(\d{1,2})(?::(\d{2}))?\s*-\s*(\d{1,2})(?::(\d{2}))?\s*$"
)

VALID_PERIODS = {"hour", "day", "week", "month"}
VALID_SEVERITIES = {"none", "low", "medium", "high", "critical"}


@dataclass(frozen=True)
class DatabaseConfig:
    """
    A database to dump on every run.

    Attributes:
        name: Label used for the dump file name.
        type: "sqlite" to use the sqlite3 backup API, "command" to run a
            dump utility and capture its standard output.
        path: Database file (sqlite only).
        command: Dump command as an argument list (command only).
        timeout_seconds: Upper bound on a command dump.
        extension: File extension of the dump before compression.
    """

    name: str
    type: str = "sqlite"
    path: str = ""
    command: tuple[str, ...] = ()
    timeout_seconds: float = 300.0
    extension: str = "sql"


@dataclass(frozen=True)
class CopyConfig:
    """Retry policy for file copies and database dumps."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass(frozen=True)
class TierConfig:
    """
    One retention tier.

    A snapshot belongs to the first tier whose max_age_hours exceeds its
    age. The last tier normally has no upper bound (None).
    """

    name: str
    period: str
    keep: int
    max_age_hours: float | None = None


DEFAULT_TIERS = (
    TierConfig(name="hourly", period="hour", keep=24, max_age_hours=24),
    TierConfig(name="daily", period="day", keep=30, max_age_hours=30 * 24),
    TierConfig(name="weekly", period="week", keep=52, max_age_hours=365 * 24),
    TierConfig(name="monthly", period="month", keep=12, max_age_hours=None),
)


@dataclass(frozen=True)
class RetentionConfig:
    """Retention policy settings."""

    enabled: bool = True
    tiers: tuple[TierConfig, ...] = DEFAULT_TIERS
    representative: str = "newest"
    min_keep: int = 3
    max_total_bytes: int | None = None
    never_delete: tuple[str, ...] = ()
    abandon_after_hours: float = 24.0


@dataclass(frozen=True)
class NotificationConfig:
    """Notification and escalation settings."""

    enabled: bool = True
    on_error: bool = True
    on_success: bool = False
    on_warning: bool = True
    backend: str = "auto"
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0
    quiet_hours: str = ""
    quiet_hours_bypass: tuple[str, ...] = ("critical",)
    # Overrides the per-severity reminder cadence when set
    escalation_hours: float | None = None


@dataclass(frozen=True)
class StorageConfig:
    """Disk usage thresholds checked before each run."""

    check_enabled: bool = True
    warning_percent: int = 80
    critical_percent: int = 90


@dataclass(frozen=True)
class VerificationConfig:
    """Post-backup verification mode: none, quick or full."""

    after_backup: str = "quick"


@dataclass(frozen=True)
class CloudConfig:
    """Remote copy settings used for upload and cloud verification."""

    enabled: bool = False
    backend: str = "rclone"
    remote: str = ""
    path: str = ""
    listing_url: str = ""
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ScheduleConfig:
    """Daemon cycle interval."""

    interval_minutes: int = 60


@dataclass(frozen=True)
class Settings:
    """
    Complete Checkpoint configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with CHECKPOINT_.

    Attributes:
        project_name: Backup target id. Defaults to the project directory name.
        project_dir: Directory whose files are backed up.
        backup_dir: Directory holding snapshots and the hash cache.
        home_dir: Directory for state, locks and logs.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        exclude: Glob patterns of files and directories to skip.
        databases: Databases dumped on every run.
    """

    project_name: str = ""
    project_dir: str = ""
    backup_dir: str = ""
    home_dir: str = str(DEFAULT_HOME_DIR)
    log_level: str = "INFO"
    exclude: tuple[str, ...] = DEFAULT_EXCLUDES
    lock_backend: str = "directory"

    databases: tuple[DatabaseConfig, ...] = ()
    copy: CopyConfig = field(default_factory=CopyConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    @property
    def target(self) -> str:
        """Target id used for locks, state and manifests."""
        if self.project_name:
            return self.project_name
        if self.project_dir:
            return Path(self.project_dir).expanduser().name
        return "default"

    @property
    def state_dir(self) -> Path:
        return Path(self.home_dir).expanduser() / "state"

    @property
    def lock_dir(self) -> Path:
        return Path(self.home_dir).expanduser() / "locks"

    @property
    def log_dir(self) -> Path:
        return Path(self.home_dir).expanduser() / "logs"

    def require_paths(self) -> None:
        """
        Check that a backup target is configured.

        Raises:
            ConfigurationError: If project_dir or backup_dir is missing.
        """
        if not self.project_dir:
            raise ConfigurationError(
                "project_dir is not set. Add it to the config file or set CHECKPOINT_PROJECT_DIR."
            )
        if not self.backup_dir:
            raise ConfigurationError(
                "backup_dir is not set. Add it to the config file or set CHECKPOINT_BACKUP_DIR."
            )


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path(environ: Mapping[str, str] | None = None) -> Path:
    """
    Get the configuration file path.

    Returns the path from CHECKPOINT_CONFIG environment variable if set,
    otherwise returns the default path (~/.checkpoint/config.yaml).
    """
    if environ is None:
        environ = os.environ
    env_path = environ.get("CHECKPOINT_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses CHECKPOINT_CONFIG environment variable or default path.
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if environ is None:
        environ = os.environ
    if config_path is None:
        config_path = get_config_path(environ)

    config_data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

    config_data = _apply_environment_overrides(config_data, environ)
    settings = _settings_from_dict(config_data)

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

    config_data = settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    return value


def _build(cls: type, values: Mapping[str, Any], converters: Mapping[str, Callable[[Any], Any]]) -> Any:
    """Build a config dataclass from known keys, ignoring unknown ones."""
    known = {f.name for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            continue
        converter = converters.get(key)
        try:
            kwargs[key] = converter(value) if converter else value
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {cls.__name__}.{key}: {value!r}") from e
    return cls(**kwargs)


def _to_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(v) for v in value)


def _to_command(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(value.split())
    return tuple(str(v) for v in value)


def _to_optional_int(value: Any) -> int | None:
    return None if value in (None, "", 0) else int(value)


def _to_optional_float(value: Any) -> float | None:
    return None if value in (None, "") else float(value)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def _settings_from_dict(data: Mapping[str, Any]) -> Settings:
    """Build Settings from parsed YAML data."""
    main = _section(data, "checkpoint")

    databases = []
    raw_databases = data.get("databases") or []
    if not isinstance(raw_databases, list):
        raise ConfigurationError("Section 'databases' must be a list")
    for index, entry in enumerate(raw_databases):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"databases[{index}] must be a mapping")
        entry = dict(entry)
        entry.setdefault("name", Path(str(entry.get("path", ""))).stem or f"db{index + 1}")
        databases.append(
            _build(
                DatabaseConfig,
                entry,
                {
                    "name": str,
                    "type": lambda v: str(v).lower(),
                    "path": str,
                    "command": _to_command,
                    "timeout_seconds": float,
                    "extension": str,
                },
            )
        )

    retention_data = _section(data, "retention")
    tiers = DEFAULT_TIERS
    if "tiers" in retention_data:
        raw_tiers = retention_data["tiers"]
        if not isinstance(raw_tiers, list) or not raw_tiers:
            raise ConfigurationError("retention.tiers must be a non-empty list")
        tiers = tuple(
            _build(
                TierConfig,
                tier,
                {
                    "name": str,
                    "period": lambda v: str(v).lower(),
                    "keep": int,
                    "max_age_hours": _to_optional_float,
                },
            )
            for tier in raw_tiers
        )
    retention_values = {k: v for k, v in retention_data.items() if k != "tiers"}
    retention = dataclasses.replace(
        _build(
            RetentionConfig,
            retention_values,
            {
                "enabled": _parse_bool,
                "representative": lambda v: str(v).lower(),
                "min_keep": int,
                "max_total_bytes": _to_optional_int,
                "never_delete": _to_tuple,
                "abandon_after_hours": float,
            },
        ),
        tiers=tiers,
    )

    return Settings(
        project_name=str(main.get("project_name", "")),
        project_dir=str(main.get("project_dir", "")),
        backup_dir=str(main.get("backup_dir", "")),
        home_dir=str(main.get("home_dir", DEFAULT_HOME_DIR)),
        log_level=str(main.get("log_level", "INFO")).upper(),
        exclude=_to_tuple(main["exclude"]) if "exclude" in main else DEFAULT_EXCLUDES,
        lock_backend=str(main.get("lock_backend", "directory")).lower(),
        databases=tuple(databases),
        copy=_build(
            CopyConfig,
            _section(data, "copy"),
            {
                "max_attempts": int,
                "base_delay_seconds": float,
                "max_delay_seconds": float,
            },
        ),
        retention=retention,
        notifications=_build(
            NotificationConfig,
            _section(data, "notifications"),
            {
                "enabled": _parse_bool,
                "on_error": _parse_bool,
                "on_success": _parse_bool,
                "on_warning": _parse_bool,
                "backend": lambda v: str(v).lower(),
                "webhook_url": str,
                "webhook_timeout_seconds": float,
                "quiet_hours": lambda v: "" if v is None else str(v),
                "quiet_hours_bypass": lambda v: tuple(s.lower() for s in _to_tuple(v)),
                "escalation_hours": _to_optional_float,
            },
        ),
        storage=_build(
            StorageConfig,
            _section(data, "storage"),
            {
                "check_enabled": _parse_bool,
                "warning_percent": int,
                "critical_percent": int,
            },
        ),
        verification=_build(
            VerificationConfig,
            _section(data, "verification"),
            {"after_backup": lambda v: str(v).lower()},
        ),
        cloud=_build(
            CloudConfig,
            _section(data, "cloud"),
            {
                "enabled": _parse_bool,
                "backend": lambda v: str(v).lower(),
                "remote": str,
                "path": str,
                "listing_url": str,
                "timeout_seconds": float,
            },
        ),
        schedule=_build(
            ScheduleConfig,
            _section(data, "schedule"),
            {"interval_minutes": int},
        ),
    )


def _apply_environment_overrides(
    data: dict[str, Any], environ: Mapping[str, str]
) -> dict[str, Any]:
    """Apply environment variable overrides to raw configuration data."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "CHECKPOINT_PROJECT_NAME": ("checkpoint.project_name", str),
        "CHECKPOINT_PROJECT_DIR": ("checkpoint.project_dir", str),
        "CHECKPOINT_BACKUP_DIR": ("checkpoint.backup_dir", str),
        "CHECKPOINT_HOME": ("checkpoint.home_dir", str),
        "CHECKPOINT_LOG_LEVEL": ("checkpoint.log_level", str),
        "CHECKPOINT_NOTIFICATIONS": ("notifications.enabled", str),
        "CHECKPOINT_NOTIFY_BACKEND": ("notifications.backend", str),
        "CHECKPOINT_WEBHOOK_URL": ("notifications.webhook_url", str),
        "CHECKPOINT_QUIET_HOURS": ("notifications.quiet_hours", str),
        "CHECKPOINT_ESCALATION_HOURS": ("notifications.escalation_hours", str),
        "CHECKPOINT_VERIFY": ("verification.after_backup", str),
        "CHECKPOINT_MAX_ATTEMPTS": ("copy.max_attempts", str),
        "CHECKPOINT_INTERVAL_MINUTES": ("schedule.interval_minutes", str),
    }

    data = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}

    for env_var, (key_path, converter) in env_map.items():
        value = environ.get(env_var)
        if value is not None:
            _set_nested_key(data, key_path, converter(value))

    return data


def _set_nested_key(data: dict[str, Any], path: str, value: Any) -> None:
    """Set a nested key on a dict using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        if not isinstance(data.get(part), dict):
            data[part] = {}
        data = data[part]
    data[parts[-1]] = value


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

    if settings.lock_backend not in ("directory", "fcntl"):
        raise ConfigurationError(
            f"Invalid lock_backend: {settings.lock_backend}. Must be directory or fcntl."
        )

    for db in settings.databases:
        if db.type not in ("sqlite", "command"):
            raise ConfigurationError(
                f"Invalid database type for {db.name}: {db.type}. Must be sqlite or command."
            )
        if db.type == "sqlite" and not db.path:
            raise ConfigurationError(f"Database {db.name} needs a path")
        if db.type == "command" and not db.command:
            raise ConfigurationError(f"Database {db.name} needs a command")
        if db.timeout_seconds <= 0:
            raise ConfigurationError(f"Database {db.name} timeout_seconds must be positive")

    if settings.copy.max_attempts < 1:
        raise ConfigurationError("copy.max_attempts must be at least 1")
    if settings.copy.base_delay_seconds < 0 or settings.copy.max_delay_seconds < 0:
        raise ConfigurationError("copy delays cannot be negative")

    retention = settings.retention
    if retention.representative not in ("newest", "oldest"):
        raise ConfigurationError(
            f"Invalid retention.representative: {retention.representative}. "
            "Must be newest or oldest."
        )
    if retention.min_keep < 0:
        raise ConfigurationError("retention.min_keep cannot be negative")
    if retention.abandon_after_hours <= 0:
        raise ConfigurationError("retention.abandon_after_hours must be positive")
    seen_names = set()
    for index, tier in enumerate(retention.tiers):
        if tier.period not in VALID_PERIODS:
            raise ConfigurationError(
                f"Invalid period for tier {tier.name}: {tier.period}. "
                f"Must be one of: {', '.join(sorted(VALID_PERIODS))}"
            )
        if tier.keep < 1:
            raise ConfigurationError(f"Tier {tier.name} keep must be at least 1")
        if tier.name in seen_names:
            raise ConfigurationError(f"Duplicate retention tier: {tier.name}")
        seen_names.add(tier.name)
        if tier.max_age_hours is None and index != len(retention.tiers) - 1:
            raise ConfigurationError("Only the last retention tier may omit max_age_hours")

    notifications = settings.notifications
    if notifications.backend not in ("auto", "macos", "linux", "webhook", "log"):
        raise ConfigurationError(
            f"Invalid notifications.backend: {notifications.backend}. "
            "Must be one of: auto, macos, linux, webhook, log"
        )
    if notifications.backend == "webhook" and not notifications.webhook_url:
        raise ConfigurationError("notifications.webhook_url is required for the webhook backend")
    if notifications.quiet_hours:
        match = QUIET_HOURS_PATTERN.match(notifications.quiet_hours)
        parts = [int(g or 0) for g in match.groups()] if match else []
        if not parts or parts[0] > 23 or parts[2] > 23 or parts[1] > 59 or parts[3] > 59:
            raise ConfigurationError(
                f"Invalid quiet_hours: {notifications.quiet_hours}. Use HH-HH or HH:MM-HH:MM."
            )
    unknown = set(notifications.quiet_hours_bypass) - VALID_SEVERITIES
    if unknown:
        raise ConfigurationError(f"Unknown severities in quiet_hours_bypass: {', '.join(sorted(unknown))}")
    if notifications.escalation_hours is not None and notifications.escalation_hours <= 0:
        raise ConfigurationError("notifications.escalation_hours must be positive")

    storage = settings.storage
    if not 0 < storage.warning_percent <= storage.critical_percent <= 100:
        raise ConfigurationError(
            "storage thresholds must satisfy 0 < warning_percent <= critical_percent <= 100"
        )

    if settings.verification.after_backup not in ("none", "quick", "full"):
        raise ConfigurationError(
            f"Invalid verification.after_backup: {settings.verification.after_backup}. "
            "Must be none, quick or full."
        )

    cloud = settings.cloud
    if cloud.backend not in ("rclone", "http"):
        raise ConfigurationError(f"Invalid cloud.backend: {cloud.backend}. Must be rclone or http.")
    if cloud.enabled:
        if cloud.backend == "rclone" and not cloud.remote:
            raise ConfigurationError("cloud.remote is required for the rclone backend")
        if cloud.backend == "http" and not cloud.listing_url:
            raise ConfigurationError("cloud.listing_url is required for the http backend")
    if cloud.timeout_seconds <= 0:
        raise ConfigurationError("cloud.timeout_seconds must be positive")

    if settings.schedule.interval_minutes < 1:
        raise ConfigurationError("schedule.interval_minutes must be at least 1")


def settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""

    def plain(value: Any) -> Any:
        if isinstance(value, tuple):
            return [plain(v) for v in value]
        if isinstance(value, dict):
            return {k: plain(v) for k, v in value.items()}
        return value

    def section(obj: Any) -> dict[str, Any]:
        return {k: plain(v) for k, v in dataclasses.asdict(obj).items()}

    return {
        "checkpoint": {
            "project_name": settings.project_name,
            "project_dir": settings.project_dir,
            "backup_dir": settings.backup_dir,
            "home_dir": settings.home_dir,
            "log_level": settings.log_level,
            "exclude": list(settings.exclude),
            "lock_backend": settings.lock_backend,
        },
        "databases": [section(db) for db in settings.databases],
        "copy": section(settings.copy),
        "retention": section(settings.retention),
        "notifications": section(settings.notifications),
        "storage": section(settings.storage),
        "verification": section(settings.verification),
        "cloud": section(settings.cloud),
        "schedule": section(settings.schedule),
    }
