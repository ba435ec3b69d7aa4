"""
Configuration management for Checkpoint.

This module handles loading, validating, and saving configuration settings.
"""

from checkpoint.config.settings import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_HOME_DIR,
    DEFAULT_TIERS,
    CloudConfig,
    ConfigurationError,
    CopyConfig,
    DatabaseConfig,
    NotificationConfig,
    RetentionConfig,
    ScheduleConfig,
    Settings,
    StorageConfig,
    TierConfig,
    VerificationConfig,
    get_config_path,
    load_config,
    save_config,
    settings_to_dict,
)

__all__ = [
    "Settings",
    "load_config",
    "save_config",
    "settings_to_dict",
    "get_config_path",
    "ConfigurationError",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_HOME_DIR",
    "DEFAULT_TIERS",
    # Sections
    "CloudConfig",
    "CopyConfig",
    "DatabaseConfig",
    "NotificationConfig",
    "RetentionConfig",
    "ScheduleConfig",
    "StorageConfig",
    "TierConfig",
    "VerificationConfig",
]
