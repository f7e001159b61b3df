"""
Engine configuration.

A versioned settings dataclass plus the helpers a host needs to store it:
defaults, migration of older versions, and a JSON-schema-like description
for UI rendering.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CURRENT_CONFIG_VERSION = 2


@dataclass
class EngineConfig:
    """Runtime settings for RuleEngine and its collaborators."""

    version: int = CURRENT_CONFIG_VERSION
    enabled: bool = True
    poll_interval_seconds: int = 60  # Scheduler tick granularity
    command_timeout_seconds: float = 10.0  # Per-device command bound
    max_parallel_dispatch: int = 8  # Default parallelism for non-sequential batches
    history_size: int = 1000  # In-memory execution records kept
    default_location: Optional[str] = None  # For solar lookups

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for out-of-range values."""
        if self.poll_interval_seconds < 1:
            raise ConfigurationError("poll_interval_seconds must be >= 1")
        if self.command_timeout_seconds <= 0:
            raise ConfigurationError("command_timeout_seconds must be > 0")
        if self.max_parallel_dispatch < 1:
            raise ConfigurationError("max_parallel_dispatch must be >= 1")
        if self.history_size < 1:
            raise ConfigurationError("history_size must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict."""
        return {
            "version": self.version,
            "enabled": self.enabled,
            "poll_interval_seconds": self.poll_interval_seconds,
            "command_timeout_seconds": self.command_timeout_seconds,
            "max_parallel_dispatch": self.max_parallel_dispatch,
            "history_size": self.history_size,
            "default_location": self.default_location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Deserialize from dict, migrating older versions first."""
        data = migrate_config(dict(data))
        defaults = default_config()
        return cls(
            version=data.get("version", CURRENT_CONFIG_VERSION),
            enabled=data.get("enabled", defaults["enabled"]),
            poll_interval_seconds=data.get(
                "poll_interval_seconds", defaults["poll_interval_seconds"]
            ),
            command_timeout_seconds=data.get(
                "command_timeout_seconds", defaults["command_timeout_seconds"]
            ),
            max_parallel_dispatch=data.get(
                "max_parallel_dispatch", defaults["max_parallel_dispatch"]
            ),
            history_size=data.get("history_size", defaults["history_size"]),
            default_location=data.get("default_location"),
        )


def default_config() -> Dict[str, Any]:
    """Get default engine configuration."""
    return {
        "version": CURRENT_CONFIG_VERSION,
        "enabled": True,
        "poll_interval_seconds": 60,
        "command_timeout_seconds": 10.0,
        "max_parallel_dispatch": 8,
        "history_size": 1000,
        "default_location": None,
    }


def migrate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Migrate configuration to current version.

    Version 1 used "poll_interval" (seconds) and "timeout" (milliseconds).

    Args:
        config: Configuration dict (potentially older version)

    Returns:
        Migrated configuration dict
    """
    version = config.get("version", 1)
    if version == CURRENT_CONFIG_VERSION:
        return config
    if version > CURRENT_CONFIG_VERSION:
        raise ConfigurationError(f"Unsupported config version: {version}")

    if "poll_interval" in config:
        config.setdefault("poll_interval_seconds", config.pop("poll_interval"))
    if "timeout" in config:
        config.setdefault("command_timeout_seconds", config.pop("timeout") / 1000)

    logger.info(f"Migrated engine config from v{version} to v{CURRENT_CONFIG_VERSION}")
    config["version"] = CURRENT_CONFIG_VERSION
    return config


def config_schema() -> Dict[str, Any]:
    """
    Get configuration schema for the engine.

    Returns a JSON-schema-like structure for UI rendering.
    """
    return {
        "type": "object",
        "properties": {
            "version": {
                "type": "integer",
                "title": "Config Version",
                "readOnly": True,
            },
            "enabled": {
                "type": "boolean",
                "title": "Enable Automation",
                "description": "Run rules and schedules automatically",
                "default": True,
            },
            "poll_interval_seconds": {
                "type": "integer",
                "title": "Scheduler Interval",
                "description": "How often timers and schedules are checked (seconds)",
                "minimum": 1,
                "default": 60,
            },
            "command_timeout_seconds": {
                "type": "number",
                "title": "Command Timeout",
                "description": "Give up on an unresponsive device after this many seconds",
                "exclusiveMinimum": 0,
                "default": 10.0,
            },
            "max_parallel_dispatch": {
                "type": "integer",
                "title": "Parallel Commands",
                "description": "Devices commanded at once in a parallel batch",
                "minimum": 1,
                "default": 8,
            },
            "history_size": {
                "type": "integer",
                "title": "History Size",
                "description": "Execution records kept in memory",
                "minimum": 1,
                "default": 1000,
            },
            "default_location": {
                "type": ["string", "null"],
                "title": "Default Location",
                "description": "Location used for sunrise/sunset when a rule has none",
            },
        },
        "required": ["version", "enabled"],
    }
