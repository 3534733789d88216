"""
Configuration management for the Resource Status service.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/resource-status/config.yml or --config path)
3. Environment variables (RESOURCE_STATUS_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

All three processes (api, worker, scheduler) read the same configuration, so
the queue and store paths agree without any process talking to another.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/resource-status/config.yml")
DEFAULT_ENV_PREFIX = "RESOURCE_STATUS_"

COMMANDS = ("api", "worker", "scheduler", "check", "status", "dead", "retry")

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


def _normalize_log_level(v: str) -> str:
    v_lower = v.lower()
    if v_lower not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    # Normalize 'warn' to 'warning'
    if v_lower == "warn":
        return "warning"
    return v_lower


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """HTTP query API settings.

    Attributes:
        listen: Listen address and port (e.g., "127.0.0.1:3000").
        log_level: Initial application log level.
    """

    listen: str = Field(
        default="127.0.0.1:3000",
        description="Listen address and port (e.g., '127.0.0.1:3000' or '0.0.0.0:3000')",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)

    @field_validator("listen")
    @classmethod
    def validate_listen(cls, v: str) -> str:
        """Validate the host:port listen address."""
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"Invalid listen address: {v}. Expected 'host:port'")
        return v

    @property
    def host(self) -> str:
        return self.listen.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.listen.rpartition(":")[2])


# =============================================================================
# Security Configuration
# =============================================================================


class SecurityConfig(BaseModel):
    """Shared-secret authentication for the query API.

    Attributes:
        api_key: Value every request must present in the ``x-api-key`` header.
            When empty, every request is rejected.
    """

    api_key: str = Field(
        default="",
        description="Shared secret expected in the x-api-key header",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit one JSON object per line instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)


# =============================================================================
# Work Queue Configuration
# =============================================================================


class QueueConfig(BaseModel):
    """Durable work queue configuration.

    Attributes:
        path: SQLite database file backing the queue.
        name: Logical queue name; several queues may share one file.
        max_attempts: Total attempts before a request is dead-lettered.
        max_stalled: Lease expiries tolerated before a request is dead-lettered.
        backoff_delay_ms: Base delay of the exponential retry backoff.
        priority: Priority given to collection requests (lower runs first).
        lease_seconds: How long a claim stays exclusive before redelivery.
        poll_interval_seconds: Idle polling interval of a blocked dequeue.
        remove_on_complete: Completed requests retained (None keeps all).
        remove_on_fail: Dead-lettered requests retained (None keeps all).
        reconnect_delay_seconds: Initial delay before reconnecting.
        reconnect_max_delay_seconds: Cap on the reconnect backoff.
    """

    path: str = Field(
        default="/var/lib/resource-status/queue.db",
        description="Path to the queue database",
    )
    name: str = Field(
        default="resource-usage",
        description="Logical queue name",
    )
    max_attempts: int = Field(default=3, ge=1, description="Attempts before dead-lettering")
    max_stalled: int = Field(
        default=1, ge=0, description="Lease expiries tolerated before dead-lettering"
    )
    backoff_delay_ms: int = Field(
        default=2000, ge=0, description="Base exponential backoff delay in milliseconds"
    )
    priority: int = Field(default=1, description="Priority of collection requests")
    lease_seconds: float = Field(
        default=300.0, gt=0, description="Claim lease duration in seconds"
    )
    poll_interval_seconds: float = Field(
        default=1.0, gt=0, description="Idle dequeue polling interval in seconds"
    )
    remove_on_complete: int | None = Field(
        default=10, ge=0, description="Completed requests to keep"
    )
    remove_on_fail: int | None = Field(
        default=5, ge=0, description="Dead-lettered requests to keep"
    )
    reconnect_delay_seconds: float = Field(
        default=1.0, gt=0, description="Initial reconnect delay in seconds"
    )
    reconnect_max_delay_seconds: float = Field(
        default=30.0, gt=0, description="Maximum reconnect delay in seconds"
    )


# =============================================================================
# Sample Store Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """Sample store configuration.

    Attributes:
        path: SQLite database file holding the resource_usage table.
    """

    path: str = Field(
        default="/var/lib/resource-status/samples.db",
        description="Path to the sample database",
    )


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseModel):
    """Recurring collection trigger.

    Attributes:
        cron: Five-field cron expression evaluated in ``timezone``.
        timezone: IANA timezone name.
    """

    cron: str = Field(
        default="0 6 * * *",
        description="Cron expression for scheduled collection",
    )
    timezone: str = Field(
        default="Asia/Jakarta",
        description="IANA timezone the cron expression is evaluated in",
    )

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """Validate the cron expression."""
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: HTTP query API settings.
        security: API key settings.
        logging: Logging configuration.
        queue: Work queue configuration.
        store: Sample store configuration.
        scheduler: Recurring trigger configuration.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server settings",
    )
    security: SecurityConfig = Field(
        default_factory=SecurityConfig,
        description="Security settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    queue: QueueConfig = Field(
        default_factory=QueueConfig,
        description="Work queue configuration",
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Sample store configuration",
    )
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Scheduler configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


# Keys whose values are always kept as strings, even when they look numeric.
_STRING_ENV_KEYS = {("security", "api_key"), ("scheduler", "cron")}


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: RESOURCE_STATUS_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: RESOURCE_STATUS_SCHEDULER__TIMEZONE=Europe/Berlin

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        if tuple(parts) in _STRING_ENV_KEYS:
            current[parts[-1]] = value
        else:
            current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser shared by every entry point."""
    parser = argparse.ArgumentParser(
        prog="resource-status",
        description="Host resource sampling pipeline",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "command",
        nargs="?",
        choices=COMMANDS,
        default="api",
        help="Process to run",
    )

    parser.add_argument(
        "--request-id",
        type=str,
        help="Dead-lettered request to re-submit (retry command)",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at debug level (same as --log-level debug)",
    )

    return parser


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments into configuration overrides.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed overrides. ``_config_path`` and ``_command``
        are bookkeeping keys, not configuration fields.
    """
    parsed = build_arg_parser().parse_args(args)

    result: dict[str, Any] = {"_command": parsed.command}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["server"] = {"log_level": parsed.log_level}
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result["logging"] = {"level": "debug"}
        result["server"] = {"log_level": "debug"}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, environment,
    command line.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["worker"])
        >>> config.queue.max_attempts
        3
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)
    cli_config.pop("_command", None)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
