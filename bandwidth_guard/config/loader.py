"""
Configuration management and loading.

Handles monitor settings from an optional YAML file and environment variables.
"""

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


@dataclass(frozen=True)
class Settings:
    """Complete monitor configuration.

    Intervals are in milliseconds.
    """
    sample_interval_ms: int = 1000
    flush_interval_ms: int = 30000
    sync_interval_ms: int = 300000
    scheduler_interval_ms: int = 3600000
    expiry_retry_interval_ms: int = 60000
    monitor_label: str = "bandwidth.monitor"
    docker_socket: str = "/var/run/docker.sock"
    self_container_id: Optional[str] = None
    self_container_name: Optional[str] = None
    db_path: str = "data/bandwidth.db"
    timezone: str = "UTC"
    log_level: str = "INFO"
    retention_days: int = 90

    def __post_init__(self):
        """Validate intervals and names."""
        for name in (
            "sample_interval_ms",
            "flush_interval_ms",
            "sync_interval_ms",
            "scheduler_interval_ms",
            "expiry_retry_interval_ms",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if not self.monitor_label:
            raise ValueError("monitor_label cannot be empty")
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log_level: {self.log_level}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {self.timezone}")

    @property
    def tzinfo(self) -> ZoneInfo:
        """Timezone used for calendar-based quota resets."""
        return ZoneInfo(self.timezone)

    @property
    def docker_base_url(self) -> str:
        """Docker endpoint URL derived from the socket path or address."""
        if "://" in self.docker_socket:
            return self.docker_socket
        return f"unix://{self.docker_socket}"


# Environment variable -> Settings field
ENV_VARS = {
    "COLLECT_INTERVAL": "sample_interval_ms",
    "PERSIST_INTERVAL": "flush_interval_ms",
    "SYNC_INTERVAL": "sync_interval_ms",
    "SCHEDULER_INTERVAL": "scheduler_interval_ms",
    "EXPIRY_RETRY_INTERVAL": "expiry_retry_interval_ms",
    "MONITOR_LABEL": "monitor_label",
    "DOCKER_SOCKET": "docker_socket",
    "SELF_CONTAINER_ID": "self_container_id",
    "SELF_CONTAINER_NAME": "self_container_name",
    "DB_PATH": "db_path",
    "TIMEZONE": "timezone",
    "LOG_LEVEL": "log_level",
    "RETENTION_DAYS": "retention_days",
}

_CONTAINER_ID_PATTERN = re.compile(r"^[0-9a-f]{12,64}$", re.IGNORECASE)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load and validate monitor settings.

    Values come from the YAML file first (if given), then environment
    variables override them. Inside a container the hostname is the short
    container id, so a hex ``HOSTNAME`` is used as the self-exclusion id when
    ``SELF_CONTAINER_ID`` is not set.

    Args:
        path: Optional path to YAML configuration file
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    if path is not None:
        values.update(_load_yaml(path))

    for env_name, field_name in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw is not None and raw != "":
            values[field_name] = raw

    if not values.get("self_container_id"):
        hostname = environ.get("HOSTNAME", "")
        if _CONTAINER_ID_PATTERN.match(hostname):
            values["self_container_id"] = hostname

    return Settings(**{name: _coerce(name, value) for name, value in values.items()})


def _load_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    allowed_keys = {f.name for f in fields(Settings)}
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return raw_config


_INT_FIELDS = {f.name for f in fields(Settings) if f.type in (int, "int")}


def _coerce(name: str, value: Any) -> Any:
    """Convert raw env/YAML values to the field's type."""
    if name in _INT_FIELDS:
        if isinstance(value, bool):
            raise ValueError(f"'{name}' must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"'{name}' must be an integer, got {value!r}")
    if value is None:
        return None
    return str(value)
