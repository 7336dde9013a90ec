"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import tomllib
from dataclasses import fields
from pathlib import Path
from typing import Any

from .schema import (
    AgentConfig,
    BackupConfig,
    Config,
    ShareConfig,
    TargetConfig,
    TimeoutConfig,
    WorkerConfig,
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "nas-backup-agent" / "config.toml",
    Path("/etc/nas-backup-agent/config.toml"),
]

BACKUP_KINDS = ("image", "files")
PLATFORMS = ("windows", "darwin", "linux")


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _parse_section(cls, data: Any, section: str):
    """Build a dataclass from a TOML table, rejecting unknown keys."""
    if not isinstance(data, dict):
        raise ConfigError(f"[{section}] must be a table")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{section}]: {', '.join(unknown)}")

    kwargs = {}
    for key, value in data.items():
        default = getattr(cls(), key)
        if isinstance(default, bool) and not isinstance(value, bool):
            raise ConfigError(f"[{section}] {key} must be true or false")
        if isinstance(default, (int, float)) and not isinstance(default, bool):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"[{section}] {key} must be a number")
            if value < 0:
                raise ConfigError(f"[{section}] {key} must not be negative")
            value = type(default)(value)
        kwargs[key] = value
    return cls(**kwargs)


def _parse_backup(data: dict[str, Any]) -> BackupConfig:
    """Parse backup configuration from dict."""
    backup = _parse_section(BackupConfig, data, "backup")
    if backup.kind not in BACKUP_KINDS:
        raise ConfigError(
            f"[backup] kind must be one of {', '.join(BACKUP_KINDS)}, got '{backup.kind}'"
        )
    if isinstance(backup.paths, str):
        backup.paths = [backup.paths]
    if not all(isinstance(p, str) for p in backup.paths):
        raise ConfigError("[backup] paths must be a list of strings")
    return backup


def _parse_agent(data: dict[str, Any]) -> AgentConfig:
    """Parse agent configuration from dict."""
    agent = _parse_section(AgentConfig, data, "agent")
    if agent.platform is not None and agent.platform not in PLATFORMS:
        raise ConfigError(
            f"[agent] platform must be one of {', '.join(PLATFORMS)}, got '{agent.platform}'"
        )
    return agent


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    if not config.target.address:
        warnings.append("No target address configured")
    if not config.target.username or not config.target.password:
        warnings.append("Target share credentials are incomplete")

    if config.backup.kind == "files" and not config.backup.paths:
        warnings.append("File backup selected but no paths configured")
    if config.backup.kind == "image" and config.backup.paths:
        warnings.append("Paths are ignored for image backups")

    if len(config.backup.paths) != len(set(config.backup.paths)):
        warnings.append("Duplicate backup paths detected")

    if config.worker.stall_grace <= config.worker.heartbeat_interval:
        warnings.append(
            "worker.stall_grace should be larger than worker.heartbeat_interval"
        )
    if config.share.reconnect_attempts < 1:
        warnings.append("share.reconnect_attempts < 1, uploads will never be retried")

    return warnings


def parse_config(data: dict[str, Any]) -> Config:
    """Build a Config from already parsed TOML data."""
    unknown = sorted(
        set(data) - {"agent", "target", "backup", "timeouts", "worker", "share"}
    )
    if unknown:
        raise ConfigError(f"Unknown section(s): {', '.join(unknown)}")

    return Config(
        agent=_parse_agent(data.get("agent", {})),
        target=_parse_section(TargetConfig, data.get("target", {}), "target"),
        backup=_parse_backup(data.get("backup", {})),
        timeouts=_parse_section(TimeoutConfig, data.get("timeouts", {}), "timeouts"),
        worker=_parse_section(WorkerConfig, data.get("worker", {}), "worker"),
        share=_parse_section(ShareConfig, data.get("share", {}), "share"),
    )


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    config = parse_config(data)

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# nas-backup-agent configuration
# See documentation for full options

[agent]
state_dir = "/var/lib/nas-backup-agent"
log_dir = "/var/log/nas-backup-agent"
# device_name = "office-pc"

[target]
address = "192.168.1.10"
share = "active-backup"
username = "backup"
password = "change-me"

[backup]
kind = "files"          # "image" or "files"
paths = ["/home"]

[timeouts]
image_capture = 14400   # 4 hours per partition
file_capture = 3600
snapshot = 120

# Detached worker (used for image backups on Windows)
[worker]
poll_interval = 3
startup_grace = 30
stall_grace = 60

[share]
reconnect_attempts = 3
reconnect_delay = 5
"""
