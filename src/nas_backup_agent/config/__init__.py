"""Configuration system for nas-backup-agent.

This module provides TOML-based configuration loading, validation,
and schema definitions for the backup agent.
"""

from .loader import ConfigError, find_config_file, load_config, parse_config
from .schema import (
    AgentConfig,
    BackupConfig,
    Config,
    ShareConfig,
    TargetConfig,
    TimeoutConfig,
    WorkerConfig,
)

__all__ = [
    "AgentConfig",
    "BackupConfig",
    "Config",
    "ShareConfig",
    "TargetConfig",
    "TimeoutConfig",
    "WorkerConfig",
    "load_config",
    "parse_config",
    "find_config_file",
    "ConfigError",
]
