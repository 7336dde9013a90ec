"""Config command: Configuration management."""

import argparse
import dataclasses
import json
import logging

from ..__logger__ import create_logger
from ..config import ConfigError, find_config_file, load_config
from ..config.loader import CONFIG_PATHS, generate_example_config
from .common import get_log_level

logger = logging.getLogger(__name__)


def execute_config(args: argparse.Namespace) -> int:
    """Execute the config command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    log_level = get_log_level(args)
    create_logger(False, level=log_level)

    action = getattr(args, "config_action", None)

    if action == "validate":
        return _validate_config(args)
    elif action == "init":
        return _init_config(args)
    elif action == "show":
        return _show_config(args)
    else:
        print("Usage: nas-backup-agent config <validate|init|show>")
        return 1


def _load(args: argparse.Namespace):
    config_path = find_config_file(getattr(args, "config", None))
    if config_path is None:
        print("No configuration file found.")
        print("Searched locations:")
        for path in CONFIG_PATHS:
            print(f"  {path}")
        return None, None, []
    config, warnings = load_config(config_path)
    return config_path, config, warnings


def _validate_config(args: argparse.Namespace) -> int:
    """Validate configuration file."""
    try:
        config_path, config, warnings = _load(args)
        if config is None:
            return 1

        print(f"Validating: {config_path}")

        if warnings:
            print("")
            print("Warnings:")
            for warning in warnings:
                print(f"  - {warning}")

        print("")
        print("Configuration is valid.")
        print(f"  Target: //{config.target.address}/{config.target.share}")
        print(f"  Backup: {config.backup.kind}")
        if config.backup.kind == "files":
            print(f"  Paths: {len(config.backup.paths)}")

        return 0

    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1


def _show_config(args: argparse.Namespace) -> int:
    """Print the effective configuration with the password hidden."""
    try:
        config_path, config, _ = _load(args)
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1
    if config is None:
        return 1

    print(f"# {config_path}")
    for section in dataclasses.fields(config):
        values = dataclasses.asdict(getattr(config, section.name))
        print(f"[{section.name}]")
        for key, value in values.items():
            if value is None:
                continue
            if key == "password" and value:
                value = "********"
            print(f"{key} = {json.dumps(value)}")
        print("")
    return 0


def _init_config(args: argparse.Namespace) -> int:
    """Generate example configuration."""
    content = generate_example_config()

    output = getattr(args, "output", None)
    if output:
        try:
            with open(output, "w") as f:
                f.write(content)
            print(f"Example configuration written to: {output}")
        except OSError as e:
            print(f"Error writing file: {e}")
            return 1
    else:
        print(content)

    return 0
