"""Disks command: show what an image backup of this machine would capture."""

import argparse
import json
import logging

from .. import __util__
from ..__logger__ import create_logger
from ..config import Config
from ..core import metadata as metadata_utils
from ..platform import choose_backend
from .common import get_log_level, load_cli_config

logger = logging.getLogger(__name__)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{size} B"


def execute_disks(args: argparse.Namespace) -> int:
    """Execute the disks command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    log_level = get_log_level(args)
    create_logger(False, level=log_level)

    # Enumeration needs no share settings, fall back to defaults
    config = Config()
    if getattr(args, "config", None):
        config = load_cli_config(args)
        if config is None:
            return 1

    try:
        platform_name = __util__.current_platform(config.agent.platform)
        backend = choose_backend(platform_name, config)
        disk_metadata = metadata_utils.collect(backend.metadata, platform_name)
    except __util__.BackupError as e:
        logger.error("%s", e)
        return 1

    if getattr(args, "json", False):
        print(json.dumps(disk_metadata.to_dict(), indent=2))
        return 0

    plan = metadata_utils.plan_capture(disk_metadata.partitions, backend.capture)
    skipped = {p.identifier: reason for p, reason in plan.skipped}
    efi = {p.identifier for p in plan.efi}

    for disk in disk_metadata.disks:
        model = disk.get("model") or ""
        print(f"Disk: {disk['identifier']} {_format_size(disk.get('size', 0))} {model}".rstrip())
    print("")
    for partition in disk_metadata.partitions:
        if partition.identifier in efi:
            action = "capture (EFI, best effort)"
        elif partition.identifier in skipped:
            action = f"skip ({skipped[partition.identifier]})"
        else:
            action = "capture"
        label = f" [{partition.label}]" if partition.label else ""
        print(
            f"  {partition.identifier:<24} {partition.fstype or '-':<10} "
            f"{_format_size(partition.size):>12}{label}  -> {action}"
        )
    print("")
    print(
        f"{len(plan.targets)} partition(s) and {len(plan.efi)} EFI partition(s) "
        f"would be captured, {len(plan.skipped)} skipped"
    )
    return 0
