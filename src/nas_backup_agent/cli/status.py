"""Status command: show recent job history."""

import argparse
import json
import logging
from pathlib import Path

from ..__logger__ import create_logger
from ..core import history
from .common import get_log_level, load_cli_config

logger = logging.getLogger(__name__)


def execute_status(args: argparse.Namespace) -> int:
    """Execute the status command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    log_level = get_log_level(args)
    create_logger(False, level=log_level)

    config = load_cli_config(args)
    if config is None:
        return 1

    history_path = Path(
        config.agent.history_file or Path(config.agent.state_dir) / "history.log"
    )
    limit = getattr(args, "limit", 10)
    records = history.read_history(history_path, limit=limit)

    if getattr(args, "json", False):
        print(json.dumps(records, indent=2))
        return 0

    stats = history.get_history_stats(history_path)
    print("nas-backup-agent Status")
    print("=" * 60)
    print(f"History: {history_path}")
    print(
        f"Jobs: {stats['total']} recorded, {stats['success']} succeeded, "
        f"{stats['error']} failed"
    )
    print("")

    if not records:
        print("No jobs recorded yet.")
        return 0

    for record in records:
        duration = record.get("duration_seconds")
        line = (
            f"{record.get('timestamp', '?')}  "
            f"{record.get('status', '?'):<8} {record.get('kind', '?'):<6}"
        )
        if duration is not None:
            line += f" {duration:>8.0f}s"
        print(line)
        if record.get("error"):
            print(f"    error: {record['error']}")
        for warning in record.get("warnings", []):
            print(f"    warning: {warning}")

    last = stats["last"]
    return 0 if last is None or last.get("status") == "success" else 1
