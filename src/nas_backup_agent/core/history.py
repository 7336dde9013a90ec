"""Durable job history as JSON lines.

Every finished job appends one record. Appends go through a FileLock so a
detached worker and the controlling process never interleave lines.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_history_log: Optional[Path] = None


def set_history_log(path) -> None:
    """Set (or with None, disable) the history log file."""
    global _history_log
    if path is None:
        _history_log = None
        return
    _history_log = Path(path)
    try:
        _history_log.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Cannot create history directory %s: %s", _history_log.parent, e)


def get_history_log() -> Optional[Path]:
    return _history_log


def log_job(
    status: str,
    kind: str,
    hostname: Optional[str] = None,
    duration_seconds: Optional[float] = None,
    error: Optional[str] = None,
    warnings: Optional[list] = None,
    manifest: Optional[str] = None,
    log_file: Optional[str] = None,
    details: Optional[dict] = None,
) -> None:
    """Append one job record. Fields left as None are omitted."""
    if _history_log is None:
        return

    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "pid": os.getpid(),
        "status": status,
        "kind": kind,
    }
    if hostname is not None:
        record["hostname"] = hostname
    if duration_seconds is not None:
        record["duration_seconds"] = round(duration_seconds, 3)
    if error is not None:
        record["error"] = error
    if warnings:
        record["warnings"] = list(warnings)
    if manifest is not None:
        record["manifest"] = manifest
    if log_file is not None:
        record["log_file"] = log_file
    if details:
        record["details"] = details

    try:
        with FileLock(f"{_history_log}.lock", timeout=10):
            with open(_history_log, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
    except (OSError, Timeout) as e:
        logger.warning("Could not write job history: %s", e)


def read_history(path=None, limit: Optional[int] = None) -> list[dict]:
    """Read job records, oldest first. Unparseable lines are skipped.

    Args:
        path: History file (defaults to the configured one)
        limit: Return only the last ``limit`` records
    """
    path = Path(path) if path is not None else _history_log
    if path is None or not path.exists():
        return []

    records = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping corrupt history line")
    if limit is not None:
        records = records[-limit:] if limit > 0 else []
    return records


def get_history_stats(path=None) -> dict:
    """Summarize the history: job counts per status and the last job."""
    records = read_history(path)
    stats = {"total": len(records), "success": 0, "error": 0, "last": None}
    for record in records:
        status = record.get("status")
        if status in ("success", "error"):
            stats[status] += 1
    if records:
        stats["last"] = records[-1]
    return stats
