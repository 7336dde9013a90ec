"""nas-backup-agent: nas_backup_agent/__init__.py."""

import re


__version__ = "0.3.0"

AGENT_NAME = f"nas-backup-agent/{__version__}"


def encode_name_for_dir(name: str) -> str:
    """Make a partition or folder name safe to use as a single path component"""
    cleaned = re.sub(r"[\\/:*?\"<>|\s]+", "_", str(name)).strip("._")
    return cleaned or "root"
