# pyright: standard

"""nas-backup-agent: nas_backup_agent/__logger__.py
A common logger for displaying through rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Initialize basic console and handler
cons = Console()
rich_handler = RichHandler(console=cons, show_path=False)

PACKAGE_LOGGER = "nas_backup_agent"


def create_logger(live_layout, level: str | int = logging.INFO) -> None:
    """Helper function to setup logging depending on visual display options."""
    # pylint: disable=global-statement
    global cons, rich_handler

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    # Create new handlers
    if live_layout:
        cons = Console(stderr=True)
        rich_handler = RichHandler(console=cons, show_time=False, show_path=False)
    else:
        cons = Console()
        rich_handler = RichHandler(console=cons, show_path=False)

    # Jobs lower the package logger for their job log, the console stays at
    # the requested level
    rich_handler.setLevel(level)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=[rich_handler],
        force=True,
    )
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
