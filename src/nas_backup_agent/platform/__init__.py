# pyright: standard

"""nas-backup-agent: nas_backup_agent/platform/__init__.py."""

import logging

from .. import __util__
from .common import (
    CaptureCommands,
    MetadataSource,
    PlatformBackend,
    ShareMounter,
    SnapshotProvider,
)
from .darwin import DarwinCapture, DarwinMetadata, DarwinShare, DarwinSnapshots
from .linux import LinuxCapture, LinuxMetadata, LinuxShare, LinuxSnapshots
from .windows import WindowsCapture, WindowsMetadata, WindowsShare, WindowsSnapshots

logger = logging.getLogger(__name__)

__all__ = [
    "CaptureCommands",
    "MetadataSource",
    "PlatformBackend",
    "ShareMounter",
    "SnapshotProvider",
    "choose_backend",
]


def choose_backend(name, config=None, runner=__util__.run_command):
    """
    Chooses the platform backend for the given platform name.

    Args:
        name (str): "windows", "darwin" or "linux".
        config (Config): Loaded configuration, used for command timeouts.
        runner (callable): Command runner handed to every component.

    Returns:
        PlatformBackend: The share, metadata, snapshot and capture components.

    Raises:
        UnsupportedPlatformError: If there is no backend for the platform.
    """
    command_timeout = config.timeouts.command if config else 60
    metadata_timeout = config.timeouts.metadata if config else 60
    share_timeout = config.timeouts.share if config else 60

    if name == "linux":
        backend = PlatformBackend(
            name="linux",
            share=LinuxShare(runner, share_timeout),
            metadata=LinuxMetadata(runner, metadata_timeout),
            snapshots=LinuxSnapshots(runner, command_timeout),
            capture=LinuxCapture(),
        )
    elif name == "darwin":
        backend = PlatformBackend(
            name="darwin",
            share=DarwinShare(runner, share_timeout),
            metadata=DarwinMetadata(runner, metadata_timeout),
            snapshots=DarwinSnapshots(runner, command_timeout),
            capture=DarwinCapture(),
        )
    elif name == "windows":
        # Image captures outlive the controlling app, files stay in-process
        backend = PlatformBackend(
            name="windows",
            share=WindowsShare(runner, share_timeout),
            metadata=WindowsMetadata(runner, metadata_timeout),
            snapshots=WindowsSnapshots(runner, command_timeout),
            capture=WindowsCapture(),
            detached_image_worker=True,
            admin_for_files=False,
        )
    else:
        raise __util__.UnsupportedPlatformError(f"Unsupported platform: {name}")

    logger.debug("Using %r", backend)
    return backend
