# pyright: standard

"""nas-backup-agent: nas_backup_agent/platform/common.py
Interfaces every platform implements, and the bundle the pipeline consumes.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .. import __util__, encode_name_for_dir
from ..core.capture import CaptureCommand
from ..core.models import BackupKind, DiskMetadata, PartitionDescriptor, ShareTarget

logger = logging.getLogger(__name__)

# Well-known partition type identifiers, lowercase
EFI_TYPE_IDS = frozenset(
    {
        "c12a7328-f81f-11d2-ba4b-00a0c93ec93b",  # GPT EFI system partition
        "0xef",  # MBR EFI system partition
        "ef",
        "efi",
    }
)
RECOVERY_TYPE_IDS = frozenset(
    {
        "de94bba4-06d1-4d40-a16a-bfd50179d6ac",  # Windows recovery environment
        "5265636f-7665-11aa-aa11-00306543ecac",  # Apple recovery HD
        "0x27",  # MBR hidden NTFS recovery
        "27",
        "apple_apfs_recovery",
        "apple_boot",
        "recovery",
    }
)


def normalize_type_id(value) -> str:
    return str(value or "").strip().strip("{}").lower()


def is_efi_type(value) -> bool:
    return normalize_type_id(value) in EFI_TYPE_IDS


def is_recovery_type(value) -> bool:
    return normalize_type_id(value) in RECOVERY_TYPE_IDS


def parse_json_list(text: str) -> list:
    """Parse JSON that may be a single object or a list of objects.

    PowerShell's ConvertTo-Json emits a bare object for one-element results.
    """
    text = (text or "").strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, list):
        return data
    return [data]


class PlatformPart:
    """Common state of every platform component."""

    def __init__(
        self,
        runner: Callable[..., __util__.CommandResult] = __util__.run_command,
        timeout: float = 60,
    ) -> None:
        self.runner = runner
        self.timeout = timeout

    def _run(self, command: list[str], timeout: float | None = None, **kwargs):
        return self.runner(command, timeout=timeout or self.timeout, **kwargs)


class ShareMounter(PlatformPart):
    """Opens and closes authenticated sessions to the remote share."""

    def mount(self, target: ShareTarget) -> None:
        raise NotImplementedError

    def unmount(self, target: ShareTarget) -> None:
        raise NotImplementedError

    def is_mounted(self, target: ShareTarget) -> bool:
        raise NotImplementedError

    def root(self, target: ShareTarget) -> Path:
        """Local path under which the share contents are reachable."""
        raise NotImplementedError


class MetadataSource(PlatformPart):
    """Enumerates disks and partitions with platform-native tooling."""

    def collect(self) -> DiskMetadata:
        raise NotImplementedError


class SnapshotProvider(PlatformPart):
    """Creates and removes point-in-time views of volumes."""

    def supports(self, partition: PartitionDescriptor) -> bool:
        return False

    def create(
        self, partition: PartitionDescriptor, timeout: float
    ) -> __util__.SnapshotHandle:
        raise __util__.SnapshotError(f"Snapshots are not supported for {partition.identifier}")

    def delete(self, handle: __util__.SnapshotHandle, timeout: float) -> None:
        pass


class CaptureCommands:
    """Builds capture argument vectors for one platform."""

    image_extension = ".img"

    def required_tools(self, kind: BackupKind) -> list[str]:
        raise NotImplementedError

    def image_command(
        self, partition: PartitionDescriptor, source: str, dest_dir: Path
    ) -> CaptureCommand:
        raise NotImplementedError

    def efi_command(self, partition: PartitionDescriptor, dest_dir: Path) -> CaptureCommand:
        raise NotImplementedError

    def files_command(self, source: str, dest_dir: Path) -> CaptureCommand:
        raise NotImplementedError

    def skip_reason(self, partition: PartitionDescriptor) -> str | None:
        """Why this platform cannot image ``partition``, if it cannot."""
        return None

    def live_source(self, partition: PartitionDescriptor) -> str:
        """Path read when no snapshot is available."""
        return partition.device or partition.identifier

    def artifact_name(self, partition: PartitionDescriptor) -> str:
        return encode_name_for_dir(partition.identifier) + self.image_extension


@dataclass
class PlatformBackend:
    """Everything the pipeline needs from one platform."""

    name: str
    share: ShareMounter
    metadata: MetadataSource
    snapshots: SnapshotProvider
    capture: CaptureCommands
    detached_image_worker: bool = False
    admin_for_files: bool = True

    def requires_admin(self, kind: BackupKind) -> bool:
        return kind is BackupKind.IMAGE or self.admin_for_files

    def uses_worker(self, kind: BackupKind) -> bool:
        return self.detached_image_worker and kind is BackupKind.IMAGE

    def __repr__(self) -> str:
        return f"PlatformBackend({self.name})"
