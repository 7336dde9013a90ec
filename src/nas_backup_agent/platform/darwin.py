# pyright: standard

"""nas-backup-agent: nas_backup_agent/platform/darwin.py
SMB mounts, diskutil enumeration, APFS local snapshots and hdiutil images.
"""

import contextlib
import logging
import os
import plistlib
import re
import shutil
import tempfile
import urllib.parse
from pathlib import Path

from .. import __util__, encode_name_for_dir
from ..core.capture import CaptureCommand
from ..core.models import BackupKind, DiskMetadata, PartitionDescriptor, ShareTarget
from .common import (
    CaptureCommands,
    MetadataSource,
    ShareMounter,
    SnapshotProvider,
    is_efi_type,
    is_recovery_type,
)

logger = logging.getLogger(__name__)

DEFAULT_MOUNT_POINT = "/Volumes/nas-backup-agent"

SYSTEM_MOUNTS = ("/", "/System/Volumes/Data")
RECOVERY_VOLUME_NAMES = ("Recovery",)
# Support volumes of the sealed system layout, rebuilt by the installer
SUPPORT_MOUNT_PREFIX = "/System/Volumes/"

SNAPSHOT_DATE = re.compile(r"(\d{4}-\d{2}-\d{2}-\d{6})")


class DarwinShare(ShareMounter):
    """Mount the share with mount_smbfs."""

    def _mount_point(self, target: ShareTarget) -> Path:
        return Path(target.mount_point or DEFAULT_MOUNT_POINT)

    def root(self, target: ShareTarget) -> Path:
        return self._mount_point(target)

    def is_mounted(self, target: ShareTarget) -> bool:
        return os.path.ismount(self._mount_point(target))

    @staticmethod
    def _smb_url(target: ShareTarget) -> str:
        user = target.username
        if target.domain:
            user = f"{target.domain};{user}"
        auth = urllib.parse.quote(user, safe="")
        return f"//{auth}@{target.address}/{urllib.parse.quote(target.share)}"

    @staticmethod
    @contextlib.contextmanager
    def _credentials_home(target: ShareTarget):
        """Yield a private HOME whose nsmb.conf holds the share password.

        mount_smbfs reads ~/Library/Preferences/nsmb.conf; the directory is
        removed as soon as the mount returns.
        """
        home = Path(tempfile.mkdtemp(prefix="nas-backup-smb-"))
        try:
            prefs = home / "Library" / "Preferences"
            prefs.mkdir(parents=True, mode=0o700)
            section = f"{target.address}:{target.username}".upper()
            __util__.write_private_file(
                prefs / "nsmb.conf",
                f"[default]\n[{section}]\npassword={target.password or ''}\n",
            )
            yield home
        finally:
            shutil.rmtree(home, ignore_errors=True)

    def mount(self, target: ShareTarget) -> None:
        mount_point = self._mount_point(target)
        if self.is_mounted(target):
            return
        mount_point.mkdir(parents=True, exist_ok=True, mode=0o700)
        # The URL is one argv entry and carries no password
        with self._credentials_home(target) as home:
            result = self._run(
                ["mount_smbfs", "-N", self._smb_url(target), str(mount_point)],
                env={**os.environ, "HOME": str(home)},
            )
        if not result.success:
            raise __util__.ShareConnectionError(
                f"Could not mount {target.smb_path}: {result.stderr.strip() or result.returncode}"
            )
        logger.info("Mounted %s on %s", target.smb_path, mount_point)

    def unmount(self, target: ShareTarget) -> None:
        mount_point = self._mount_point(target)
        if not self.is_mounted(target):
            return
        result = self._run(["umount", str(mount_point)])
        if not result.success:
            logger.warning("umount %s failed, forcing", mount_point)
            self._run(["diskutil", "unmount", "force", str(mount_point)])


class DarwinMetadata(MetadataSource):
    """Enumerate disks with diskutil's plist output."""

    def collect(self) -> DiskMetadata:
        result = self._run(["diskutil", "list", "-plist"])
        if not result.success:
            raise __util__.MetadataError(
                f"diskutil failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        try:
            data = plistlib.loads(result.stdout.encode())
        except (plistlib.InvalidFileException, ValueError) as e:
            raise __util__.MetadataError(f"Cannot parse diskutil output: {e}") from e

        metadata = DiskMetadata(platform="darwin")
        for disk in data.get("AllDisksAndPartitions", []):
            disk_id = disk.get("DeviceIdentifier", "")
            metadata.disks.append(
                {
                    "identifier": disk_id,
                    "size": int(disk.get("Size", 0)),
                    "partitionTable": disk.get("Content", ""),
                }
            )
            for part in disk.get("Partitions", []):
                metadata.partitions.append(self._partition(part, disk_id))
            for volume in disk.get("APFSVolumes", []):
                metadata.partitions.append(self._volume(volume, disk_id))
        return metadata

    @staticmethod
    def _partition(part: dict, disk_id: str) -> PartitionDescriptor:
        content = part.get("Content", "")
        ident = part.get("DeviceIdentifier", "")
        mountpoint = part.get("MountPoint")
        return PartitionDescriptor(
            identifier=ident,
            size=int(part.get("Size", 0)),
            fstype=content.lower(),
            label=part.get("VolumeName", ""),
            is_efi=is_efi_type(content),
            is_recovery=is_recovery_type(content),
            is_system=mountpoint in SYSTEM_MOUNTS,
            device=f"/dev/{ident}",
            mountpoint=mountpoint,
            parent=disk_id,
            type_id=content,
            kind="part",
        )

    @staticmethod
    def _volume(volume: dict, disk_id: str) -> PartitionDescriptor:
        ident = volume.get("DeviceIdentifier", "")
        name = volume.get("VolumeName", "")
        mountpoint = volume.get("MountPoint")
        return PartitionDescriptor(
            identifier=ident,
            size=int(volume.get("Size", 0)),
            fstype="apfs",
            label=name,
            is_recovery=name in RECOVERY_VOLUME_NAMES,
            is_system=mountpoint in SYSTEM_MOUNTS,
            device=f"/dev/{ident}",
            mountpoint=mountpoint,
            parent=disk_id,
            type_id="apfs-volume",
            kind="volume",
        )


class DarwinSnapshots(SnapshotProvider):
    """APFS local snapshots through tmutil, mounted read-only with mount_apfs."""

    def supports(self, partition: PartitionDescriptor) -> bool:
        return partition.fstype == "apfs" and bool(partition.mountpoint)

    def create(
        self, partition: PartitionDescriptor, timeout: float
    ) -> __util__.SnapshotHandle:
        result = self._run(["tmutil", "localsnapshot", partition.mountpoint], timeout=timeout)
        match = SNAPSHOT_DATE.search(result.stdout)
        if not result.success or not match:
            raise __util__.SnapshotError(
                f"tmutil localsnapshot failed for {partition.mountpoint}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        date = match.group(1)
        name = f"com.apple.TimeMachine.{date}.local"
        view = tempfile.mkdtemp(prefix="nas-backup-snap-")

        result = self._run(
            ["mount_apfs", "-o", "nobrowse,rdonly", "-s", name, partition.device, view],
            timeout=timeout,
        )
        if not result.success:
            self._run(["tmutil", "deletelocalsnapshots", date], timeout=timeout)
            with contextlib.suppress(OSError):
                os.rmdir(view)
            raise __util__.SnapshotError(
                f"mount_apfs failed for snapshot {name}: {result.stderr.strip()}"
            )
        logger.info("Mounted APFS snapshot %s at %s", name, view)
        return __util__.SnapshotHandle(
            partition_id=partition.identifier,
            path=view,
            snapshot_id=date,
            details={"name": name},
        )

    def delete(self, handle: __util__.SnapshotHandle, timeout: float) -> None:
        result = self._run(["umount", handle.path], timeout=timeout)
        if not result.success:
            self._run(["diskutil", "unmount", "force", handle.path], timeout=timeout)
        with contextlib.suppress(OSError):
            os.rmdir(handle.path)
        result = self._run(
            ["tmutil", "deletelocalsnapshots", handle.snapshot_id], timeout=timeout
        )
        if not result.success:
            raise __util__.SnapshotError(
                f"Could not delete local snapshot {handle.snapshot_id}: {result.stderr.strip()}"
            )


class DarwinCapture(CaptureCommands):
    """Compressed disk images of mounted volumes, raw EFI copy, rsync for folders."""

    image_extension = ".dmg"

    def required_tools(self, kind: BackupKind) -> list[str]:
        if kind is BackupKind.IMAGE:
            return ["hdiutil", "tmutil", "dd"]
        return ["rsync"]

    def skip_reason(self, partition: PartitionDescriptor) -> str | None:
        if not partition.mountpoint:
            return "not mounted"
        if (
            partition.mountpoint.startswith(SUPPORT_MOUNT_PREFIX)
            and partition.mountpoint not in SYSTEM_MOUNTS
        ):
            return "system support volume"
        return None

    def live_source(self, partition: PartitionDescriptor) -> str:
        return partition.mountpoint or partition.device

    def image_command(
        self, partition: PartitionDescriptor, source: str, dest_dir: Path
    ) -> CaptureCommand:
        artifact = dest_dir / self.artifact_name(partition)
        argv = [
            "hdiutil",
            "create",
            "-srcfolder",
            source,
            "-format",
            "UDZO",
            "-volname",
            partition.label or partition.identifier,
            "-o",
            str(artifact),
        ]
        return CaptureCommand(
            identifier=partition.identifier, argv=argv, artifact=str(artifact)
        )

    def efi_command(self, partition: PartitionDescriptor, dest_dir: Path) -> CaptureCommand:
        artifact = dest_dir / f"efi-{encode_name_for_dir(partition.identifier)}.img"
        raw = partition.device.replace("/dev/disk", "/dev/rdisk", 1)
        argv = ["dd", f"if={raw}", f"of={artifact}", "bs=1m"]
        return CaptureCommand(
            identifier=partition.identifier, argv=argv, artifact=str(artifact), efi=True
        )

    def files_command(self, source: str, dest_dir: Path) -> CaptureCommand:
        argv = ["rsync", "-a", "--delete", f"{source.rstrip('/')}/", f"{dest_dir}/"]
        return CaptureCommand(identifier=source, argv=argv, artifact=str(dest_dir))
