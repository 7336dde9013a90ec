# pyright: standard

"""nas-backup-agent: nas_backup_agent/platform/linux.py
CIFS mounts, lsblk/sfdisk enumeration, LVM snapshots and partclone captures.
"""

import json
import logging
import os
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

DEFAULT_MOUNT_POINT = "/mnt/nas-backup-agent"

LSBLK_COLUMNS = "NAME,PATH,SIZE,TYPE,FSTYPE,LABEL,PARTTYPE,PARTLABEL,MOUNTPOINT,MODEL,SERIAL,PTTYPE"

# Filesystems partclone has a dedicated (used-blocks only) imager for
PARTCLONE_FILESYSTEMS = {
    "ext2": "ext2",
    "ext3": "ext3",
    "ext4": "ext4",
    "xfs": "xfs",
    "btrfs": "btrfs",
    "ntfs": "ntfs",
    "vfat": "vfat",
    "exfat": "exfat",
    "f2fs": "f2fs",
    "hfsplus": "hfsplus",
}

SNAPSHOT_SUFFIX = "-nasbackup-snap"


class LinuxShare(ShareMounter):
    """Mount the share with mount.cifs and a short-lived credentials file."""

    def _mount_point(self, target: ShareTarget) -> Path:
        return Path(target.mount_point or DEFAULT_MOUNT_POINT)

    def root(self, target: ShareTarget) -> Path:
        return self._mount_point(target)

    def is_mounted(self, target: ShareTarget) -> bool:
        return os.path.ismount(self._mount_point(target))

    def mount(self, target: ShareTarget) -> None:
        mount_point = self._mount_point(target)
        if self.is_mounted(target):
            logger.debug("%s already mounted on %s", target.smb_path, mount_point)
            return
        mount_point.mkdir(parents=True, exist_ok=True, mode=0o700)

        with __util__.credentials_file(
            target.username, target.password, target.domain
        ) as cred_path:
            options = f"credentials={cred_path},vers=3.0,uid={os.getuid()},gid={os.getgid()}"
            result = self._run(
                ["mount", "-t", "cifs", target.smb_path, str(mount_point), "-o", options]
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
        self._run(["sync"])
        result = self._run(["umount", str(mount_point)])
        if not result.success:
            logger.warning("umount %s failed, detaching lazily", mount_point)
            self._run(["umount", "-l", str(mount_point)])


def _to_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class LinuxMetadata(MetadataSource):
    """Enumerate block devices with lsblk, partition tables with sfdisk."""

    def collect(self) -> DiskMetadata:
        result = self._run(["lsblk", "--json", "--bytes", "--output", LSBLK_COLUMNS])
        if not result.success:
            raise __util__.MetadataError(
                f"lsblk failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        try:
            devices = json.loads(result.stdout).get("blockdevices", [])
        except ValueError as e:
            raise __util__.MetadataError(f"Cannot parse lsblk output: {e}") from e

        metadata = DiskMetadata(platform="linux")
        for device in devices:
            if device.get("type") != "disk":
                continue
            path = device.get("path") or f"/dev/{device.get('name')}"
            metadata.disks.append(
                {
                    "identifier": path,
                    "size": _to_int(device.get("size")),
                    "model": (device.get("model") or "").strip(),
                    "serial": device.get("serial") or "",
                    "partitionTable": device.get("pttype") or "",
                    "layout": self._partition_table(path),
                }
            )
            self._walk(device.get("children") or [], path, metadata.partitions)
        return metadata

    def _partition_table(self, disk: str) -> dict:
        try:
            result = self._run(["sfdisk", "--json", disk])
        except __util__.ToolMissingError:
            logger.debug("sfdisk not available, skipping partition table dump")
            return {}
        if not result.success or not result.stdout.strip():
            return {}
        try:
            return json.loads(result.stdout).get("partitiontable", {})
        except ValueError:
            logger.warning("Cannot parse sfdisk output for %s", disk)
            return {}

    def _walk(self, children, disk: str, partitions: list) -> None:
        for child in children:
            if child.get("type") in ("part", "lvm", "crypt"):
                partitions.append(self._descriptor(child, disk))
            self._walk(child.get("children") or [], disk, partitions)

    @staticmethod
    def _descriptor(device: dict, disk: str) -> PartitionDescriptor:
        path = device.get("path") or f"/dev/{device.get('name')}"
        part_type = device.get("parttype") or ""
        label = device.get("label") or device.get("partlabel") or ""
        mountpoint = device.get("mountpoint")
        return PartitionDescriptor(
            identifier=path,
            size=_to_int(device.get("size")),
            fstype=(device.get("fstype") or "").lower(),
            label=label,
            is_efi=is_efi_type(part_type),
            is_recovery=is_recovery_type(part_type),
            is_system=mountpoint == "/",
            device=path,
            mountpoint=mountpoint,
            parent=disk,
            type_id=part_type,
            kind="lvm" if device.get("type") == "lvm" else "part",
        )


class LinuxSnapshots(SnapshotProvider):
    """LVM copy-on-write snapshots of logical volumes."""

    def supports(self, partition: PartitionDescriptor) -> bool:
        return partition.kind == "lvm" and partition.fstype not in ("", "swap", "vfat")

    def create(
        self, partition: PartitionDescriptor, timeout: float
    ) -> __util__.SnapshotHandle:
        result = self._run(
            [
                "lvs",
                "--noheadings",
                "--separator",
                "|",
                "-o",
                "vg_name,lv_name",
                partition.device,
            ]
        )
        if not result.success or "|" not in result.stdout:
            raise __util__.SnapshotError(
                f"{partition.identifier} is not a logical volume: {result.stderr.strip()}"
            )
        vg, lv = (part.strip() for part in result.stdout.strip().split("|", 1))
        name = f"{lv}{SNAPSHOT_SUFFIX}"

        result = self._run(
            [
                "lvcreate",
                "--snapshot",
                "--extents",
                "10%ORIGIN",
                "--name",
                name,
                f"{vg}/{lv}",
            ],
            timeout=timeout,
        )
        if not result.success:
            raise __util__.SnapshotError(
                f"lvcreate failed for {vg}/{lv}: {result.stderr.strip()}"
            )
        logger.info("Created LVM snapshot %s/%s", vg, name)
        return __util__.SnapshotHandle(
            partition_id=partition.identifier,
            path=f"/dev/{vg}/{name}",
            snapshot_id=f"{vg}/{name}",
        )

    def delete(self, handle: __util__.SnapshotHandle, timeout: float) -> None:
        result = self._run(["lvremove", "--force", handle.snapshot_id], timeout=timeout)
        if not result.success:
            raise __util__.SnapshotError(
                f"lvremove failed for {handle.snapshot_id}: {result.stderr.strip()}"
            )
        logger.info("Removed LVM snapshot %s", handle.snapshot_id)


class LinuxCapture(CaptureCommands):
    """partclone images, tar for a mounted EFI partition, rsync for folders."""

    def required_tools(self, kind: BackupKind) -> list[str]:
        if kind is BackupKind.IMAGE:
            return ["partclone.dd", "tar"]
        return ["rsync"]

    @staticmethod
    def _imager(fstype: str) -> str:
        name = PARTCLONE_FILESYSTEMS.get(fstype)
        if name and __util__.find_tool(f"partclone.{name}"):
            return f"partclone.{name}"
        return "partclone.dd"

    def image_command(
        self, partition: PartitionDescriptor, source: str, dest_dir: Path
    ) -> CaptureCommand:
        tool = self._imager(partition.fstype)
        artifact = dest_dir / self.artifact_name(partition)
        argv = [tool]
        if tool != "partclone.dd":
            argv.append("-c")
        argv += ["-s", source, "-o", str(artifact)]
        return CaptureCommand(
            identifier=partition.identifier, argv=argv, artifact=str(artifact)
        )

    def efi_command(self, partition: PartitionDescriptor, dest_dir: Path) -> CaptureCommand:
        name = encode_name_for_dir(partition.identifier)
        if partition.mountpoint:
            artifact = dest_dir / f"efi-{name}.tar.gz"
            argv = ["tar", "-C", partition.mountpoint, "-czf", str(artifact), "."]
        else:
            artifact = dest_dir / f"efi-{name}.img"
            argv = ["partclone.dd", "-s", partition.device, "-o", str(artifact)]
        return CaptureCommand(
            identifier=partition.identifier, argv=argv, artifact=str(artifact), efi=True
        )

    def files_command(self, source: str, dest_dir: Path) -> CaptureCommand:
        argv = ["rsync", "-a", "--delete", f"{source.rstrip('/')}/", f"{dest_dir}/"]
        return CaptureCommand(identifier=source, argv=argv, artifact=str(dest_dir))
