# pyright: standard

"""nas-backup-agent: nas_backup_agent/platform/windows.py
net use sessions, PowerShell storage enumeration, VSS shadow copies,
wimlib images and robocopy mirrors.
"""

import logging
import os
import re
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
    parse_json_list,
)

logger = logging.getLogger(__name__)

POWERSHELL = "powershell.exe"

# Drive letter temporarily assigned to the EFI system partition
EFI_MOUNT_LETTER = "S:"

DRIVE_LETTER = re.compile(r"^[A-Za-z]:$")

DISK_SCRIPT = """
Get-Disk | Select-Object Number, FriendlyName, SerialNumber, Size,
    PartitionStyle, BusType, IsBoot, IsSystem |
ConvertTo-Json -Compress
"""

PARTITION_SCRIPT = """
Get-Partition | Select-Object DiskNumber, PartitionNumber, DriveLetter, Offset, Size,
    Type, GptType, MbrType, IsBoot, IsSystem, IsHidden, AccessPaths |
ConvertTo-Json -Compress
"""

VOLUME_SCRIPT = """
Get-Volume | Select-Object DriveLetter, FileSystem, FileSystemLabel, Size, SizeRemaining |
ConvertTo-Json -Compress
"""

SHADOW_SCRIPT = """
$r = (Get-WmiObject -List Win32_ShadowCopy).Create('{volume}', 'ClientAccessible')
if ($r.ReturnValue -ne 0) {{ Write-Error "Win32_ShadowCopy.Create returned $($r.ReturnValue)"; exit 1 }}
Get-WmiObject Win32_ShadowCopy | Where-Object {{ $_.ID -eq $r.ShadowID }} |
    Select-Object ID, DeviceObject | ConvertTo-Json -Compress
"""


def powershell(script: str) -> list[str]:
    return [
        POWERSHELL,
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        script,
    ]


def _letter(value) -> str:
    """PowerShell serializes an unset DriveLetter as a NUL character."""
    value = str(value or "").strip("\x00").strip()
    return value[:1].upper() if value else ""


class WindowsShare(ShareMounter):
    """Authenticate to the share with net use; captures write to the UNC path."""

    def root(self, target: ShareTarget) -> Path:
        return Path(target.unc_path)

    def is_mounted(self, target: ShareTarget) -> bool:
        return os.path.isdir(target.unc_path)

    def mount(self, target: ShareTarget) -> None:
        if self.is_mounted(target):
            logger.debug("%s already reachable", target.unc_path)
            return
        user = target.username
        if target.domain:
            user = f"{target.domain}\\{user}"
        # Password in its own argv slot, never inside a command string
        result = self._run(
            ["net", "use", target.unc_path, target.password, f"/user:{user}", "/persistent:no"]
        )
        if not result.success:
            raise __util__.ShareConnectionError(
                f"Could not connect to {target.unc_path}: "
                f"{(result.stderr or result.stdout).strip() or result.returncode}"
            )
        logger.info("Connected to %s", target.unc_path)

    def unmount(self, target: ShareTarget) -> None:
        result = self._run(["net", "use", target.unc_path, "/delete", "/y"])
        if not result.success:
            logger.debug("net use /delete for %s returned %d", target.unc_path, result.returncode)


class WindowsMetadata(MetadataSource):
    """Enumerate storage with Get-Disk, Get-Partition and Get-Volume."""

    def _query(self, script: str, what: str) -> list:
        result = self._run(powershell(script))
        if not result.success:
            raise __util__.MetadataError(f"{what} failed: {result.stderr.strip()}")
        try:
            return parse_json_list(result.stdout)
        except ValueError as e:
            raise __util__.MetadataError(f"Cannot parse {what} output: {e}") from e

    def collect(self) -> DiskMetadata:
        disks = self._query(DISK_SCRIPT, "Get-Disk")
        partitions = self._query(PARTITION_SCRIPT, "Get-Partition")
        try:
            volumes = self._query(VOLUME_SCRIPT, "Get-Volume")
        except __util__.MetadataError as e:
            logger.warning("Volume details unavailable: %s", e)
            volumes = []

        by_letter = {_letter(v.get("DriveLetter")): v for v in volumes if _letter(v.get("DriveLetter"))}
        system_letter = _letter(os.environ.get("SystemDrive", "C:"))

        metadata = DiskMetadata(platform="windows")
        for disk in disks:
            metadata.disks.append(
                {
                    "identifier": f"disk{disk.get('Number')}",
                    "size": int(disk.get("Size") or 0),
                    "model": (disk.get("FriendlyName") or "").strip(),
                    "serial": (disk.get("SerialNumber") or "").strip(),
                    "partitionTable": str(disk.get("PartitionStyle") or ""),
                    "busType": str(disk.get("BusType") or ""),
                }
            )
        for part in partitions:
            metadata.partitions.append(self._descriptor(part, by_letter, system_letter))
        return metadata

    @staticmethod
    def _descriptor(part: dict, by_letter: dict, system_letter: str) -> PartitionDescriptor:
        letter = _letter(part.get("DriveLetter"))
        volume = by_letter.get(letter, {})
        disk = f"disk{part.get('DiskNumber')}"
        gpt_type = str(part.get("GptType") or "")
        kind_name = str(part.get("Type") or "")
        access_paths = part.get("AccessPaths") or []

        if letter:
            identifier = f"{letter}:"
            device = f"{letter}:\\"
        else:
            identifier = f"{disk}-part{part.get('PartitionNumber')}"
            device = next((p for p in access_paths if p.startswith("\\\\?\\Volume")), "")

        return PartitionDescriptor(
            identifier=identifier,
            size=int(part.get("Size") or 0),
            fstype=str(volume.get("FileSystem") or "").lower(),
            label=str(volume.get("FileSystemLabel") or ""),
            is_efi=is_efi_type(gpt_type) or kind_name == "System",
            is_recovery=is_recovery_type(gpt_type) or kind_name == "Recovery",
            is_system=bool(letter) and letter == system_letter,
            device=device,
            mountpoint=device if letter else None,
            parent=disk,
            type_id=gpt_type or str(part.get("MbrType") or ""),
            kind="part",
        )


class WindowsSnapshots(SnapshotProvider):
    """Volume Shadow Copy snapshots of lettered NTFS/ReFS volumes."""

    def supports(self, partition: PartitionDescriptor) -> bool:
        return bool(DRIVE_LETTER.match(partition.identifier)) and partition.fstype in (
            "ntfs",
            "refs",
        )

    def create(
        self, partition: PartitionDescriptor, timeout: float
    ) -> __util__.SnapshotHandle:
        if not DRIVE_LETTER.match(partition.identifier):
            raise __util__.SnapshotError(f"Cannot shadow {partition.identifier}: no drive letter")
        script = SHADOW_SCRIPT.format(volume=f"{partition.identifier}\\")
        result = self._run(powershell(script), timeout=timeout)
        if not result.success:
            raise __util__.SnapshotError(
                f"Shadow copy of {partition.identifier} failed: {result.stderr.strip()}"
            )
        try:
            shadow = parse_json_list(result.stdout)[0]
        except (ValueError, IndexError) as e:
            raise __util__.SnapshotError(
                f"Unexpected shadow copy output for {partition.identifier}: {e}"
            ) from e
        logger.info("Created shadow copy %s of %s", shadow["ID"], partition.identifier)
        return __util__.SnapshotHandle(
            partition_id=partition.identifier,
            path=shadow["DeviceObject"].rstrip("\\") + "\\",
            snapshot_id=shadow["ID"],
        )

    def delete(self, handle: __util__.SnapshotHandle, timeout: float) -> None:
        result = self._run(
            ["vssadmin", "delete", "shadows", f"/shadow={handle.snapshot_id}", "/quiet"],
            timeout=timeout,
        )
        if not result.success:
            raise __util__.SnapshotError(
                f"Could not delete shadow copy {handle.snapshot_id}: "
                f"{(result.stderr or result.stdout).strip()}"
            )
        logger.info("Deleted shadow copy %s", handle.snapshot_id)


class WindowsCapture(CaptureCommands):
    """wimlib-imagex images, robocopy for EFI contents and folders."""

    image_extension = ".wim"

    def required_tools(self, kind: BackupKind) -> list[str]:
        if kind is BackupKind.IMAGE:
            return ["wimlib-imagex", "robocopy", "mountvol"]
        return ["robocopy"]

    def skip_reason(self, partition: PartitionDescriptor) -> str | None:
        if not DRIVE_LETTER.match(partition.identifier):
            return "no drive letter"
        return None

    def live_source(self, partition: PartitionDescriptor) -> str:
        return partition.device or f"{partition.identifier}\\"

    def image_command(
        self, partition: PartitionDescriptor, source: str, dest_dir: Path
    ) -> CaptureCommand:
        artifact = dest_dir / self.artifact_name(partition)
        name = partition.label or partition.identifier
        argv = ["wimlib-imagex", "capture", source, str(artifact), name, "--compress=LZX"]
        return CaptureCommand(
            identifier=partition.identifier, argv=argv, artifact=str(artifact)
        )

    def efi_command(self, partition: PartitionDescriptor, dest_dir: Path) -> CaptureCommand:
        artifact = dest_dir / f"efi-{encode_name_for_dir(partition.identifier)}"
        argv = [
            "robocopy",
            f"{EFI_MOUNT_LETTER}\\",
            str(artifact),
            "/E",
            "/R:1",
            "/W:1",
            "/NP",
            "/NFL",
            "/NDL",
        ]
        return CaptureCommand(
            identifier=partition.identifier,
            argv=argv,
            artifact=str(artifact),
            before=[["mountvol", EFI_MOUNT_LETTER, "/S"]],
            after=[["mountvol", EFI_MOUNT_LETTER, "/D"]],
            efi=True,
        )

    def files_command(self, source: str, dest_dir: Path) -> CaptureCommand:
        argv = [
            "robocopy",
            source,
            str(dest_dir),
            "/MIR",
            "/R:2",
            "/W:5",
            "/NP",
            "/NFL",
            "/NDL",
            "/MT:8",
        ]
        return CaptureCommand(identifier=source, argv=argv, artifact=str(dest_dir))
