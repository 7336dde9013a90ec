"""Disk and partition metadata collection and capture planning."""

import logging
from dataclasses import dataclass, field

from .. import __util__
from .models import DiskMetadata, PartitionDescriptor

logger = logging.getLogger(__name__)

# Filesystems that hold no data worth imaging on their own
SKIPPED_FSTYPES = frozenset({"linux_raid_member", "lvm2_member", "crypto_luks"})


@dataclass
class CapturePlan:
    """Partitions split by how the capture stage handles them.

    Attributes:
        targets: Partitions imaged in enumeration order
        efi: EFI system partitions, captured best effort after the targets
        skipped: (partition, reason) pairs that are not captured at all
    """

    targets: list[PartitionDescriptor] = field(default_factory=list)
    efi: list[PartitionDescriptor] = field(default_factory=list)
    skipped: list[tuple[PartitionDescriptor, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.targets) + len(self.efi)


def collect(source, platform: str, required: bool = True) -> DiskMetadata:
    """Enumerate disks and partitions through ``source``.

    Args:
        source: The platform MetadataSource
        platform: Platform name recorded in empty metadata
        required: Whether a collection failure ends the job

    Returns:
        The collected metadata, or empty metadata when an optional
        collection failed

    Raises:
        MetadataError: If collection failed and ``required`` is set
    """
    try:
        metadata = source.collect()
    except (__util__.MetadataError, __util__.ToolMissingError, __util__.StageTimeoutError) as e:
        if required:
            raise __util__.MetadataError(f"Disk enumeration failed: {e}") from e
        logger.warning("Disk enumeration failed, continuing without metadata: %s", e)
        return DiskMetadata(platform=platform)

    logger.info(
        "Found %d disk(s) and %d partition(s)",
        len(metadata.disks),
        len(metadata.partitions),
    )
    for partition in metadata.partitions:
        flags = [
            name
            for name, on in (
                ("efi", partition.is_efi),
                ("recovery", partition.is_recovery),
                ("system", partition.is_system),
            )
            if on
        ]
        logger.debug(
            "  %s %s %d bytes %s",
            partition.identifier,
            partition.fstype or "-",
            partition.size,
            ",".join(flags),
        )
    return metadata


def plan_capture(partitions, capture_commands) -> CapturePlan:
    """Decide which partitions the capture stage images.

    Recovery partitions, swap, container members (LVM physical volumes,
    LUKS and RAID members) and partitions without a filesystem are skipped.
    The platform's CaptureCommands may veto further partitions.
    """
    plan = CapturePlan()
    for partition in partitions:
        if partition.is_efi:
            plan.efi.append(partition)
            continue
        reason = _skip_reason(partition) or capture_commands.skip_reason(partition)
        if reason:
            logger.info("Skipping %s: %s", partition.identifier, reason)
            plan.skipped.append((partition, reason))
            continue
        plan.targets.append(partition)
    return plan


def _skip_reason(partition: PartitionDescriptor) -> str | None:
    if partition.is_recovery:
        return "recovery partition"
    fstype = partition.fstype.lower()
    if not fstype:
        return "no filesystem"
    if fstype == "swap":
        return "swap"
    if fstype in SKIPPED_FSTYPES:
        return f"{fstype} container member"
    return None
