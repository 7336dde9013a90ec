"""Manifest assembly and job-level result evaluation.

A manifest records what a job captured: job metadata, the full disk and
partition layout, and every per-partition (or per-folder) outcome. The
version field lets readers tell this format apart from legacy manifests.
"""

import json
import logging
import platform
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .. import AGENT_NAME, __util__
from .models import BackupKind, CaptureResult, DiskMetadata

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "2.0"
MANIFEST_NAME = "manifest.json"

# Artifact format recorded for each platform and backup kind
FORMATS = {
    ("linux", BackupKind.IMAGE): "partclone",
    ("darwin", BackupKind.IMAGE): "udzo-dmg",
    ("windows", BackupKind.IMAGE): "wim",
    ("linux", BackupKind.FILES): "rsync-mirror",
    ("darwin", BackupKind.FILES): "rsync-mirror",
    ("windows", BackupKind.FILES): "robocopy-mirror",
}


@dataclass
class Manifest:
    """Versioned record of one job."""

    format: str
    hostname: str
    timestamp: str
    os: str
    os_version: str
    arch: str
    disk: dict
    partitions: list[CaptureResult] = field(default_factory=list)
    agent: str = AGENT_NAME
    kind: str = "image"
    version: str = MANIFEST_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "format": self.format,
            "kind": self.kind,
            "hostname": self.hostname,
            "timestamp": self.timestamp,
            "os": self.os,
            "osVersion": self.os_version,
            "arch": self.arch,
            "disk": self.disk,
            "partitions": [r.to_dict() for r in self.partitions],
            "agent": self.agent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        version = str(data.get("version", "1.0"))
        if version.split(".")[0] != MANIFEST_VERSION.split(".")[0]:
            raise ValueError(f"Unsupported manifest version: {version}")
        return cls(
            version=version,
            format=data.get("format", ""),
            kind=data.get("kind", "image"),
            hostname=data.get("hostname", ""),
            timestamp=data.get("timestamp", ""),
            os=data.get("os", ""),
            os_version=data.get("osVersion", ""),
            arch=data.get("arch", ""),
            disk=data.get("disk", {}),
            partitions=[CaptureResult.from_dict(p) for p in data.get("partitions", [])],
            agent=data.get("agent", ""),
        )

    @property
    def failed(self) -> list[CaptureResult]:
        return [r for r in self.partitions if not r.success]


def aggregate(
    disk_metadata: DiskMetadata,
    results: list[CaptureResult],
    kind: BackupKind = BackupKind.IMAGE,
    hostname: str | None = None,
    timestamp: str | None = None,
) -> Manifest:
    """Combine disk metadata and capture outcomes into a manifest.

    Every result is recorded, successful or not, in capture order.
    """
    return Manifest(
        format=FORMATS.get((disk_metadata.platform, kind), "unknown"),
        kind=kind.value,
        hostname=hostname or socket.gethostname(),
        timestamp=timestamp or __util__.utc_now_iso(),
        os=disk_metadata.platform,
        os_version=platform.release(),
        arch=platform.machine(),
        disk=disk_metadata.to_dict(),
        partitions=list(results),
    )


def evaluate_results(results: list[CaptureResult]) -> list[str]:
    """Decide whether accumulated capture results make the job fail.

    EFI captures are best effort: their failures become warnings and never
    count towards "all failed" on their own.

    Returns:
        Warnings for a job that succeeded with failures (empty if clean)

    Raises:
        AllPartitionsFailedError: If every non-EFI capture failed
    """
    core = [r for r in results if not r.efi]
    failed = [r for r in core if not r.success]
    efi_failed = [r for r in results if r.efi and not r.success]

    for result in efi_failed:
        logger.warning(
            "EFI partition %s could not be captured: %s", result.identifier, result.error
        )

    if core and len(failed) == len(core):
        details = "; ".join(f"{r.identifier}: {r.error}" for r in failed)
        raise __util__.AllPartitionsFailedError(
            f"All {len(core)} capture(s) failed: {details}"
        )

    warnings = []
    if failed:
        warnings.append(
            f"{len(failed)} of {len(core)} capture(s) failed: "
            + ", ".join(r.identifier for r in failed)
        )
    for result in efi_failed:
        warnings.append(f"EFI partition {result.identifier} was not captured")
    return warnings


def write_manifest(manifest: Manifest, path: Path) -> Path:
    """Write the manifest atomically and return its path."""
    path = Path(path)
    __util__.atomic_write_text(
        path, json.dumps(manifest.to_dict(), indent=2) + "\n", mode=0o644
    )
    logger.info("Manifest written to %s", path)
    return path


def read_manifest(path: Path) -> Manifest:
    with open(path, encoding="utf-8") as f:
        return Manifest.from_dict(json.load(f))
