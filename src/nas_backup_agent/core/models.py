"""Data model shared by the pipeline stages, the coordinator and the worker."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..__util__ import utc_now_iso


class BackupKind(Enum):
    """What a job captures."""

    IMAGE = "image"  # whole partitions
    FILES = "files"  # mirrored folders


class Phase(Enum):
    """Job phases, in execution order."""

    STARTING = "starting"
    ADMIN_CHECK = "admin-check"
    CONNECT = "connect"
    METADATA = "metadata"
    TOOL_CHECK = "tool-check"
    CAPTURE = "capture"
    EFI = "efi"
    MANIFEST = "manifest"
    UPLOAD = "upload"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.DONE, Phase.ERROR)

    @property
    def order(self) -> int:
        return list(Phase).index(self)


# Band of overall job percent covered by each phase
PHASE_BANDS: dict[Phase, tuple[int, int]] = {
    Phase.STARTING: (0, 2),
    Phase.ADMIN_CHECK: (2, 4),
    Phase.CONNECT: (4, 8),
    Phase.METADATA: (8, 12),
    Phase.TOOL_CHECK: (12, 15),
    Phase.CAPTURE: (15, 85),
    Phase.EFI: (85, 90),
    Phase.MANIFEST: (90, 94),
    Phase.UPLOAD: (94, 99),
    Phase.DONE: (100, 100),
    Phase.ERROR: (0, 100),
}


def clamp_percent(value: Any) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


def phase_percent(phase: Phase, fraction: float = 0.0) -> int:
    """Overall job percent for a position inside ``phase``."""
    low, high = PHASE_BANDS[phase]
    fraction = max(0.0, min(1.0, fraction))
    return clamp_percent(round(low + (high - low) * fraction))


@dataclass(frozen=True)
class ProgressReport:
    """Latest progress of the running job."""

    phase: Phase
    percent: int
    detail: str = ""

    def __post_init__(self):
        object.__setattr__(self, "percent", clamp_percent(self.percent))

    def to_dict(self) -> dict:
        return {"phase": self.phase.value, "percent": self.percent, "detail": self.detail}


@dataclass(frozen=True)
class PartitionDescriptor:
    """Platform-neutral view of one partition or volume.

    Attributes:
        identifier: Drive letter, device path or logical name
        size: Size in bytes
        fstype: Filesystem type (lowercase, may be empty)
        label: Human readable label
        is_efi: EFI system partition
        is_recovery: Vendor recovery partition
        is_system: Holds the running operating system
        device: Path used for raw reads (block device, volume path)
        mountpoint: Where the filesystem is mounted, if anywhere
        parent: Identifier of the disk holding the partition
        type_id: Partition type GUID, MBR code or content hint
        kind: "part", "lvm" or "volume"
    """

    identifier: str
    size: int = 0
    fstype: str = ""
    label: str = ""
    is_efi: bool = False
    is_recovery: bool = False
    is_system: bool = False
    device: str = ""
    mountpoint: Optional[str] = None
    parent: Optional[str] = None
    type_id: str = ""
    kind: str = "part"

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "size": self.size,
            "fstype": self.fstype,
            "label": self.label,
            "isEFI": self.is_efi,
            "isRecovery": self.is_recovery,
            "isSystem": self.is_system,
            "device": self.device,
            "mountpoint": self.mountpoint,
            "parent": self.parent,
            "typeId": self.type_id,
            "kind": self.kind,
        }


@dataclass
class DiskMetadata:
    """Result of one metadata collection."""

    platform: str
    disks: list[dict] = field(default_factory=list)
    partitions: list[PartitionDescriptor] = field(default_factory=list)
    captured_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "disks": self.disks,
            "partitions": [p.to_dict() for p in self.partitions],
            "capturedAt": self.captured_at,
        }


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of capturing one partition or one source folder."""

    identifier: str
    success: bool
    artifact_path: Optional[str] = None
    artifact_size: Optional[int] = None
    error: Optional[str] = None
    efi: bool = False
    duration: float = 0.0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"identifier": self.identifier, "success": self.success}
        if self.artifact_path is not None:
            data["artifactPath"] = self.artifact_path
        if self.artifact_size is not None:
            data["artifactSize"] = self.artifact_size
        if self.error is not None:
            data["error"] = self.error
        data["efi"] = self.efi
        data["duration"] = round(self.duration, 3)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureResult":
        return cls(
            identifier=data["identifier"],
            success=bool(data["success"]),
            artifact_path=data.get("artifactPath"),
            artifact_size=data.get("artifactSize"),
            error=data.get("error"),
            efi=bool(data.get("efi", False)),
            duration=float(data.get("duration", 0.0)),
        )


@dataclass(frozen=True)
class ShareTarget:
    """Where backups go and how to authenticate."""

    address: str
    share: str
    username: str = ""
    password: str = ""
    domain: Optional[str] = None
    mount_point: Optional[str] = None

    @property
    def unc_path(self) -> str:
        return f"\\\\{self.address}\\{self.share}"

    @property
    def smb_path(self) -> str:
        return f"//{self.address}/{self.share}"

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks
        return f"ShareTarget({self.smb_path!r}, user={self.username!r})"


@dataclass
class JobSpec:
    """Everything a pipeline run needs to know about one job."""

    platform: str
    kind: BackupKind
    target: ShareTarget
    paths: list[str] = field(default_factory=list)
    hostname: str = ""
    started_at: str = field(default_factory=utc_now_iso)
    job_id: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobSpec":
        return cls(
            platform=data["platform"],
            kind=BackupKind(data["kind"]),
            target=ShareTarget(**data["target"]),
            paths=list(data.get("paths", [])),
            hostname=data.get("hostname", ""),
            started_at=data.get("started_at", utc_now_iso()),
            job_id=data.get("job_id", ""),
        )
