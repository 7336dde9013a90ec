"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class TargetConfig:
    """Remote storage target configuration.

    Attributes:
        address: Hostname or IP address of the NAS
        share: SMB share name receiving the backups
        username: Share user
        password: Share password
        domain: Optional SMB domain / workgroup
        mount_point: Local mount point (linux/darwin); None picks a default
    """

    address: str = ""
    share: str = "active-backup"
    username: str = ""
    password: str = ""
    domain: Optional[str] = None
    mount_point: Optional[str] = None


@dataclass
class BackupConfig:
    """What to back up.

    Attributes:
        kind: "image" for partition images, "files" for folder mirroring
        paths: Source folders for file backups
    """

    kind: str = "files"
    paths: list[str] = field(default_factory=list)


@dataclass
class TimeoutConfig:
    """Hard timeouts in seconds for each kind of external operation."""

    image_capture: int = 14400
    file_capture: int = 3600
    snapshot: int = 120
    metadata: int = 60
    share: int = 60
    command: int = 60
    worker: int = 86400


@dataclass
class WorkerConfig:
    """Detached worker supervision settings.

    Attributes:
        enabled: Use the detached worker where the platform requires it
        poll_interval: Seconds between status file polls
        startup_grace: Seconds to wait for the first status file
        stall_grace: Seconds a status timestamp may stay unchanged
        missed_reads: Consecutive missed/unchanged reads before acting
        heartbeat_interval: Seconds between worker heartbeat writes
        keepalive_interval: Seconds between share keep-alive checks
    """

    enabled: bool = True
    poll_interval: float = 3.0
    startup_grace: float = 30.0
    stall_grace: float = 60.0
    missed_reads: int = 3
    heartbeat_interval: float = 10.0
    keepalive_interval: float = 600.0


@dataclass
class ShareConfig:
    """Share session behaviour."""

    reconnect_attempts: int = 3
    reconnect_delay: float = 5.0


@dataclass
class AgentConfig:
    """Global agent settings.

    Attributes:
        state_dir: Directory for locks, manifests and worker files
        log_dir: Directory receiving one log file per job
        device_name: Name used in backup paths (defaults to hostname)
        platform: Override platform detection (windows, darwin, linux)
        history_file: JSON-lines job history (None = state_dir/history.log)
    """

    state_dir: str = "/var/lib/nas-backup-agent"
    log_dir: str = "/var/log/nas-backup-agent"
    device_name: str = ""
    platform: Optional[str] = None
    history_file: Optional[str] = None


@dataclass
class Config:
    """Root configuration object."""

    agent: AgentConfig = field(default_factory=AgentConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    share: ShareConfig = field(default_factory=ShareConfig)
