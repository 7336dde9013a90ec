"""Pytest configuration and shared fixtures."""

import logging
from pathlib import Path

import pytest

from nas_backup_agent import __util__
from nas_backup_agent.config import parse_config
from nas_backup_agent.core.capture import CaptureCommand
from nas_backup_agent.core.models import (
    BackupKind,
    DiskMetadata,
    JobSpec,
    PartitionDescriptor,
    ShareTarget,
)
from nas_backup_agent.platform.common import (
    CaptureCommands,
    MetadataSource,
    PlatformBackend,
    ShareMounter,
    SnapshotProvider,
)


class FakeRunner:
    """Stand-in for run_command.

    ``responses`` maps an executable name to a CommandResult, an exception
    instance, a callable taking the argv, or a list of those consumed in
    order (the last one repeats).
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.timeouts = []
        self.kwargs = []

    def __call__(self, command, timeout=None, **kwargs):
        self.calls.append(list(command))
        self.timeouts.append(timeout)
        self.kwargs.append(kwargs)
        response = self.responses.get(Path(command[0]).name)
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if callable(response) and not isinstance(response, BaseException):
            response = response(command)
        if isinstance(response, BaseException):
            raise response
        if response is None:
            return __util__.CommandResult(command=list(command), returncode=0)
        return response

    def called(self, tool):
        return [c for c in self.calls if Path(c[0]).name == tool]


def result(returncode=0, stdout="", stderr=""):
    return __util__.CommandResult(
        command=["x"], returncode=returncode, stdout=stdout, stderr=stderr
    )


class FakeShare(ShareMounter):
    """Share mounted on a local directory; can fail the first N mounts."""

    def __init__(self, root, fail_mounts=0):
        super().__init__()
        self._root = Path(root)
        self.fail_mounts = fail_mounts
        self.mounted = False
        self.mount_calls = 0
        self.unmount_calls = 0

    def root(self, target):
        return self._root

    def is_mounted(self, target):
        return self.mounted

    def mount(self, target):
        self.mount_calls += 1
        if self.fail_mounts > 0:
            self.fail_mounts -= 1
            raise __util__.ShareConnectionError("host unreachable")
        self._root.mkdir(parents=True, exist_ok=True)
        self.mounted = True

    def unmount(self, target):
        self.unmount_calls += 1
        self.mounted = False


class FakeMetadata(MetadataSource):
    def __init__(self, metadata=None, error=None):
        super().__init__()
        self.metadata = metadata
        self.error = error

    def collect(self):
        if self.error is not None:
            raise self.error
        return self.metadata


class FakeSnapshots(SnapshotProvider):
    def __init__(self, error=None):
        super().__init__()
        self.error = error
        self.created = []
        self.deleted = []

    def supports(self, partition):
        return not partition.is_efi

    def create(self, partition, timeout):
        if self.error is not None:
            raise self.error
        handle = __util__.SnapshotHandle(
            partition_id=partition.identifier,
            path=f"/snap/{partition.identifier.strip('/').replace('/', '_')}",
            snapshot_id=f"snap-{len(self.created)}",
        )
        self.created.append(handle)
        return handle

    def delete(self, handle, timeout):
        self.deleted.append(handle)


class FakeCapture(CaptureCommands):
    """Image with partclone, EFI with tar, folders with robocopy."""

    def __init__(self, tools=None):
        self.tools = tools or []

    def required_tools(self, kind):
        return self.tools

    def image_command(self, partition, source, dest_dir):
        artifact = dest_dir / self.artifact_name(partition)
        return CaptureCommand(
            identifier=partition.identifier,
            argv=["partclone.ext4", "-c", "-s", source, "-o", str(artifact)],
            artifact=str(artifact),
        )

    def efi_command(self, partition, dest_dir):
        artifact = dest_dir / "efi.tar.gz"
        return CaptureCommand(
            identifier=partition.identifier,
            argv=["tar", "-czf", str(artifact), partition.identifier],
            artifact=str(artifact),
            efi=True,
        )

    def files_command(self, source, dest_dir):
        return CaptureCommand(
            identifier=source,
            argv=["robocopy", source, str(dest_dir), "/MIR"],
            artifact=str(dest_dir),
        )


@pytest.fixture
def partitions():
    """A GPT disk with EFI, root, home and swap partitions."""
    return [
        PartitionDescriptor(
            identifier="/dev/sda1",
            size=536870912,
            fstype="vfat",
            is_efi=True,
            device="/dev/sda1",
            mountpoint="/boot/efi",
        ),
        PartitionDescriptor(
            identifier="/dev/sda2",
            size=53687091200,
            fstype="ext4",
            is_system=True,
            device="/dev/sda2",
            mountpoint="/",
        ),
        PartitionDescriptor(
            identifier="/dev/sda3",
            size=107374182400,
            fstype="ext4",
            device="/dev/sda3",
            mountpoint="/home",
        ),
        PartitionDescriptor(
            identifier="/dev/sda4", size=8589934592, fstype="swap", device="/dev/sda4"
        ),
    ]


@pytest.fixture
def disk_metadata(partitions):
    return DiskMetadata(
        platform="linux",
        disks=[{"identifier": "/dev/sda", "size": 256060514304}],
        partitions=partitions,
    )


@pytest.fixture
def share_target():
    return ShareTarget(
        address="192.168.1.10",
        share="active-backup",
        username="backup",
        password="s3cret pass;word",
    )


@pytest.fixture
def config(tmp_path):
    """Config pointing all state into tmp_path, with fast worker settings."""
    config = parse_config(
        {
            "agent": {
                "state_dir": str(tmp_path / "state"),
                "log_dir": str(tmp_path / "logs"),
                "device_name": "office-pc",
                "platform": "linux",
            },
            "target": {
                "address": "192.168.1.10",
                "share": "active-backup",
                "username": "backup",
                "password": "s3cret",
            },
            "backup": {"kind": "image"},
            "worker": {
                "poll_interval": 1,
                "startup_grace": 5,
                "stall_grace": 10,
                "missed_reads": 3,
                "heartbeat_interval": 1,
                "keepalive_interval": 30,
            },
            "share": {"reconnect_attempts": 3, "reconnect_delay": 0},
        }
    )
    return config


@pytest.fixture
def image_job(share_target):
    return JobSpec(
        platform="linux",
        kind=BackupKind.IMAGE,
        target=share_target,
        hostname="office-pc",
        started_at="2026-10-18T03:15:00+00:00",
    )


@pytest.fixture
def files_job(share_target, tmp_path):
    documents = tmp_path / "src" / "Documents"
    pictures = tmp_path / "src" / "Pictures"
    documents.mkdir(parents=True)
    pictures.mkdir(parents=True)
    return JobSpec(
        platform="linux",
        kind=BackupKind.FILES,
        target=share_target,
        paths=[str(documents), str(pictures)],
        hostname="office-pc",
        started_at="2026-10-18T03:15:00+00:00",
    )


@pytest.fixture
def make_backend(tmp_path, disk_metadata):
    """Build a PlatformBackend made of fakes."""

    def _make(
        metadata=None,
        metadata_error=None,
        snapshot_error=None,
        fail_mounts=0,
        tools=None,
        detached=False,
    ):
        return PlatformBackend(
            name="linux",
            share=FakeShare(tmp_path / "share", fail_mounts=fail_mounts),
            metadata=FakeMetadata(metadata or disk_metadata, metadata_error),
            snapshots=FakeSnapshots(snapshot_error),
            capture=FakeCapture(tools),
            detached_image_worker=detached,
        )

    return _make


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Keep handlers added by a test from leaking into the next one."""
    package_logger = logging.getLogger("nas_backup_agent")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    yield
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
    package_logger.setLevel(level)


@pytest.fixture
def sample_config_toml(tmp_path):
    """A complete configuration file body."""
    return f"""
[agent]
state_dir = "{tmp_path / 'state'}"
log_dir = "{tmp_path / 'logs'}"
device_name = "office-pc"

[target]
address = "192.168.1.10"
share = "active-backup"
username = "backup"
password = "s3cret"
domain = "WORKGROUP"

[backup]
kind = "files"
paths = ["/home/alice", "/srv/data"]

[timeouts]
image_capture = 7200
snapshot = 60

[worker]
poll_interval = 2
stall_grace = 90

[share]
reconnect_attempts = 5
reconnect_delay = 10
"""


@pytest.fixture
def config_file(tmp_path, sample_config_toml):
    """The sample configuration written to disk."""
    path = tmp_path / "config.toml"
    path.write_text(sample_config_toml)
    return path
