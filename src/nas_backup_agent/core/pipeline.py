"""The per-job phase state machine.

The same pipeline runs in-process (linux, darwin, windows file backups) and
inside the detached worker (windows image backups). It only talks to the
platform through the PlatformBackend interfaces.

Phases: starting, admin-check, connect, metadata, tool-check, capture, efi,
manifest, upload, done. Any exception ends the run; the caller maps it to
the error phase.
"""

import logging
import os
import shutil
import socket
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .. import __util__, encode_name_for_dir
from . import manifest as manifest_utils
from . import metadata as metadata_utils
from .capture import CaptureExecutor
from .models import (
    BackupKind,
    CaptureResult,
    JobSpec,
    Phase,
    ProgressReport,
    phase_percent,
)
from .snapshot import SnapshotManager

logger = logging.getLogger(__name__)

IMAGE_ROOT = "ImageBackup"
FILES_ROOT = "FileBackup"


@dataclass
class PipelineOutcome:
    """What a successful run produced."""

    manifest: manifest_utils.Manifest
    manifest_path: Path
    remote_manifest_path: Optional[Path] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def results(self) -> list[CaptureResult]:
        return self.manifest.partitions


def job_timestamp(job: JobSpec) -> str:
    try:
        started = datetime.fromisoformat(job.started_at)
    except ValueError:
        started = None
    return __util__.timestamp_for_path(started)


def destination_dir(root: Path, job: JobSpec) -> Path:
    """Directory on the share receiving this job's artifacts."""
    base = IMAGE_ROOT if job.kind is BackupKind.IMAGE else FILES_ROOT
    host = encode_name_for_dir(job.hostname or socket.gethostname())
    return Path(root) / base / host / job_timestamp(job)


def folder_names(paths: list[str]) -> list[str]:
    """Unique directory names for mirrored source folders."""
    names = []
    seen: dict[str, int] = {}
    for path in paths:
        name = encode_name_for_dir(Path(path.rstrip("/\\")).name or path)
        count = seen.get(name, 0) + 1
        seen[name] = count
        names.append(name if count == 1 else f"{name}-{count}")
    return names


class BackupPipeline:
    """Run one job through every phase.

    Args:
        backend: PlatformBackend of the host
        config: Loaded Config
        job: The job to run
        session: ShareSession bracketing every remote operation
        report: Called with each new ProgressReport
        executor: CaptureExecutor (defaults to one running real commands)
        check_admin: Elevation check
    """

    def __init__(
        self,
        backend,
        config,
        job: JobSpec,
        session,
        report: Optional[Callable[[ProgressReport], None]] = None,
        executor: Optional[CaptureExecutor] = None,
        check_admin: Callable[[], bool] = __util__.is_admin,
    ):
        self.backend = backend
        self.config = config
        self.job = job
        self.session = session
        self._report = report
        self.executor = executor or CaptureExecutor(
            command_timeout=config.timeouts.command
        )
        self.snapshots = SnapshotManager(backend.snapshots, config.timeouts.snapshot)
        self.check_admin = check_admin
        self.results: list[CaptureResult] = []
        self.phase = Phase.STARTING

    def progress(self, phase: Phase, fraction: float = 0.0, detail: str = "") -> None:
        self.phase = phase
        report = ProgressReport(phase, phase_percent(phase, fraction), detail)
        logger.debug("Progress: %s %d%% %s", phase.value, report.percent, detail)
        if self._report is not None:
            self._report(report)

    def run(self) -> PipelineOutcome:
        """Execute the job.

        Raises:
            BackupError: Any job-level failure, see __util__ for the taxonomy
        """
        job = self.job
        logger.info(__util__.log_heading(f"{job.kind.value} backup of {job.hostname}"))
        self.progress(Phase.STARTING, detail="Starting backup")
        try:
            self._admin_check()
            dest = self._connect()
            disk_metadata, plan = self._collect_metadata()
            self._check_tools()
            if job.kind is BackupKind.IMAGE:
                self._capture_partitions(plan, dest)
                self._capture_efi(plan, dest)
            else:
                self._capture_folders(dest)
            manifest, local_path, warnings = self._build_manifest(disk_metadata)
            remote_path = self._upload(local_path, dest)
        finally:
            self.session.disconnect()

        for warning in warnings:
            logger.warning(warning)
        self.progress(Phase.DONE, 1.0, "Backup complete")
        logger.info("Backup finished: %d capture(s)", len(self.results))
        return PipelineOutcome(
            manifest=manifest,
            manifest_path=local_path,
            remote_manifest_path=remote_path,
            warnings=warnings,
        )

    def _admin_check(self) -> None:
        self.progress(Phase.ADMIN_CHECK, detail="Checking privileges")
        if self.backend.requires_admin(self.job.kind) and not self.check_admin():
            raise __util__.PrivilegeError(
                f"{self.job.kind.value} backups on {self.backend.name} require "
                "administrator/root privileges"
            )

    def _connect(self) -> Path:
        self.progress(Phase.CONNECT, detail=f"Connecting to {self.job.target.smb_path}")
        self.session.connect()
        dest = destination_dir(self.session.root, self.job)
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise __util__.ShareConnectionError(
                f"Cannot create {dest} on the share: {e}"
            ) from e
        logger.info("Writing backup to %s", dest)
        self.progress(Phase.CONNECT, 1.0, "Connected")
        return dest

    def _collect_metadata(self):
        self.progress(Phase.METADATA, detail="Reading disk layout")
        image = self.job.kind is BackupKind.IMAGE
        disk_metadata = metadata_utils.collect(
            self.backend.metadata, self.backend.name, required=image
        )
        plan = None
        if image:
            plan = metadata_utils.plan_capture(
                disk_metadata.partitions, self.backend.capture
            )
            if not plan.targets:
                raise __util__.MetadataError("No capturable partitions found")
            logger.info(
                "Capturing %d partition(s), %d EFI, skipping %d",
                len(plan.targets),
                len(plan.efi),
                len(plan.skipped),
            )
        self.progress(Phase.METADATA, 1.0, "Disk layout read")
        return disk_metadata, plan

    def _check_tools(self) -> None:
        self.progress(Phase.TOOL_CHECK, detail="Checking capture tools")
        __util__.require_tools(self.backend.capture.required_tools(self.job.kind))

    def _capture_partitions(self, plan, dest: Path) -> None:
        commands = self.backend.capture
        total = len(plan.targets)
        timeout = self.config.timeouts.image_capture
        for index, partition in enumerate(plan.targets):
            self.progress(
                Phase.CAPTURE,
                index / total,
                f"Capturing {partition.identifier} ({index + 1}/{total})",
            )
            live = commands.live_source(partition)
            with self.snapshots.snapshot(partition, live) as source:
                command = commands.image_command(partition, source, dest)
                self.results.append(self.executor.capture(command, timeout))
        self.progress(Phase.CAPTURE, 1.0, f"Captured {total} partition(s)")

    def _capture_efi(self, plan, dest: Path) -> None:
        total = len(plan.efi)
        for index, partition in enumerate(plan.efi):
            self.progress(
                Phase.EFI, index / total, f"Capturing EFI partition {partition.identifier}"
            )
            command = self.backend.capture.efi_command(partition, dest)
            self.results.append(
                self.executor.capture(command, self.config.timeouts.file_capture)
            )
        self.progress(Phase.EFI, 1.0)

    def _capture_folders(self, dest: Path) -> None:
        paths = self.job.paths
        total = len(paths)
        timeout = self.config.timeouts.file_capture
        for index, (source, name) in enumerate(zip(paths, folder_names(paths))):
            self.progress(
                Phase.CAPTURE, index / total, f"Copying {source} ({index + 1}/{total})"
            )
            if not os.path.isdir(source):
                logger.error("Source folder %s does not exist", source)
                self.results.append(
                    CaptureResult(
                        identifier=source,
                        success=False,
                        error="source folder does not exist",
                    )
                )
                continue
            target = dest / name
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self.results.append(
                    CaptureResult(identifier=source, success=False, error=str(e))
                )
                continue
            command = self.backend.capture.files_command(source, target)
            self.results.append(self.executor.capture(command, timeout))
        self.progress(Phase.CAPTURE, 1.0, f"Copied {total} folder(s)")

    def _build_manifest(self, disk_metadata):
        self.progress(Phase.MANIFEST, detail="Writing manifest")
        manifest = manifest_utils.aggregate(
            disk_metadata,
            self.results,
            kind=self.job.kind,
            hostname=self.job.hostname,
            timestamp=self.job.started_at,
        )
        name = f"{encode_name_for_dir(self.job.hostname)}-{job_timestamp(self.job)}.json"
        local_path = manifest_utils.write_manifest(
            manifest, Path(self.config.agent.state_dir) / "manifests" / name
        )
        # Recorded locally either way, the remote copy only for usable jobs
        warnings = manifest_utils.evaluate_results(self.results)
        self.progress(Phase.MANIFEST, 1.0)
        return manifest, local_path, warnings

    def _upload(self, local_path: Path, dest: Path) -> Path:
        self.progress(Phase.UPLOAD, detail="Reconnecting to upload metadata")
        self.session.reconnect()
        remote_path = dest / manifest_utils.MANIFEST_NAME
        try:
            shutil.copyfile(local_path, remote_path)
        except OSError as e:
            raise __util__.ShareConnectionError(
                f"Could not upload metadata to {remote_path}: {e}. "
                "The captured image data is likely intact."
            ) from e
        logger.info("Manifest uploaded to %s", remote_path)
        self.progress(Phase.UPLOAD, 1.0, "Metadata uploaded")
        return remote_path
