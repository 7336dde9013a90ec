"""Backup coordinator: the single entry point for running a job.

Owns the process-wide state: the busy guard, the job log and the current
progress report. Everything else is delegated to the pipeline, either
in-process or through the detached worker.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, NoReturn, Optional

from filelock import FileLock, Timeout

from .. import __util__
from ..__logger__ import PACKAGE_LOGGER
from ..platform import choose_backend
from ..shareutil import ShareSession
from ..worker import WorkerSupervisor
from . import history
from . import manifest as manifest_utils
from .joblog import JobLog, JobLogHandler
from .models import BackupKind, JobSpec, Phase, ProgressReport, ShareTarget
from .pipeline import BackupPipeline, PipelineOutcome, destination_dir

logger = logging.getLogger(__name__)

LOCK_NAME = "agent.lock"


@dataclass
class BackupResult:
    """A successful job, possibly with warnings."""

    duration: float
    manifest: manifest_utils.Manifest
    manifest_path: Path
    remote_manifest_path: Optional[Path] = None
    warnings: list[str] = field(default_factory=list)
    log: str = ""
    log_file: Optional[Path] = None
    status: str = "success"

    def to_report(self) -> dict:
        """Build the job-result report for the remote server."""
        report = {
            "status": self.status,
            "duration": int(self.duration),
            "log": self.log,
        }
        if self.warnings:
            report["warnings"] = list(self.warnings)
        return report


class BackupCoordinator:
    """Run at most one backup job at a time and expose its state.

    Args:
        config: Loaded Config
        backend_factory: Builds the PlatformBackend for a platform name
        supervisor_factory: Builds the WorkerSupervisor from the config
        session_factory: Builds a ShareSession
        reporter: Receives the remote report dict of every finished job
        clock: Monotonic clock used for durations
        check_admin: Elevation check handed to the pipeline
    """

    def __init__(
        self,
        config,
        backend_factory=choose_backend,
        supervisor_factory=WorkerSupervisor,
        session_factory=ShareSession,
        reporter: Optional[Callable[[dict], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        check_admin: Callable[[], bool] = __util__.is_admin,
    ):
        self.config = config
        self.backend_factory = backend_factory
        self.supervisor_factory = supervisor_factory
        self.session_factory = session_factory
        self.reporter = reporter
        self.clock = clock
        self.check_admin = check_admin

        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._progress: Optional[ProgressReport] = None
        self._log = JobLog()

        self.state_dir = Path(config.agent.state_dir)
        history.set_history_log(
            config.agent.history_file or self.state_dir / "history.log"
        )

    @property
    def is_running(self) -> bool:
        return self._busy.locked()

    def get_progress(self) -> Optional[ProgressReport]:
        with self._state_lock:
            return self._progress

    def get_log(self) -> str:
        with self._state_lock:
            job_log = self._log
        return job_log.text()

    def _publish(self, report: ProgressReport) -> None:
        """Make ``report`` the current progress; percent never goes backwards."""
        with self._state_lock:
            current = self._progress
            if (
                current is not None
                and report.percent < current.percent
                and report.phase.order >= current.phase.order
            ):
                report = replace(report, percent=current.percent)
            self._progress = report

    def build_job(self) -> JobSpec:
        """The job described by the configuration."""
        config = self.config
        return JobSpec(
            platform=__util__.current_platform(config.agent.platform),
            kind=BackupKind(config.backup.kind),
            target=ShareTarget(
                address=config.target.address,
                share=config.target.share,
                username=config.target.username,
                password=config.target.password,
                domain=config.target.domain,
                mount_point=config.target.mount_point,
            ),
            paths=list(config.backup.paths),
            hostname=config.agent.device_name or socket.gethostname(),
        )

    @staticmethod
    def validate_job(job: JobSpec) -> None:
        """Check the job carries what its platform pipeline needs.

        Raises:
            UnsupportedPlatformError: Unknown platform
            InvalidJobError: Missing paths or share credentials
        """
        if job.platform not in __util__.SUPPORTED_PLATFORMS:
            raise __util__.UnsupportedPlatformError(f"Unsupported platform: {job.platform}")
        if job.kind is BackupKind.FILES and not job.paths:
            raise __util__.InvalidJobError("File backups need at least one source path")
        missing = [
            name
            for name in ("address", "share", "username", "password")
            if not getattr(job.target, name)
        ]
        if missing:
            raise __util__.InvalidJobError(
                f"Target share settings missing: {', '.join(missing)}"
            )

    def run_backup(self, job: Optional[JobSpec] = None) -> BackupResult:
        """Run one job to completion.

        Args:
            job: The job to run (defaults to build_job())

        Returns:
            BackupResult on success, possibly with warnings

        Raises:
            AlreadyRunningError: Another job is active, in this or another process
            BackupError: The job failed; ``log`` holds the job log
        """
        # Atomic test-and-set, a concurrent call fails instead of waiting
        if not self._busy.acquire(blocking=False):
            raise __util__.AlreadyRunningError("A backup is already running")
        try:
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                process_lock = FileLock(str(self.state_dir / LOCK_NAME), timeout=0)
                process_lock.acquire()
            except Timeout as e:
                raise __util__.AlreadyRunningError(
                    "A backup is already running in another process"
                ) from e
            except OSError as e:
                self._fail_before_start(job, e)
            try:
                return self._run_locked(job)
            finally:
                process_lock.release()
        finally:
            self._busy.release()

    def _fail_before_start(self, job: Optional[JobSpec], cause: OSError) -> NoReturn:
        """Record and report a job that could not take the process lock.

        Raises:
            BackupError: Always, with the job log attached
        """
        job_log = JobLog()
        with self._state_lock:
            self._log = job_log
            self._progress = None
        error = __util__.BackupError(f"State directory {self.state_dir} is unusable: {cause}")
        logger.error("Backup failed before start: %s", error)
        job_log.append(f"ERROR Backup failed before start: {error}")
        self._publish(ProgressReport(Phase.ERROR, 0, str(error)))
        log_file = self._flush_log(job_log)
        error.log = job_log.text()
        history.log_job(
            status="error",
            kind=job.kind.value if job is not None else self.config.backup.kind,
            hostname=job.hostname if job is not None else None,
            error=str(error),
            log_file=str(log_file) if log_file else None,
        )
        self._report(error.to_report(0))
        raise error from cause

    def trigger_backup(self) -> threading.Thread:
        """Start a job in the background, for schedulers. Fire and forget."""
        thread = threading.Thread(target=self._triggered, name="backup-job", daemon=True)
        thread.start()
        return thread

    def _triggered(self) -> None:
        try:
            self.run_backup()
        except __util__.AlreadyRunningError:
            logger.warning("Scheduled backup skipped: a backup is already running")
        except __util__.BackupError as e:
            logger.debug("Scheduled backup failed: %s", e)

    def _run_locked(self, job: Optional[JobSpec]) -> BackupResult:
        job_log = JobLog()
        with self._state_lock:
            self._log = job_log
            self._progress = None

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        handler = JobLogHandler(job_log)
        previous_level = package_logger.level
        # The job log keeps INFO; console handlers filter on their own level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(handler)

        start = self.clock()
        kind = job.kind.value if job is not None else self.config.backup.kind
        try:
            try:
                if job is None:
                    job = self.build_job()
                self.validate_job(job)
                kind = job.kind.value
                self._publish(ProgressReport(Phase.STARTING, 0, "Starting backup"))
                backend = self.backend_factory(job.platform, self.config)
                if backend.uses_worker(job.kind) and self.config.worker.enabled:
                    outcome = self._run_detached(backend, job)
                else:
                    outcome = self._run_in_process(backend, job)
            except __util__.BackupError:
                raise
            except Exception as e:
                logger.exception("Unexpected failure")
                raise __util__.BackupError(f"Unexpected failure: {e}") from e

            duration = self.clock() - start
            logger.info("Backup succeeded in %d seconds", duration)
            log_file = self._flush_log(job_log)
            result = BackupResult(
                duration=duration,
                manifest=outcome.manifest,
                manifest_path=outcome.manifest_path,
                remote_manifest_path=outcome.remote_manifest_path,
                warnings=outcome.warnings,
                log=job_log.text(),
                log_file=log_file,
            )
        except __util__.BackupError as e:
            duration = self.clock() - start
            last = self.get_progress()
            self._publish(
                ProgressReport(Phase.ERROR, last.percent if last else 0, str(e))
            )
            logger.error("Backup failed after %d seconds: %s", duration, e)
            log_file = self._flush_log(job_log)
            e.log = job_log.text()
            history.log_job(
                status="error",
                kind=kind,
                hostname=job.hostname if job else None,
                duration_seconds=duration,
                error=str(e),
                log_file=str(log_file) if log_file else None,
            )
            self._report(e.to_report(duration))
            raise
        finally:
            package_logger.removeHandler(handler)
            package_logger.setLevel(previous_level)

        history.log_job(
            status="success",
            kind=kind,
            hostname=job.hostname,
            duration_seconds=duration,
            warnings=result.warnings,
            manifest=str(result.manifest_path),
            log_file=str(log_file) if log_file else None,
        )
        self._report(result.to_report())
        return result

    def _session(self, backend, job: JobSpec) -> ShareSession:
        return self.session_factory(
            backend.share,
            job.target,
            attempts=self.config.share.reconnect_attempts,
            delay=self.config.share.reconnect_delay,
        )

    def _run_in_process(self, backend, job: JobSpec) -> PipelineOutcome:
        pipeline = BackupPipeline(
            backend,
            self.config,
            job,
            self._session(backend, job),
            report=self._publish,
            check_admin=self.check_admin,
        )
        return pipeline.run()

    def _run_detached(self, backend, job: JobSpec) -> PipelineOutcome:
        """Hand the job to a detached worker and follow its status file.

        The controller keeps its own share session alive while the worker
        runs, since a capture can outlast the share session lease.
        """
        session = self._session(backend, job)
        session.connect()
        handle = None
        try:
            artifact_dir = destination_dir(session.root, job)
            supervisor = self.supervisor_factory(self.config)
            handle = supervisor.launch(job, artifact_dir=artifact_dir)
            record = supervisor.supervise(
                handle, on_progress=self._publish, keepalive=session.keepalive
            )
        finally:
            if handle is not None and handle.worker_log:
                self._log.extend_raw(
                    ["--- worker log ---", *handle.worker_log.splitlines()]
                )
            session.disconnect()

        try:
            manifest = manifest_utils.read_manifest(Path(record.manifest))
        except (OSError, ValueError, TypeError) as e:
            raise __util__.WorkerError(
                f"Worker finished but its manifest is unreadable: {e}"
            ) from e
        warnings = manifest_utils.evaluate_results(manifest.partitions)
        return PipelineOutcome(
            manifest=manifest,
            manifest_path=Path(record.manifest),
            remote_manifest_path=artifact_dir / manifest_utils.MANIFEST_NAME,
            warnings=warnings,
        )

    def _flush_log(self, job_log: JobLog) -> Optional[Path]:
        path = Path(self.config.agent.log_dir) / f"backup-{__util__.timestamp_for_path()}.log"
        try:
            return job_log.flush_to(path)
        except OSError as e:
            logger.warning("Could not write job log to %s: %s", path, e)
            return None

    def _report(self, report: dict) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter(report)
        except Exception as e:
            logger.warning("Could not report job result: %s", e)
