"""Launch and supervise the detached worker.

The worker is a fully independent process: its own session/process group,
stdio connected to the null device, never piped back. The supervisor learns
everything from the status file, plus the artifact size as a secondary
heartbeat while a long capture is silent.
"""

import dataclasses
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from ..core.capture import artifact_size
from ..core.models import JobSpec, Phase, ProgressReport
from .status import WorkerStatusRecord, read_status, worker_error

logger = logging.getLogger(__name__)

JOB_FILE = "job.json"
STATUS_FILE = "status.json"
LOG_FILE = "worker.log"

# Windows process creation flags
DETACHED_PROCESS = 0x00000008
CREATE_NEW_PROCESS_GROUP = 0x00000200
CREATE_NO_WINDOW = 0x08000000
CREATE_BREAKAWAY_FROM_JOB = 0x01000000


@dataclass
class WorkerHandle:
    """A launched worker and the files it communicates through."""

    work_dir: Path
    pid: int
    launched_at: float
    artifact_dir: Optional[Path] = None
    worker_log: str = ""
    process: Optional[subprocess.Popen] = field(default=None, repr=False)

    @property
    def job_path(self) -> Path:
        return self.work_dir / JOB_FILE

    @property
    def status_path(self) -> Path:
        return self.work_dir / STATUS_FILE

    @property
    def log_path(self) -> Path:
        return self.work_dir / LOG_FILE


def worker_command(job_path: Path, python: str = sys.executable) -> list[str]:
    return [python, "-m", "nas_backup_agent", "worker", "--job", str(job_path)]


def _detach_kwargs(breakaway: bool = True, windows: bool = os.name == "nt") -> dict:
    """Popen options that start the worker outside the controller's lifetime.

    On Windows the worker also breaks away from the controller's job object.
    """
    if windows:
        flags = DETACHED_PROCESS | CREATE_NEW_PROCESS_GROUP | CREATE_NO_WINDOW
        if breakaway:
            flags |= CREATE_BREAKAWAY_FROM_JOB
        return {"creationflags": flags}
    return {"start_new_session": True}


class WorkerSupervisor:
    """Start a worker for one job and follow it to a terminal phase.

    Args:
        config: Loaded Config (worker settings, timeouts, state_dir)
        popen: Process factory
        clock: Monotonic clock
        sleep: Sleep function between polls
    """

    def __init__(
        self,
        config,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.settings = config.worker
        self.popen = popen
        self.clock = clock
        self.sleep = sleep

    def launch(self, job: JobSpec, artifact_dir: Optional[Path] = None) -> WorkerHandle:
        """Write the job file and start the worker.

        The job file holds the share credentials: it is private to the owner
        and the worker deletes it as soon as it has read it.

        Raises:
            WorkerStartupError: If the process could not be created
        """
        base = Path(self.config.agent.state_dir) / "worker"
        base.mkdir(parents=True, exist_ok=True, mode=0o700)
        work_dir = Path(tempfile.mkdtemp(prefix="job-", dir=base))

        payload = {
            "job": job.to_dict(),
            "config": dataclasses.asdict(self.config),
            "status": str(work_dir / STATUS_FILE),
            "log": str(work_dir / LOG_FILE),
        }
        job_path = __util__.write_private_file(work_dir / JOB_FILE, json.dumps(payload))

        command = worker_command(job_path)
        logger.info("Launching detached worker for %s backup", job.kind.value)
        options = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
            "cwd": str(work_dir),
        }
        detach = _detach_kwargs()
        try:
            try:
                process = self.popen(command, **options, **detach)
            except OSError as e:
                if not detach.get("creationflags", 0) & CREATE_BREAKAWAY_FROM_JOB:
                    raise
                # The job object forbids breakaway
                logger.warning("Cannot leave the controller job object (%s), retrying", e)
                process = self.popen(command, **options, **_detach_kwargs(breakaway=False))
        except OSError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise __util__.WorkerStartupError(f"Worker failed to start: {e}") from e

        logger.debug("Worker pid %s, work dir %s", process.pid, work_dir)
        return WorkerHandle(
            work_dir=work_dir,
            pid=process.pid,
            launched_at=self.clock(),
            artifact_dir=artifact_dir,
            process=process,
        )

    def poll(self, handle: WorkerHandle) -> Optional[WorkerStatusRecord]:
        return read_status(handle.status_path)

    def supervise(
        self,
        handle: WorkerHandle,
        on_progress: Optional[Callable[[ProgressReport], None]] = None,
        keepalive: Optional[Callable[[], bool]] = None,
    ) -> WorkerStatusRecord:
        """Poll the worker until it reaches a terminal phase.

        A missing or unchanged status file only counts after
        ``missed_reads`` consecutive polls, so one unlucky read never
        declares the worker dead.

        Args:
            handle: The launched worker
            on_progress: Called when phase, percent or detail changed
            keepalive: Called every keepalive_interval to keep the share up

        Returns:
            The final record (phase done)

        Raises:
            WorkerStartupError: No status file within the startup grace
            WorkerStalledError: Status stopped advancing past the stall grace
            BackupError: The worker reported an error, as the class it raised
            StageTimeoutError: The worker exceeded the overall timeout
        """
        settings = self.settings
        last_seen: Optional[WorkerStatusRecord] = None
        last_progress = None
        last_change = self.clock()
        last_keepalive = self.clock()
        last_size = None
        missed = 0

        try:
            while True:
                record = self.poll(handle)
                now = self.clock()

                if record is None:
                    missed += 1
                    if last_seen is None:
                        if (
                            now - handle.launched_at > settings.startup_grace
                            and missed >= settings.missed_reads
                        ):
                            self._kill(handle, None)
                            raise __util__.WorkerStartupError(
                                "Worker failed to start: no status file after "
                                f"{settings.startup_grace:g} seconds, see worker log"
                            )
                else:
                    if last_seen is None or record.timestamp != last_seen.timestamp:
                        last_change = now
                        missed = 0
                    else:
                        missed += 1
                    last_seen = record

                    progress = (record.phase, record.percent, record.detail)
                    if progress != last_progress:
                        if last_progress is None or progress[::2] != last_progress[::2]:
                            logger.info("Worker: %s %s", record.phase.value, record.detail)
                        last_progress = progress
                        if on_progress is not None:
                            on_progress(record.to_progress())

                    if record.phase is Phase.DONE:
                        return record
                    if record.phase is Phase.ERROR:
                        raise worker_error(record)

                if last_seen is not None and now - last_change > settings.stall_grace:
                    size = None
                    if handle.artifact_dir is not None:
                        size = artifact_size(str(handle.artifact_dir))
                    if size is not None and size != last_size:
                        logger.debug("Worker silent but artifacts grew to %d bytes", size)
                        last_size = size
                        last_change = now
                        missed = 0
                    elif missed >= settings.missed_reads:
                        self._kill(handle, last_seen)
                        raise __util__.WorkerStalledError(
                            f"Worker stopped reporting in phase {last_seen.phase.value} "
                            f"for {now - last_change:.0f} seconds and was declared hung"
                        )

                if now - handle.launched_at > self.config.timeouts.worker:
                    self._kill(handle, last_seen)
                    raise __util__.StageTimeoutError(
                        f"Worker exceeded {self.config.timeouts.worker} seconds and was killed"
                    )

                if keepalive is not None and now - last_keepalive >= settings.keepalive_interval:
                    last_keepalive = now
                    if not keepalive():
                        logger.warning("Share keep-alive failed, worker continues")

                self.sleep(settings.poll_interval)
        finally:
            self.cleanup(handle)

    def _kill(self, handle: WorkerHandle, record: Optional[WorkerStatusRecord]) -> None:
        pid = record.pid if record is not None and record.pid else handle.pid
        if not pid:
            logger.warning("No worker pid known, abandoning the worker")
            return
        logger.warning("Terminating worker pid %d", pid)
        __util__.terminate_pid(pid)

    def read_log(self, handle: WorkerHandle) -> str:
        try:
            return handle.log_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def cleanup(self, handle: WorkerHandle) -> None:
        """Keep the worker log on the handle, then delete the work directory."""
        handle.worker_log = self.read_log(handle)
        shutil.rmtree(handle.work_dir, ignore_errors=True)
        if handle.process is not None:
            # Reap the child if it already exited, never wait for it
            handle.process.poll()
