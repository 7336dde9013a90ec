# pyright: standard

"""nas-backup-agent: nas_backup_agent/__util__.py
Common errors and helpers shared by all modules.
"""

import contextlib
import ctypes
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("windows", "darwin", "linux")

# Hide console windows of child processes on Windows
_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)


class BackupError(Exception):
    """Base class for every job-level failure.

    The coordinator attaches the accumulated job log to ``log`` before the
    error leaves ``run_backup``.
    """

    def __init__(self, message: str = "", log: str | None = None) -> None:
        super().__init__(message)
        self.log = log

    def to_report(self, duration: float) -> dict:
        """Build the job-result report for the remote server."""
        report = {
            "status": "error",
            "duration": int(duration),
            "error": str(self),
        }
        if self.log is not None:
            report["log"] = self.log
        return report


class AlreadyRunningError(BackupError):
    """A second job was requested while one is active."""


class InvalidJobError(BackupError):
    """The job description is missing something the platform needs."""


class PrivilegeError(BackupError):
    """Required elevation is missing."""


class ToolMissingError(BackupError):
    """A required external tool could not be found."""


class ShareConnectionError(BackupError):
    """The remote share could not be reached or mounted."""


class MetadataError(BackupError):
    """Disk and partition enumeration failed."""


class SnapshotError(BackupError):
    """A point-in-time snapshot could not be created or removed."""


class PartitionCaptureError(BackupError):
    """Capture of a single partition or folder failed."""


class AllPartitionsFailedError(BackupError):
    """Every capture of the job failed."""


class ReconnectExhaustedError(BackupError):
    """The share could not be re-established before the upload stage."""


class StageTimeoutError(BackupError):
    """An external operation exceeded its hard timeout and was killed."""


class UnsupportedPlatformError(BackupError):
    """The host platform has no backup pipeline."""


class WorkerError(BackupError):
    """The detached worker reported an error or stopped reporting."""


class WorkerStartupError(WorkerError):
    """The detached worker never produced a status file."""


class WorkerStalledError(WorkerError):
    """The detached worker stopped advancing its status file."""


@dataclass
class CommandResult:
    """Outcome of one external command."""

    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class SnapshotHandle:
    """A snapshot created for one partition."""

    partition_id: str
    path: str
    snapshot_id: str
    details: dict = field(default_factory=dict)


def log_heading(msg: str) -> str:
    """Returns a formatted heading line for log output."""
    return f"--[ {msg} ]" + "-" * max(0, 60 - len(msg))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_for_path(when: datetime | None = None) -> str:
    """Timestamp usable as a directory name, e.g. 2026-10-18_031500."""
    when = when or datetime.now(timezone.utc)
    return when.strftime("%Y-%m-%d_%H%M%S")


def current_platform(override: str | None = None) -> str:
    """Map sys.platform to one of the supported pipeline names.

    Raises:
        UnsupportedPlatformError: If the platform has no pipeline
    """
    name = override or sys.platform
    if name == "win32":
        name = "windows"
    elif name.startswith("linux"):
        name = "linux"
    if name not in SUPPORTED_PLATFORMS:
        raise UnsupportedPlatformError(f"Unsupported platform: {name}")
    return name


def run_command(
    command: list[str],
    timeout: float | None = 60,
    check: bool = False,
    input: str | None = None,
    env: dict | None = None,
) -> CommandResult:
    """Run an external command from a discrete argument vector.

    The command is never passed through a shell. On timeout the child is
    killed by subprocess.run before StageTimeoutError is raised.

    Args:
        command: Argument vector
        timeout: Hard timeout in seconds (None for no limit)
        check: Raise BackupError on a non-zero exit code
        input: Text fed to stdin
        env: Environment override

    Returns:
        CommandResult with captured output

    Raises:
        ToolMissingError: If the executable does not exist
        StageTimeoutError: If the command exceeded ``timeout``
    """
    logger.debug("Executing: %s", command[0] if command else command)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            input=input,
            env=env,
            creationflags=_NO_WINDOW,
        )
    except FileNotFoundError as e:
        raise ToolMissingError(f"Required tool not found: {command[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise StageTimeoutError(
            f"{Path(command[0]).name} timed out after {e.timeout} seconds and was killed"
        ) from e

    result = CommandResult(
        command=list(command),
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        duration_seconds=time.monotonic() - start,
    )
    if check and not result.success:
        raise BackupError(
            f"{Path(command[0]).name} failed with exit code {result.returncode}: "
            f"{result.stderr.strip()[:500]}"
        )
    return result


def find_tool(name: str) -> str | None:
    return shutil.which(name)


def require_tools(tools) -> None:
    """Fail fast when any of the given executables is missing."""
    missing = [tool for tool in tools if find_tool(tool) is None]
    if missing:
        raise ToolMissingError(f"Required tool(s) not found: {', '.join(missing)}")


def is_admin() -> bool:
    """Check whether this process runs elevated."""
    if os.name == "nt":
        try:
            return ctypes.windll.shell32.IsUserAnAdmin() != 0  # type: ignore[attr-defined]
        except Exception:
            return False
    return os.geteuid() == 0


def terminate_pid(pid: int) -> bool:
    """Best effort kill of a process we cannot wait on."""
    try:
        if os.name == "nt":
            result = run_command(["taskkill", "/PID", str(pid), "/T", "/F"], timeout=30)
            return result.success
        os.kill(pid, signal.SIGTERM)
        return True
    except (OSError, BackupError) as e:
        logger.warning("Could not terminate process %s: %s", pid, e)
        return False


def write_private_file(path: Path, content: str) -> Path:
    """Write a file readable by the owner only."""
    path = Path(path)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    # O_CREAT honours umask, make sure an existing file is narrowed too
    os.chmod(path, 0o600)
    return path


def atomic_write_text(path: Path, content: str, mode: int = 0o600) -> None:
    """Write ``content`` next to ``path`` and rename it into place.

    A concurrent reader sees either the old or the new file, never a
    partially written one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


@contextlib.contextmanager
def credentials_file(username: str, password: str, domain: str | None = None):
    """Yield a short-lived CIFS credentials file, deleted right after use."""
    lines = [f"username={username}", f"password={password}"]
    if domain:
        lines.append(f"domain={domain}")
    fd, name = tempfile.mkstemp(prefix="nas-backup-cred-")
    os.close(fd)
    path = Path(name)
    try:
        write_private_file(path, "\n".join(lines) + "\n")
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
