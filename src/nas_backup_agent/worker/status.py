"""The status file shared by the detached worker and its supervisor.

The status file is the only channel of truth between the two processes.
The worker replaces it atomically (temp file + rename) so the supervisor
never reads a half-written record. Records carry a schema version.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from .. import __util__
from ..core.models import Phase, ProgressReport, clamp_percent

logger = logging.getLogger(__name__)

STATUS_VERSION = 1


@dataclass(frozen=True)
class WorkerStatusRecord:
    """Latest state of the worker.

    Attributes:
        phase: Current phase
        percent: Overall job percent (0..100)
        detail: Human readable detail
        error: Failure reason once phase is error
        error_type: Name of the BackupError class behind ``error``
        pid: Process id of the worker
        timestamp: ISO-8601 time of the write, refreshed by the heartbeat
        manifest: Local manifest path once phase is done
        version: Schema version of the record
    """

    phase: Phase
    percent: int = 0
    detail: str = ""
    error: Optional[str] = None
    pid: int = 0
    timestamp: str = field(default_factory=__util__.utc_now_iso)
    manifest: Optional[str] = None
    error_type: Optional[str] = None
    version: int = STATUS_VERSION

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def to_progress(self) -> ProgressReport:
        return ProgressReport(self.phase, self.percent, self.detail)

    def to_dict(self) -> dict:
        data = {
            "version": self.version,
            "phase": self.phase.value,
            "percent": self.percent,
            "detail": self.detail,
            "error": self.error,
            "pid": self.pid,
            "timestamp": self.timestamp,
        }
        if self.manifest is not None:
            data["manifest"] = self.manifest
        if self.error_type is not None:
            data["errorType"] = self.error_type
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerStatusRecord":
        """Build a record from parsed JSON.

        Raises:
            ValueError: If the record is malformed or from a newer schema
        """
        if not isinstance(data, dict):
            raise ValueError("status record must be an object")
        version = data.get("version", STATUS_VERSION)
        if not isinstance(version, int) or version > STATUS_VERSION:
            raise ValueError(f"Unsupported status record version: {version}")
        try:
            phase = Phase(data["phase"])
            timestamp = str(data["timestamp"])
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid status record: {e}") from e
        return cls(
            phase=phase,
            percent=clamp_percent(data.get("percent", 0)),
            detail=str(data.get("detail") or ""),
            error=data.get("error"),
            pid=int(data.get("pid") or 0),
            timestamp=timestamp,
            manifest=data.get("manifest"),
            error_type=data.get("errorType"),
            version=version,
        )


def worker_error(record: WorkerStatusRecord) -> __util__.BackupError:
    """Rebuild the error the worker failed with, as the same BackupError class."""
    error_class = getattr(__util__, record.error_type or "", None)
    if not (isinstance(error_class, type) and issubclass(error_class, __util__.BackupError)):
        error_class = __util__.WorkerError
    return error_class(record.error or "Worker reported an error")


def write_status(path: Path, record: WorkerStatusRecord) -> None:
    __util__.atomic_write_text(path, json.dumps(record.to_dict()) + "\n", mode=0o644)


def read_status(path: Path) -> Optional[WorkerStatusRecord]:
    """Read the status file.

    Returns:
        The record, or None if the file is missing or unreadable
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Status file %s unreadable: %s", path, e)
        return None
    try:
        return WorkerStatusRecord.from_dict(data)
    except ValueError as e:
        logger.warning("Ignoring status file %s: %s", path, e)
        return None


class StatusWriter:
    """Worker side of the protocol.

    Progress updates rewrite the file. A heartbeat thread rewrites the last
    record with a fresh timestamp so a long silent capture is not mistaken
    for a hung worker. If the status directory disappears the supervisor has
    given up on this worker, and writes stop.
    """

    def __init__(self, path: Path, heartbeat_interval: float = 10.0, pid: int | None = None):
        self.path = Path(path)
        self.heartbeat_interval = heartbeat_interval
        self.pid = pid if pid is not None else os.getpid()
        self._record = WorkerStatusRecord(Phase.STARTING, pid=self.pid)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.abandoned = False

    @property
    def record(self) -> WorkerStatusRecord:
        with self._lock:
            return self._record

    def _write(self, record: WorkerStatusRecord) -> None:
        with self._lock:
            self._store(record)

    def _store(self, record: WorkerStatusRecord) -> None:
        # Caller holds _lock
        self._record = record
        if self.abandoned:
            return
        if not self.path.parent.is_dir():
            logger.warning(
                "Status directory %s is gone, supervisor abandoned this job",
                self.path.parent,
            )
            self.abandoned = True
            return
        try:
            write_status(self.path, record)
        except OSError as e:
            logger.warning("Could not write status file: %s", e)

    def update(self, report: ProgressReport) -> None:
        if report.phase.is_terminal:
            # Terminal records are written by finish() and fail() only
            return
        self._write(
            WorkerStatusRecord(
                phase=report.phase,
                percent=report.percent,
                detail=report.detail,
                pid=self.pid,
            )
        )

    def finish(self, manifest_path) -> None:
        self._write(
            WorkerStatusRecord(
                phase=Phase.DONE,
                percent=100,
                detail="Backup complete",
                pid=self.pid,
                manifest=str(manifest_path),
            )
        )

    def fail(self, error: str, error_type: Optional[str] = None) -> None:
        last = self.record
        self._write(
            WorkerStatusRecord(
                phase=Phase.ERROR,
                percent=last.percent,
                detail=last.detail,
                error=error,
                error_type=error_type,
                pid=self.pid,
            )
        )

    def _heartbeat(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            with self._lock:
                if self._record.is_terminal:
                    return
                self._store(replace(self._record, timestamp=__util__.utc_now_iso()))

    def start(self) -> None:
        self._write(self.record)
        self._thread = threading.Thread(
            target=self._heartbeat, name="status-heartbeat", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.heartbeat_interval + 1)
            self._thread = None
