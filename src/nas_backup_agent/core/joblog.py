"""Append-only log of the running job.

Every message emitted under the ``nas_backup_agent`` logger while a job runs
is mirrored here, so the log can be polled mid-job and attached to errors.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path


class JobLog:
    """Thread-safe, append-only sequence of timestamped lines."""

    def __init__(self) -> None:
        self._lines: list[str] = []
        self._lock = threading.Lock()

    def append(self, message: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with self._lock:
            for line in str(message).splitlines() or [""]:
                self._lines.append(f"[{stamp}] {line}")

    def extend_raw(self, lines) -> None:
        """Append already formatted lines (e.g. from a worker log file)."""
        with self._lock:
            self._lines.extend(str(line) for line in lines)

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def flush_to(self, path: Path) -> Path:
        """Write the whole log to ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.text() + "\n", encoding="utf-8")
        return path


class JobLogHandler(logging.Handler):
    """Logging handler feeding a JobLog."""

    def __init__(self, job_log: JobLog, level=logging.INFO) -> None:
        super().__init__(level)
        self.job_log = job_log
        self.setFormatter(logging.Formatter("%(levelname)s %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.job_log.append(self.format(record))
        except Exception:
            self.handleError(record)
