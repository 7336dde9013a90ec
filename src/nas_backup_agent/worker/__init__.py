"""Detached worker: status file protocol, supervisor and worker entry point."""

from .status import (
    STATUS_VERSION,
    StatusWriter,
    WorkerStatusRecord,
    read_status,
    worker_error,
    write_status,
)
from .supervisor import WorkerHandle, WorkerSupervisor

__all__ = [
    "STATUS_VERSION",
    "StatusWriter",
    "WorkerHandle",
    "WorkerStatusRecord",
    "WorkerSupervisor",
    "read_status",
    "worker_error",
    "write_status",
]
