"""Run command: execute the configured backup job."""

import argparse
import concurrent.futures
import dataclasses
import logging
import time

from rich.progress import BarColumn, Progress, SpinnerColumn, TimeElapsedColumn

from .. import __logger__, __util__
from ..__logger__ import create_logger
from ..core.coordinator import BackupCoordinator
from ..core.models import BackupKind
from .common import get_log_level, load_cli_config

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5


def execute_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    log_level = get_log_level(args)
    create_logger(False, level=log_level)

    config = load_cli_config(args)
    if config is None:
        return 1

    coordinator = BackupCoordinator(config)
    try:
        job = coordinator.build_job()
    except __util__.BackupError as e:
        logger.error("%s", e)
        return 1
    if getattr(args, "kind", None):
        job.kind = BackupKind(args.kind)
    if getattr(args, "path", None):
        job.paths = list(args.path)
    logger.debug("Job: %s", describe_job(job))

    logger.info(__util__.log_heading(f"Started at {time.ctime()}"))
    try:
        if getattr(args, "no_progress", False) or getattr(args, "quiet", False):
            result = coordinator.run_backup(job)
        else:
            result = _run_with_progress(coordinator, job)
    except __util__.AlreadyRunningError as e:
        logger.error("%s", e)
        return 1
    except __util__.BackupError as e:
        logger.error("Backup failed: %s", e)
        return 1
    logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))

    for warning in result.warnings:
        logger.warning("%s", warning)
    captured = sum(1 for r in result.manifest.partitions if r.success)
    logger.info(
        "Backup completed in %d seconds: %d of %d capture(s) succeeded",
        result.duration,
        captured,
        len(result.manifest.partitions),
    )
    logger.info("Manifest: %s", result.remote_manifest_path or result.manifest_path)
    return 0


def _run_with_progress(coordinator: BackupCoordinator, job):
    """Run the job in a thread and render its progress until it ends."""
    progress = Progress(
        "[progress.description]{task.description}",
        BarColumn(),
        "[progress.percentage]{task.percentage:>3.0f}%",
        SpinnerColumn(),
        TimeElapsedColumn(),
        console=__logger__.cons,
        transient=True,
    )
    task_id = progress.add_task("[green]Starting", total=100)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(coordinator.run_backup, job)
        with progress:
            while not future.done():
                _render(progress, task_id, coordinator)
                time.sleep(POLL_INTERVAL)
            _render(progress, task_id, coordinator)
        return future.result()


def _render(progress: Progress, task_id, coordinator: BackupCoordinator) -> None:
    report = coordinator.get_progress()
    if report is None:
        return
    description = f"[green]{report.phase.value}"
    if report.detail:
        description += f" [cyan]{report.detail}"
    progress.update(task_id, completed=report.percent, description=description)


def describe_job(job) -> dict:
    """Job fields safe to print, the password is left out."""
    data = dataclasses.asdict(job)
    data["kind"] = job.kind.value
    data["target"].pop("password", None)
    return data
